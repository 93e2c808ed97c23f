"""Concurrent view queries run before the change feed starts."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

import httpx

from .decoding import Cursor

logger = logging.getLogger(__name__)

RowsCallback = Callable[["ViewSpec", List[Any]], Awaitable[None]]


class ViewQueryError(RuntimeError):
    """Raised when a pre-fetch view query fails."""

    def __init__(self, view: str, message: str) -> None:
        super().__init__(f"view {view!r}: {message}")
        self.view = view


@dataclass(frozen=True)
class ViewSpec:
    """One named view query; ``path`` is relative to the database URL."""

    name: str
    path: str
    query: Mapping[str, Any] = field(default_factory=dict)

    def params(self) -> Dict[str, str]:
        """Query parameters including the ``update_seq`` marker request."""
        params = {key: encode_query_value(value) for key, value in self.query.items()}
        params["update_seq"] = "true"
        return params


def encode_query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"))
    if value is None:
        return "null"
    return str(value)


def normalize_views(
    views: Union[None, Mapping[str, Mapping[str, Any]], Iterable[ViewSpec]],
) -> List[ViewSpec]:
    """Accept ``{name: {"path": ..., "query": {...}}}`` or ``ViewSpec`` items."""
    if not views:
        return []
    if isinstance(views, Mapping):
        specs: List[ViewSpec] = []
        for name, options in views.items():
            if isinstance(options, ViewSpec):
                specs.append(options)
                continue
            path = options.get("path") if isinstance(options, Mapping) else None
            if not path:
                raise ValueError(f"view {name!r} is missing a path")
            specs.append(
                ViewSpec(
                    name=str(name),
                    path=str(path),
                    query=dict(options.get("query") or {}),
                )
            )
        return specs
    return list(views)


class ViewPrefetcher:
    """Runs view queries concurrently and resolves the starting cursor.

    The resolved cursor is the ``update_seq`` of whichever query completes
    last. That order is decided by the server and network, so it is not
    deterministic across runs.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient,
        *,
        max_concurrency: int = 4,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._url = url.rstrip("/")
        self._client = http_client
        self._max_concurrency = max_concurrency

    def view_url(self, spec: ViewSpec) -> str:
        return f"{self._url}/{spec.path.lstrip('/')}"

    async def run_all(
        self,
        views: Sequence[ViewSpec],
        default_cursor: Cursor,
        on_rows: Optional[RowsCallback] = None,
    ) -> Cursor:
        if not views:
            return default_cursor

        semaphore = asyncio.Semaphore(self._max_concurrency)
        resolved: Dict[str, Optional[Cursor]] = {"cursor": None}

        async def _run_one(spec: ViewSpec) -> None:
            async with semaphore:
                rows, marker = await self.fetch(spec)
            if on_rows is not None:
                await on_rows(spec, rows)
            resolved["cursor"] = marker or resolved["cursor"]

        tasks = [asyncio.ensure_future(_run_one(spec)) for spec in views]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        cursor = resolved["cursor"]
        return cursor if cursor else default_cursor

    async def fetch(self, spec: ViewSpec) -> tuple[List[Any], Optional[Cursor]]:
        """Query one view; returns its rows and reported ``update_seq``."""
        try:
            response = await self._client.get(self.view_url(spec), params=spec.params())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ViewQueryError(spec.name, f"request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise ViewQueryError(spec.name, "response is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ViewQueryError(spec.name, "response is not a JSON object")
        rows = body.get("rows")
        if not isinstance(rows, list):
            rows = []
        logger.debug("view %s returned %d rows", spec.name, len(rows))
        return rows, body.get("update_seq") or None


__all__ = [
    "ViewPrefetcher",
    "ViewQueryError",
    "ViewSpec",
    "encode_query_value",
    "normalize_views",
]
