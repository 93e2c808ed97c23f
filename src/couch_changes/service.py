"""Runtime wiring: settings -> follower -> change sink."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import httpx
from prometheus_client import REGISTRY, start_http_server

from .config import Settings, load_settings
from .feed import (
    ChangesFollower,
    ChangesMetrics,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
    RetryOptions,
    redact_url,
)
from .feed.checkpoint import CheckpointStore
from .feed.decoding import extract_sequence
from .feed.events import CHANGE, CHANGES_ERROR, VIEWS_ERROR, view_event

logger = logging.getLogger(__name__)


def build_follower(
    settings: Settings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    metrics: Optional[ChangesMetrics] = None,
) -> ChangesFollower:
    """Construct a follower using application settings."""

    if not settings.couchdb_url:
        raise ValueError("COUCHDB_URL is not configured")

    store = checkpoint_store
    if store is None:
        if settings.checkpoint_backend == "file":
            store = PersistentCheckpointStore(
                settings.resume_path, fsync=settings.resume_fsync
            )
        else:
            store = InMemoryCheckpointStore()

    # An explicit CHANGES_SINCE wins over a stored cursor.
    return ChangesFollower(
        settings.couchdb_url,
        since=settings.since,
        retry=RetryOptions(
            enabled=settings.retry_enabled,
            max_ms=settings.retry_max_ms,
            step_ms=settings.retry_step_ms,
        ),
        views=settings.views,
        http_client=http_client,
        checkpoint_store=store,
        feed_name=settings.feed_name,
        checkpoint_interval=settings.checkpoint_interval,
        metrics=metrics,
        max_concurrency=settings.prefetch_concurrency,
        connect_timeout=settings.connect_timeout_seconds,
    )


class JsonlChangeSink:
    """Logs each change and optionally appends it to a JSONL file."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self.count = 0

    def __call__(self, record: Any) -> None:
        self.count += 1
        doc_id = record.get("id") if isinstance(record, dict) else None
        logger.info("change received: id=%s seq=%s", doc_id, extract_sequence(record))
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.error("failed to write change JSONL: %s", exc)


def attach_logging_handlers(follower: ChangesFollower) -> None:
    def _log_feed_error(error: BaseException) -> None:
        logger.warning("change feed interrupted: %s", error)

    def _log_views_error(error: BaseException) -> None:
        logger.error("view pre-fetch failed: %s", error)

    follower.on(CHANGES_ERROR, _log_feed_error)
    follower.on(VIEWS_ERROR, _log_views_error)
    for spec in follower.views:
        follower.on(view_event(spec.name), _view_rows_logger(spec.name))


def _view_rows_logger(name: str):
    def _log_rows(rows: List[Any]) -> None:
        logger.info("view %s pre-fetched %d rows", name, len(rows))

    return _log_rows


async def run(settings: Settings) -> None:
    metrics = ChangesMetrics(registry=REGISTRY)
    follower = build_follower(settings, metrics=metrics)
    sink = JsonlChangeSink(settings.jsonl_path if settings.write_jsonl else None)
    follower.on(CHANGE, sink)
    attach_logging_handlers(follower)

    def _on_connected(error: Optional[BaseException]) -> None:
        if error is None:
            logger.info(
                "connected to %s at cursor %s",
                redact_url(follower.changes_url),
                follower.cursor,
            )
        else:
            logger.error("initial connection failed: %s", error)

    async with follower:
        await follower.query_and_listen(_on_connected)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    settings = load_settings()
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("metrics exposed on port %d", settings.metrics_port)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("shutdown requested (KeyboardInterrupt)")
