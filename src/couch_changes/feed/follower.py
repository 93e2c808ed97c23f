"""Continuous `_changes` follower with incremental reconnect backoff.

A :class:`ChangesFollower` keeps one streaming connection open at a time. Each
connection (a session) starts at the current cursor, frames the body into lines,
decodes each line and emits a ``change`` event per record. When a session ends
the follower reconnects at the updated cursor: immediately after a graceful end,
or after a backoff delay following a transport failure.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Mapping,
    Optional,
    Union,
)
from urllib.parse import urlsplit, urlunsplit

import httpx

from .backoff import IncrementalBackoff, RetryOptions, RetryState
from .checkpoint import CheckpointStore, InMemoryCheckpointStore
from .decoding import Cursor, DecodeStatus, RecordDecoder, SequenceCursor
from .events import (
    CHANGE,
    CHANGES_ERROR,
    VIEWS,
    VIEWS_ERROR,
    EventHub,
    Handler,
    view_event,
)
from .framing import LineFramer
from .metrics import ChangesMetrics
from .prefetch import ViewPrefetcher, ViewQueryError, ViewSpec, normalize_views

logger = logging.getLogger(__name__)

ConnectCallback = Callable[[Optional[BaseException]], Any]
QueryCallback = Callable[[Optional[BaseException], Optional[Cursor]], Any]
ViewsOption = Union[None, Mapping[str, Mapping[str, Any]], Iterable[ViewSpec]]


class FollowerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ENDED = "ended"
    TERMINATED = "terminated"


def redact_url(url: str) -> str:
    """Strip credentials from ``url`` for logging."""
    parts = urlsplit(url)
    if parts.username is None and parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(
        (parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment)
    )


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:  # noqa: BLE001 - caller callbacks must not stop the feed
        logger.exception("follower callback raised error")


class ChangesFollower:
    """Follows a database `_changes` feed and optionally pre-fetches views."""

    def __init__(
        self,
        url: str,
        *,
        since: Optional[Cursor] = None,
        retry: Optional[RetryOptions] = None,
        views: ViewsOption = None,
        http_client: Optional[httpx.AsyncClient] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        feed_name: str = "changes",
        checkpoint_interval: int = 50,
        metrics: Optional[ChangesMetrics] = None,
        max_concurrency: int = 4,
        connect_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not url:
            raise ValueError("url must be provided")
        options = retry or RetryOptions()
        self._url = url.rstrip("/")
        self._backoff = IncrementalBackoff.from_options(options)
        self._retry = RetryState(enabled=options.enabled)
        self._views: List[ViewSpec] = normalize_views(views)
        self._events = EventHub()
        self._decoder = RecordDecoder()
        self._metrics = metrics or ChangesMetrics()
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, read=None)
        )
        self._prefetcher = ViewPrefetcher(
            self._url, self._client, max_concurrency=max_concurrency
        )
        self._feed_name = feed_name
        self._checkpoint_store = checkpoint_store or InMemoryCheckpointStore()
        self._checkpoint_interval = max(1, checkpoint_interval)
        self._unpersisted = 0
        if since is None:
            since = self._checkpoint_store.load(feed_name)
        self._cursor = SequenceCursor(since)
        self._state = FollowerState.IDLE
        self._listening = False
        self._connect_reported = False

    # ------------------------------------------------------------------ Properties
    @property
    def cursor(self) -> Cursor:
        return self._cursor.value

    @property
    def state(self) -> FollowerState:
        return self._state

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def views(self) -> List[ViewSpec]:
        return list(self._views)

    @property
    def metrics(self) -> ChangesMetrics:
        return self._metrics

    @property
    def changes_url(self) -> str:
        return f"{self._url}/_changes"

    # ------------------------------------------------------------------ Public API
    def on(self, event: str, handler: Handler) -> Handler:
        return self._events.on(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        return self._events.off(event, handler)

    def disable_retry(self) -> None:
        """Stop reconnecting; takes effect at the next connection failure."""
        self._retry = self._retry.disabled()

    async def listen(
        self,
        since: Optional[Cursor] = None,
        on_connected: Optional[ConnectCallback] = None,
    ) -> None:
        """Follow the feed until a failure occurs with retry disabled.

        ``on_connected`` is called at most once over the follower's lifetime:
        with ``None`` when the first response arrives, or with the error if the
        first attempt fails.
        """
        if self._state is FollowerState.TERMINATED:
            raise RuntimeError("follower is terminated; create a new one to resume")
        if self._listening:
            raise RuntimeError("follower is already listening")
        self._listening = True
        if since not in (None, ""):
            self._cursor = SequenceCursor(since)
        try:
            while True:
                if await self._run_session(on_connected):
                    continue
                if not self._retry.enabled:
                    self._state = FollowerState.TERMINATED
                    logger.info(
                        "change feed stopped at cursor %s; retry disabled",
                        self._cursor.value,
                    )
                    return
                delay_ms, self._retry = self._backoff.next_delay(self._retry)
                self._metrics.set_retry_delay(delay_ms)
                self._metrics.inc_reconnects()
                logger.warning(
                    "reconnecting to %s in %d ms (attempt %d)",
                    redact_url(self.changes_url),
                    delay_ms,
                    self._retry.attempts,
                )
                await self._sleep(delay_ms / 1000)
        finally:
            self._listening = False
            await self._persist_checkpoint()

    async def query(self, on_done: Optional[QueryCallback] = None) -> Optional[Cursor]:
        """Run the configured view queries and adopt the resolved cursor.

        Failures go to ``on_done(error, None)`` when given, otherwise to the
        ``error:views`` event; ``None`` is returned in both cases.
        """
        if not self._views:
            await _invoke(on_done, None, self._cursor.value)
            return self._cursor.value
        try:
            cursor = await self._prefetcher.run_all(
                self._views, self._cursor.value, on_rows=self._emit_rows
            )
        except ViewQueryError as exc:
            self._metrics.inc_errors()
            logger.error("view pre-fetch failed: %s", exc)
            if on_done is not None:
                await _invoke(on_done, exc, None)
            else:
                await self._events.emit(VIEWS_ERROR, exc)
            return None
        self._cursor = SequenceCursor(cursor)
        await self._events.emit(VIEWS)
        await _invoke(on_done, None, cursor)
        return cursor

    async def query_and_listen(
        self, on_connected: Optional[ConnectCallback] = None
    ) -> None:
        """Pre-fetch views, then follow the feed from the resolved cursor."""
        failures: List[BaseException] = []

        def _collect(error: Optional[BaseException], _cursor: Optional[Cursor]) -> None:
            if error is not None:
                failures.append(error)

        cursor = await self.query(_collect)
        if failures:
            if on_connected is not None:
                self._connect_reported = True
                await _invoke(on_connected, failures[0])
            else:
                await self._events.emit(VIEWS_ERROR, failures[0])
            return
        await self.listen(cursor, on_connected)

    async def aclose(self) -> None:
        await self._persist_checkpoint()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChangesFollower":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ Session
    def _feed_params(self) -> dict[str, Any]:
        return {
            "feed": "continuous",
            "include_docs": "true",
            "since": self._cursor.value,
        }

    async def _run_session(self, on_connected: Optional[ConnectCallback]) -> bool:
        """Run one connection; True on graceful end, False after a failure."""
        framer = LineFramer()
        self._state = FollowerState.CONNECTING
        logger.debug(
            "opening %s since %s", redact_url(self.changes_url), self._cursor.value
        )
        try:
            async with self._client.stream(
                "GET", self.changes_url, params=self._feed_params()
            ) as response:
                response.raise_for_status()
                self._state = FollowerState.STREAMING
                await self._report_connected(on_connected)
                async for chunk in response.aiter_bytes():
                    for line in framer.feed(chunk):
                        await self._handle_line(line)
        except httpx.HTTPError as exc:
            self._metrics.inc_errors()
            logger.warning(
                "change feed error at cursor %s: %s", self._cursor.value, exc
            )
            await self._report_failure(on_connected, exc)
            return False
        finally:
            await self._persist_checkpoint()

        self._state = FollowerState.ENDED
        final = framer.flush()
        if final is not None:
            await self._handle_line(final)
            await self._persist_checkpoint()
        logger.info(
            "change feed closed by server at cursor %s; reconnecting",
            self._cursor.value,
        )
        return True

    async def _handle_line(self, line: str) -> None:
        result = self._decoder.decode(line)
        if result.status is DecodeStatus.SKIP:
            return
        if result.status is DecodeStatus.DISCARD:
            self._metrics.inc_discards()
            return
        self._metrics.inc_records()
        await self._events.emit(CHANGE, result.record)
        if self._cursor.advance(result.sequence):
            self._unpersisted += 1
            if self._unpersisted >= self._checkpoint_interval:
                await self._persist_checkpoint()

    async def _report_connected(self, on_connected: Optional[ConnectCallback]) -> None:
        if self._connect_reported:
            return
        self._connect_reported = True
        await _invoke(on_connected, None)

    async def _report_failure(
        self, on_connected: Optional[ConnectCallback], exc: BaseException
    ) -> None:
        if not self._connect_reported and on_connected is not None:
            self._connect_reported = True
            await _invoke(on_connected, exc)
            return
        self._connect_reported = True
        await self._events.emit(CHANGES_ERROR, exc)

    async def _emit_rows(self, spec: ViewSpec, rows: List[Any]) -> None:
        self._metrics.inc_view_rows(len(rows))
        await self._events.emit(view_event(spec.name), rows)

    async def _persist_checkpoint(self) -> None:
        """Save the cursor off the event loop; failures are logged and retried later."""
        pending = self._unpersisted
        if not pending:
            return
        cursor = self._cursor.value
        try:
            await asyncio.to_thread(
                self._checkpoint_store.save, self._feed_name, cursor
            )
        except Exception:  # noqa: BLE001 - a failing store must not stop the feed
            self._metrics.inc_errors()
            logger.exception(
                "failed to persist cursor %s for feed %s", cursor, self._feed_name
            )
            return
        self._unpersisted -= pending


__all__ = ["ChangesFollower", "FollowerState", "redact_url"]
