"""Checkpoint store implementations for change feed cursors."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

from .decoding import Cursor

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend used to store and retrieve feed cursors."""

    def load(self, feed_name: str) -> Optional[Cursor]: ...

    def save(self, feed_name: str, cursor: Cursor) -> None: ...

    def reset(
        self,
        feed_name: str,
        *,
        expected: Optional[Cursor] = None,
        new_cursor: Optional[Cursor] = None,
        force: bool = False,
    ) -> None: ...


def _is_regression(current: Optional[Cursor], candidate: Cursor) -> bool:
    # Opaque string tokens cannot be ordered client-side.
    return (
        isinstance(current, int)
        and isinstance(candidate, int)
        and candidate <= current
    )


def _check_reset(
    current: Optional[Cursor],
    expected: Optional[Cursor],
    new_cursor: Optional[Cursor],
) -> None:
    if current is None:
        if expected is not None:
            raise ValueError("cursor does not exist for feed; supply force=True")
        return
    if expected is None or expected != current:
        raise ValueError("unexpected cursor value")
    if (
        isinstance(new_cursor, int)
        and isinstance(current, int)
        and new_cursor > current
    ):
        raise ValueError("new cursor must not exceed current value")


class InMemoryCheckpointStore:
    """Volatile checkpoint store keeping feed cursors in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, Cursor] = {}

    def load(self, feed_name: str) -> Optional[Cursor]:
        with self._lock:
            return self._positions.get(feed_name)

    def save(self, feed_name: str, cursor: Cursor) -> None:
        with self._lock:
            if _is_regression(self._positions.get(feed_name), cursor):
                return
            self._positions[feed_name] = cursor

    def reset(
        self,
        feed_name: str,
        *,
        expected: Optional[Cursor] = None,
        new_cursor: Optional[Cursor] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            if not force:
                _check_reset(self._positions.get(feed_name), expected, new_cursor)
            if new_cursor is None:
                self._positions.pop(feed_name, None)
            else:
                self._positions[feed_name] = new_cursor


class PersistentCheckpointStore:
    """Durable checkpoint store that persists feed cursors to disk atomically."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._positions: Dict[str, Cursor] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create checkpoint directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, feed_name: str) -> Optional[Cursor]:
        with self._lock:
            return self._positions.get(feed_name)

    def save(self, feed_name: str, cursor: Cursor) -> None:
        with self._lock:
            current = self._positions.get(feed_name)
            if current == cursor or _is_regression(current, cursor):
                return
            self._positions[feed_name] = cursor
            try:
                self._write_locked()
            except OSError:
                if current is None:
                    self._positions.pop(feed_name, None)
                else:
                    self._positions[feed_name] = current
                raise

    def reset(
        self,
        feed_name: str,
        *,
        expected: Optional[Cursor] = None,
        new_cursor: Optional[Cursor] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(feed_name)
            if not force:
                _check_reset(current, expected, new_cursor)
            if new_cursor is None:
                if current is None:
                    return
                self._positions.pop(feed_name, None)
            else:
                self._positions[feed_name] = new_cursor
            self._write_locked()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("failed to load checkpoint file %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning(
                "checkpoint file %s has invalid format; ignoring", self._path
            )
            return
        filtered: Dict[str, Cursor] = {}
        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, (int, str)):
                filtered[key] = value
        with self._lock:
            self._positions = filtered

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._positions, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
        except OSError as exc:
            logger.error("failed to persist checkpoint file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


__all__ = ["CheckpointStore", "InMemoryCheckpointStore", "PersistentCheckpointStore"]
