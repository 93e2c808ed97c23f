"""Decoding of change feed lines and sequence cursor tracking."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

Cursor = Union[int, str]


class DecodeStatus(str, Enum):
    RECORD = "record"
    SKIP = "skip"
    DISCARD = "discard"


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding a single feed line."""

    status: DecodeStatus
    record: Any = None
    sequence: Optional[Cursor] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is DecodeStatus.RECORD


SKIPPED = DecodeResult(status=DecodeStatus.SKIP)


def extract_sequence(record: Any) -> Optional[Cursor]:
    """Return ``last_seq`` or ``seq`` from a record, preferring ``last_seq``."""
    if not isinstance(record, dict):
        return None
    return record.get("last_seq") or record.get("seq") or None


class RecordDecoder:
    """Parses feed lines as JSON; malformed lines are reported, never raised."""

    def decode(self, line: str) -> DecodeResult:
        if not line or not line.strip():
            return SKIPPED
        try:
            record = json.loads(line)
        except ValueError as exc:
            logger.debug("discarding malformed change line: %s", exc)
            return DecodeResult(status=DecodeStatus.DISCARD, error=str(exc))
        return DecodeResult(
            status=DecodeStatus.RECORD,
            record=record,
            sequence=extract_sequence(record),
        )


class SequenceCursor:
    """Latest acknowledged position in the change log."""

    def __init__(self, initial: Optional[Cursor] = 0) -> None:
        self._value: Cursor = initial if initial not in (None, "") else 0

    @property
    def value(self) -> Cursor:
        return self._value

    def advance(self, sequence: Optional[Cursor]) -> bool:
        if sequence is None or sequence == "":
            return False
        current = self._value
        if (
            isinstance(sequence, int)
            and isinstance(current, int)
            and sequence < current
        ):
            logger.debug(
                "ignoring sequence %s older than cursor %s", sequence, current
            )
            return False
        self._value = sequence
        return True

    def __repr__(self) -> str:
        return f"SequenceCursor({self._value!r})"


__all__ = [
    "Cursor",
    "DecodeResult",
    "DecodeStatus",
    "RecordDecoder",
    "SequenceCursor",
    "extract_sequence",
]
