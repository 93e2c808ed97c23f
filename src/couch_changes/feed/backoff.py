"""Incremental reconnect backoff for the change feed follower."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Tuple


class RetryDisabled(RuntimeError):
    """Raised when a delay is requested while retrying is disabled."""


@dataclass(frozen=True)
class RetryOptions:
    """Reconnect configuration; durations are milliseconds.

    ``max_ms=0`` leaves the delay uncapped: it keeps growing by ``step_ms`` on
    every consecutive failure.
    """

    enabled: bool = True
    max_ms: int = 30000
    step_ms: int = 2000


@dataclass(frozen=True)
class RetryState:
    enabled: bool = True
    current_delay_ms: int = 0
    attempts: int = 0

    def disabled(self) -> "RetryState":
        return replace(self, enabled=False)


class IncrementalBackoff:
    """Linear backoff: each failure adds ``step_ms`` up to ``max_ms``.

    The delay is not reset after a successful connection; it only grows until
    the ceiling is reached.
    """

    def __init__(self, step_ms: int = 2000, max_ms: int = 30000) -> None:
        if step_ms < 0:
            raise ValueError("step_ms must be >= 0")
        if max_ms < 0:
            raise ValueError("max_ms must be >= 0")
        self.step_ms = step_ms
        self.max_ms = max_ms

    @classmethod
    def from_options(cls, options: RetryOptions) -> "IncrementalBackoff":
        return cls(step_ms=options.step_ms, max_ms=options.max_ms)

    @property
    def capped(self) -> bool:
        return self.max_ms > 0

    def next_delay(self, state: RetryState) -> Tuple[int, RetryState]:
        """Return the delay for the upcoming attempt and the advanced state."""
        if not state.enabled:
            raise RetryDisabled("retry is disabled")
        delay = state.current_delay_ms
        grown = delay + self.step_ms
        if self.capped:
            grown = min(grown, self.max_ms)
        return delay, replace(
            state, current_delay_ms=grown, attempts=state.attempts + 1
        )


__all__ = ["IncrementalBackoff", "RetryDisabled", "RetryOptions", "RetryState"]
