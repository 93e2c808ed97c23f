"""Prometheus metrics for the change feed follower."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class ChangesMetrics:
    """Wraps Prometheus counters and keeps a plain snapshot for assertions.

    Each instance registers into its own ``CollectorRegistry`` unless one is
    supplied, so several followers can live in one process.
    """

    def __init__(
        self,
        namespace: str = "couch_changes",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        prefix = f"{namespace}_feed"
        self._records = Counter(
            f"{prefix}_records_total",
            "Change records emitted",
            registry=self.registry,
        )
        self._discards = Counter(
            f"{prefix}_discards_total",
            "Malformed change lines discarded",
            registry=self.registry,
        )
        self._reconnects = Counter(
            f"{prefix}_reconnects_total",
            "Change feed reconnect attempts",
            registry=self.registry,
        )
        self._errors = Counter(
            f"{prefix}_errors_total",
            "Change feed transport errors",
            registry=self.registry,
        )
        self._view_rows = Counter(
            f"{prefix}_view_rows_total",
            "Rows received from pre-fetch view queries",
            registry=self.registry,
        )
        self._retry_delay = Gauge(
            f"{prefix}_retry_delay_ms",
            "Delay scheduled before the next reconnect",
            registry=self.registry,
        )
        self._snapshot: Dict[str, float] = defaultdict(float)

    def inc_records(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._records.inc(amount)
        self._snapshot["records_total"] += amount

    def inc_discards(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._discards.inc(amount)
        self._snapshot["discards_total"] += amount

    def inc_reconnects(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._reconnects.inc(amount)
        self._snapshot["reconnects_total"] += amount

    def inc_errors(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._errors.inc(amount)
        self._snapshot["errors_total"] += amount

    def inc_view_rows(self, amount: int) -> None:
        if amount <= 0:
            return
        self._view_rows.inc(amount)
        self._snapshot["view_rows_total"] += amount

    def set_retry_delay(self, value_ms: float) -> None:
        self._retry_delay.set(value_ms)
        self._snapshot["retry_delay_ms"] = value_ms

    def snapshot(self) -> Dict[str, float]:
        return dict(self._snapshot)


__all__ = ["ChangesMetrics"]
