"""In-process counters served by ``GET /api/metrics``.

Requests are keyed by route template (``/api/tickets/{ticket_id}``), never by
the concrete path, so ticket and tenant ids do not grow the key space. Mail
outcomes are counted per outcome and per template kind.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from threading import Lock
from typing import Optional

UNMATCHED_ROUTE = "<unmatched>"
MAIL_OUTCOMES = ("queued", "sent", "failed", "dropped")


def _nearest_rank(ordered: list[float], fraction: float) -> float:
    if not ordered:
        return 0.0
    return round(ordered[int((len(ordered) - 1) * fraction)], 2)


class InMemoryMetrics:
    def __init__(self, latency_window: int = 2000) -> None:
        self._lock = Lock()
        self._started = time.monotonic()
        self._routes: Counter[str] = Counter()
        self._status_classes: Counter[str] = Counter()
        self._latencies_ms: deque[float] = deque(maxlen=latency_window)
        self._mail_outcomes: Counter[str] = Counter()
        self._mail_kinds: dict[str, Counter[str]] = {}

    def observe_request(self, route: Optional[str], status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._routes[route or UNMATCHED_ROUTE] += 1
            self._status_classes[f"{status_code // 100}xx"] += 1
            self._latencies_ms.append(float(duration_ms))

    def observe_email(self, outcome: str, kind: Optional[str] = None) -> None:
        if outcome not in MAIL_OUTCOMES:
            raise ValueError(f"unknown mail outcome: {outcome}")
        with self._lock:
            self._mail_outcomes[outcome] += 1
            if kind:
                self._mail_kinds.setdefault(kind, Counter())[outcome] += 1

    def snapshot(self) -> dict:
        with self._lock:
            ordered = sorted(self._latencies_ms)
            return {
                "uptime_seconds": round(time.monotonic() - self._started, 1),
                "requests_total": sum(self._routes.values()),
                "status_counts": dict(self._status_classes),
                "route_counts": dict(self._routes),
                "latency_ms": {
                    "samples": len(ordered),
                    "p50": _nearest_rank(ordered, 0.50),
                    "p95": _nearest_rank(ordered, 0.95),
                    "p99": _nearest_rank(ordered, 0.99),
                },
                "emails": dict(self._mail_outcomes),
                "emails_by_kind": {kind: dict(counts) for kind, counts in self._mail_kinds.items()},
            }


metrics = InMemoryMetrics()
