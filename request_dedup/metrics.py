from __future__ import annotations

import logging
from typing import Any, Dict

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


class DedupMetrics:
    """Prometheus metrics for request deduplication."""

    # Collectors are registered once per process; share them across instances
    _collectors: Dict[str, Any] = {}

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

        if not self._collectors:
            self._collectors.update(
                requests=Counter(
                    "reqdedup_requests_total",
                    "Total deduplicated fetch calls",
                    ["namespace", "outcome"],
                ),
                errors=Counter(
                    "reqdedup_errors_total",
                    "Total transport failures",
                    ["namespace", "type"],
                ),
                aborts=Counter(
                    "reqdedup_aborts_total",
                    "Total aborted requests",
                    ["namespace", "reason"],
                ),
                in_flight=Gauge(
                    "reqdedup_in_flight",
                    "Entries currently held in the registry",
                    ["namespace"],
                ),
                latency=Histogram(
                    "reqdedup_latency_seconds",
                    "Deduplicated fetch latency",
                    ["namespace", "operation"],
                ),
            )
            logger.debug("Registered request dedup prometheus collectors")

        self.requests = self._collectors["requests"]
        self.errors = self._collectors["errors"]
        self.aborts = self._collectors["aborts"]
        self.in_flight = self._collectors["in_flight"]
        self.latency = self._collectors["latency"]

    def record_issued(self) -> None:
        self.requests.labels(namespace=self.namespace, outcome="issued").inc()

    def record_shared(self) -> None:
        self.requests.labels(namespace=self.namespace, outcome="shared").inc()

    def record_error(self, error_type: str) -> None:
        self.errors.labels(namespace=self.namespace, type=error_type).inc()

    def record_abort(self, reason: str) -> None:
        self.aborts.labels(namespace=self.namespace, reason=reason).inc()

    def set_in_flight(self, count: int) -> None:
        self.in_flight.labels(namespace=self.namespace).set(count)

    def observe_latency(self, operation: str, seconds: float) -> None:
        self.latency.labels(namespace=self.namespace, operation=operation).observe(seconds)
