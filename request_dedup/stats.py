from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class DedupStats:
    """Thread-safe deduplication statistics."""

    requests: int = 0
    network_calls: int = 0
    shared: int = 0
    errors: int = 0
    aborts: int = 0
    evictions: int = 0
    expired: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment_issued(self) -> None:
        """A caller started a new network call."""
        with self._lock:
            self.requests += 1
            self.network_calls += 1

    def increment_shared(self) -> None:
        """A caller attached to an existing entry."""
        with self._lock:
            self.requests += 1
            self.shared += 1

    def increment_error(self) -> None:
        with self._lock:
            self.errors += 1

    def increment_abort(self) -> None:
        with self._lock:
            self.aborts += 1

    def increment_eviction(self) -> None:
        with self._lock:
            self.evictions += 1

    def increment_expired(self, count: int = 1) -> None:
        with self._lock:
            self.expired += count

    @property
    def share_rate(self) -> float:
        """Fraction of requests served by an already running call."""
        with self._lock:
            return self.shared / self.requests if self.requests > 0 else 0.0

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self.requests = 0
            self.network_calls = 0
            self.shared = 0
            self.errors = 0
            self.aborts = 0
            self.evictions = 0
            self.expired = 0
            self.start_time = time.time()

    def to_dict(self) -> dict:
        """Export statistics as dictionary."""
        with self._lock:
            data = {
                "requests": self.requests,
                "network_calls": self.network_calls,
                "shared": self.shared,
                "errors": self.errors,
                "aborts": self.aborts,
                "evictions": self.evictions,
                "expired": self.expired,
            }
        data["share_rate"] = self.share_rate
        data["uptime_seconds"] = self.uptime_seconds
        return data
