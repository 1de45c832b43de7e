from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import RequestAbortedError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class InFlightRequest:
    """
    Registry record for one shared network call.

    States:
    - PENDING: the call is running
    - FULFILLED: the call returned a result
    - REJECTED: the call raised a transport error
    - ABORTED: the call was cancelled (explicitly, by timeout or by clear)

    Terminal states are never left; once the entry is removed from the
    registry a later request for the same key builds a new entry.
    """

    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"
    ABORTED = "aborted"

    key: str
    task: "asyncio.Task[Any]"
    created_at: float
    state: str = PENDING
    abort_reason: Optional[str] = None
    _evict_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    _timeout_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.state != self.PENDING

    def age(self, now: float) -> float:
        return now - self.created_at

    def abort(self, reason: str) -> bool:
        """Cancel the underlying call. Returns False if it had already settled."""
        self._cancel_timers()
        if self.task.done():
            return False
        self.abort_reason = reason
        self.task.cancel()
        return True

    def _cancel_timers(self) -> None:
        if self._evict_handle is not None:
            self._evict_handle.cancel()
            self._evict_handle = None
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None


class RequestDeduplicator:
    """
    Deduplicates concurrent requests to the same resource.

    When several coroutines request the same key at once, only one call
    is made. The others attach to it and receive the same result or the
    same exception.

    Entries stay registered for a short grace window after they settle so
    near-simultaneous callers can still attach. Entries older than
    max_age_seconds are ignored (and dropped) on the next lookup, even if
    their call is still running.

    All registry mutations happen between suspension points, so no lock
    is needed as long as the instance is used from one event loop.
    """

    def __init__(
        self,
        grace_seconds: float = 0.2,
        max_age_seconds: float = 5.0,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_event: Optional[Callable[[str, InFlightRequest], None]] = None,
    ):
        """
        Initialize request deduplicator.

        Args:
            grace_seconds: Delay between settlement and eviction
            max_age_seconds: Age after which an entry is no longer reused
            timeout_seconds: Abort calls running longer than this (None = never)
            clock: Monotonic time source
            on_event: Called with (event, entry) for settled, evicted and expired entries
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self.grace_seconds = grace_seconds
        self.max_age_seconds = max_age_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._on_event = on_event

    def __len__(self) -> int:
        return len(self._in_flight)

    def __contains__(self, key: object) -> bool:
        return key in self._in_flight

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_entry(self, key: str) -> Optional[InFlightRequest]:
        return self._in_flight.get(key)

    def acquire(
        self, key: str, fetch_fn: Callable[[], Awaitable[Any]]
    ) -> Tuple[InFlightRequest, bool]:
        """
        Find a live entry for key or start a new call.

        Must be called from a running event loop. The new entry is in the
        registry before this method returns, so callers arriving later in
        the same tick attach to it.

        Returns:
            Tuple of (entry, created)
        """
        self.purge_expired()

        entry = self._in_flight.get(key)
        if entry is not None:
            return entry, False

        loop = asyncio.get_running_loop()
        task = loop.create_task(fetch_fn())
        entry = InFlightRequest(key=key, task=task, created_at=self._clock())
        self._in_flight[key] = entry
        task.add_done_callback(functools.partial(self._on_settled, entry))

        if self.timeout_seconds is not None:
            entry._timeout_handle = loop.call_later(
                self.timeout_seconds, self._on_timeout, entry
            )
        return entry, True

    async def wait(
        self, entry: InFlightRequest, signal: Optional[asyncio.Event] = None
    ) -> Any:
        """
        Wait for the entry's call and return its result.

        Raises:
            RequestAbortedError: If the call was aborted, or if signal was set
                first (only this caller detaches in that case)
            asyncio.CancelledError: If the calling task itself was cancelled
            Exception: Whatever the call raised
        """
        shared = asyncio.shield(entry.task)
        try:
            if signal is None:
                return await shared
            return await self._wait_with_signal(entry, shared, signal)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # The caller itself was cancelled; that wins over the abort
                raise
            if entry.task.cancelled():
                raise RequestAbortedError(entry.key, entry.abort_reason) from None
            raise

    async def _wait_with_signal(
        self, entry: InFlightRequest, shared: "asyncio.Future[Any]", signal: asyncio.Event
    ) -> Any:
        signal_task = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {shared, signal_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            signal_task.cancel()
            if not shared.done():
                # Detaches this caller only; the shielded call keeps running
                shared.cancel()

        if shared in done:
            return shared.result()
        raise RequestAbortedError(entry.key, "signal")

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        signal: Optional[asyncio.Event] = None,
    ) -> Any:
        """
        Get result for key, either from an in-flight call or by fetching.

        Args:
            key: Unique key for the request
            fetch_fn: Coroutine function to call if no live entry exists
            signal: Optional event that detaches this caller when set

        Returns:
            Result of fetch_fn
        """
        entry, _ = self.acquire(key, fetch_fn)
        return await self.wait(entry, signal=signal)

    def cancel(self, key: str) -> bool:
        """
        Abort the call registered under key and remove its entry.

        Unknown keys are ignored.

        Returns:
            True if an entry was removed
        """
        entry = self._in_flight.pop(key, None)
        if entry is None:
            return False
        if entry.abort("cancelled"):
            logger.debug(f"Cancelled in-flight request {key}")
        return True

    def clear(self) -> None:
        """Abort and remove every entry."""
        entries = list(self._in_flight.values())
        self._in_flight.clear()
        for entry in entries:
            entry.abort("cleared")
        if entries:
            logger.debug(f"Cleared {len(entries)} in-flight requests")

    def purge_expired(self) -> int:
        """Remove entries older than max_age_seconds. Returns number removed."""
        now = self._clock()
        expired: List[InFlightRequest] = [
            entry for entry in self._in_flight.values()
            if entry.age(now) >= self.max_age_seconds
        ]
        for entry in expired:
            del self._in_flight[entry.key]
            # The call itself keeps running for callers already attached
            if entry._evict_handle is not None:
                entry._evict_handle.cancel()
                entry._evict_handle = None
            self._emit("expired", entry)
        return len(expired)

    def _on_settled(self, entry: InFlightRequest, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            entry.state = InFlightRequest.ABORTED
        elif task.exception() is not None:
            entry.state = InFlightRequest.REJECTED
        else:
            entry.state = InFlightRequest.FULFILLED

        if entry._timeout_handle is not None:
            entry._timeout_handle.cancel()
            entry._timeout_handle = None

        if self._in_flight.get(entry.key) is entry:
            loop = asyncio.get_running_loop()
            entry._evict_handle = loop.call_later(self.grace_seconds, self._evict, entry)

        self._emit(entry.state, entry)

    def _evict(self, entry: InFlightRequest) -> None:
        entry._evict_handle = None
        # A newer entry may hold the key by now
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
            self._emit("evicted", entry)

    def _on_timeout(self, entry: InFlightRequest) -> None:
        entry._timeout_handle = None
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
        if entry.abort("timeout"):
            logger.debug(f"Request {entry.key} timed out after {self.timeout_seconds}s")

    def _emit(self, event: str, entry: InFlightRequest) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, entry)
        except Exception as e:
            logger.error(f"Error in dedup event callback for {event}: {e}")
