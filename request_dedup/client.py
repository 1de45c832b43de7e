from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Optional

import httpx

from .config import DedupConfig
from .deduplication import InFlightRequest, RequestDeduplicator
from .errors import RequestAbortedError
from .keys import build_key, encode_body
from .metrics import DedupMetrics
from .serializers import clone_response, snapshot_response
from .stats import DedupStats

logger = logging.getLogger(__name__)

# Bodies go through body= so they are always part of the dedup key
_BODY_KWARGS = frozenset({"content", "data", "files", "json"})


class DeduplicatingClient:
    """
    Fetch gateway that coalesces concurrent identical requests.

    Requests with the same method, URL and body that overlap in time share
    one call to the inner transport. Every caller gets its own
    httpx.Response rebuilt from a snapshot of the shared one, so bodies can
    be read independently.

    The inner transport is an httpx.AsyncClient or anything exposing an
    async request(method, url, **kwargs) returning an httpx.Response.
    Status codes are not interpreted: a 404 is returned, not raised.
    """

    def __init__(self, inner: Any, config: Optional[DedupConfig] = None) -> None:
        self.inner = inner
        self.config = config or DedupConfig()
        self.stats = DedupStats()
        self.metrics = DedupMetrics(namespace=self.config.namespace) if self.config.enable_metrics else None
        self.deduplicator = RequestDeduplicator(
            grace_seconds=self.config.grace_seconds,
            max_age_seconds=self.config.max_age_seconds,
            timeout_seconds=self.config.request_timeout_seconds,
            on_event=self._on_entry_event,
        )

    async def __aenter__(self) -> "DeduplicatingClient":
        if hasattr(self.inner, "__aenter__"):
            await self.inner.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.clear_request_cache()
        if hasattr(self.inner, "__aexit__"):
            await self.inner.__aexit__(exc_type, exc, tb)

    def get_stats(self) -> DedupStats:
        return self.stats

    def _build_key(self, method: str, url: str, body: Any, params: Any = None) -> str:
        if params:
            # Query params change the request, so they belong in the URL we key on
            url = str(httpx.URL(url).copy_merge_params(params))
        if self.config.key_builder:
            return self.config.key_builder(method, url, body)
        return build_key(method, url, body)

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        signal: Optional[asyncio.Event] = None,
        params: Any = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Fetch url, sharing the network call with identical in-flight requests.

        Args:
            url: Request URL
            method: HTTP method, case-insensitive
            headers: Request headers (not part of the dedup key)
            body: str/bytes sent as-is, anything else sent as JSON
            signal: Event that, once set, makes this caller give up
            params: Query parameters, merged into the URL and the dedup key
            **kwargs: Other inner.request() options (timeout, follow_redirects,
                extensions, ...). Not part of the dedup key: the caller that
                starts the call decides them for everyone attached.

        Returns:
            A fresh httpx.Response owned by this caller

        Raises:
            TypeError: If the body is passed as content/data/files/json
            RequestAbortedError: The shared call was cancelled, timed out or
                cleared, or this caller's signal was set
            Exception: Transport errors from the inner client, unchanged
        """
        body_kwargs = _BODY_KWARGS.intersection(kwargs)
        if body_kwargs:
            raise TypeError(
                f"Pass the request body as body=, not {', '.join(sorted(body_kwargs))}="
            )

        start_time = time.time()
        method = (method or "GET").upper()
        key = self._build_key(method, url, body, params)

        if signal is not None and signal.is_set():
            error = RequestAbortedError(key, "signal")
            self._record_abort(error, method, url)
            raise error

        entry, created = self.deduplicator.acquire(
            key, lambda: self._fetch_snapshot(method, url, headers, body, params, kwargs)
        )
        outcome = "issued" if created else "shared"
        if created:
            self.stats.increment_issued()
            if self.metrics:
                self.metrics.record_issued()
        else:
            self.stats.increment_shared()
            if self.metrics:
                self.metrics.record_shared()
        self._update_in_flight()
        self._log(logging.DEBUG, f"request_{outcome}", method, url)

        try:
            snapshot = await self.deduplicator.wait(entry, signal=signal)
        except RequestAbortedError as e:
            self._record_abort(e, method, url)
            raise
        except Exception as e:
            self.stats.increment_error()
            if self.metrics:
                self.metrics.record_error(type(e).__name__)
            self._log(logging.WARNING, "request_failed", method, url, error=repr(e))
            raise

        resp = clone_response(snapshot)
        if self.metrics:
            self.metrics.observe_latency(outcome, time.time() - start_time)
        return resp

    async def _fetch_snapshot(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        body: Any,
        params: Any,
        options: Mapping[str, Any],
    ) -> bytes:
        """Run the one real network call for an entry."""
        content, json_body = encode_body(body)
        kwargs: dict = dict(options)
        if params:
            kwargs["params"] = params
        if headers:
            kwargs["headers"] = dict(headers)
        if content is not None:
            kwargs["content"] = content
        if json_body is not None:
            kwargs["json"] = json_body

        resp = await self.inner.request(method, url, **kwargs)
        await resp.aread()
        return snapshot_response(resp, compression=self.config.compression)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.fetch(url, method=method, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    def cancel_request(
        self, url: str, *, method: str = "GET", body: Any = None, params: Any = None
    ) -> bool:
        """
        Abort the in-flight request matching (method, url, params, body).

        Every caller attached to it gets RequestAbortedError. Unknown
        requests are ignored.

        Returns:
            True if a request was found and removed
        """
        method = (method or "GET").upper()
        try:
            key = self._build_key(method, url, body, params)
        except (TypeError, ValueError):
            # Such a body could never have been issued
            return False

        removed = self.deduplicator.cancel(key)
        if removed:
            self._log(logging.INFO, "request_cancelled", method, url)
            self._update_in_flight()
        return removed

    def clear_request_cache(self) -> None:
        """Abort and forget every in-flight request (logout, teardown, tests)."""
        count = self.deduplicator.in_flight_count()
        self.deduplicator.clear()
        self._update_in_flight()
        if count and self.config.enable_logging:
            logger.info(f"Cleared {count} in-flight requests (namespace={self.config.namespace})")

    def get_in_flight_request_count(self) -> int:
        return self.deduplicator.in_flight_count()

    def purge_expired(self) -> int:
        removed = self.deduplicator.purge_expired()
        if removed:
            self._update_in_flight()
        return removed

    def _on_entry_event(self, event: str, entry: InFlightRequest) -> None:
        if event == "evicted":
            self.stats.increment_eviction()
        elif event == "expired":
            self.stats.increment_expired()
        else:
            return
        self._update_in_flight()
        if self.config.enable_logging:
            logger.debug(
                f"entry_{event}",
                extra={
                    "event": f"entry_{event}",
                    "key": entry.key,
                    "state": entry.state,
                    "namespace": self.config.namespace,
                },
            )

    def _record_abort(self, error: RequestAbortedError, method: str, url: str) -> None:
        self.stats.increment_abort()
        if self.metrics:
            self.metrics.record_abort(error.reason)
        self._log(logging.INFO, "request_aborted", method, url, reason=error.reason)

    def _update_in_flight(self) -> None:
        if self.metrics:
            self.metrics.set_in_flight(self.deduplicator.in_flight_count())

    def _log(self, level: int, event: str, method: str, url: str, **fields: Any) -> None:
        if not self.config.enable_logging:
            return
        logger.log(
            level,
            event,
            extra={
                "event": event,
                "method": method,
                "url": url,
                "namespace": self.config.namespace,
                **fields,
            },
        )
