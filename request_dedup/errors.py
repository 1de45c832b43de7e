from __future__ import annotations

from typing import Optional


class RequestAbortedError(Exception):
    """
    Raised when a deduplicated request is aborted rather than failed.

    Transport failures are never wrapped in this error; they propagate
    as the original exception. Catch this one to tell a cancellation
    apart from a real network problem (e.g. to skip retry-after-cancel).

    Reasons:
    - cancelled: cancel_request() was called for the key
    - timeout: the configured request timeout fired
    - cleared: the whole registry was cleared
    - signal: the caller's own signal was set (only that caller detaches)
    """

    def __init__(self, key: str, reason: Optional[str] = "cancelled"):
        self.key = key
        self.reason = reason or "cancelled"
        super().__init__(f"Request aborted ({self.reason}): {key}")


def is_abort_error(exc: BaseException) -> bool:
    """Return True if exc is an abort-class rejection."""
    return isinstance(exc, RequestAbortedError)
