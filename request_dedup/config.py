from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable, Optional


def _optional_float(name: str) -> Optional[float]:
    value = os.environ.get(name, "")
    return float(value) if value else None


@dataclass
class DedupConfig:
    namespace: str = os.environ.get("REQDEDUP_NAMESPACE", "default")
    # Delay between settlement and eviction so same-tick callers can still attach
    grace_seconds: float = float(os.environ.get("REQDEDUP_GRACE_SECONDS", "0.2"))
    # Entries older than this are never reused, even while still pending
    max_age_seconds: float = float(os.environ.get("REQDEDUP_MAX_AGE_SECONDS", "5.0"))
    request_timeout_seconds: Optional[float] = _optional_float("REQDEDUP_TIMEOUT_SECONDS")
    enable_logging: bool = os.environ.get("REQDEDUP_LOGGING", "false").lower() == "true"
    enable_metrics: bool = True
    compression: str = "none"  # gzip, none
    key_builder: Optional[Callable[[str, str, Any], str]] = None

    def __post_init__(self) -> None:
        if self.grace_seconds < 0:
            raise ValueError(f"grace_seconds must be >= 0, got {self.grace_seconds}")

        if self.max_age_seconds <= 0:
            raise ValueError(f"max_age_seconds must be > 0, got {self.max_age_seconds}")

        if self.grace_seconds > self.max_age_seconds:
            raise ValueError(
                f"grace_seconds ({self.grace_seconds}) cannot be greater than "
                f"max_age_seconds ({self.max_age_seconds})"
            )

        if self.request_timeout_seconds is not None and self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0 or None")

        from .serializers import COMPRESSORS
        if self.compression not in COMPRESSORS:
            valid = ", ".join(COMPRESSORS.keys())
            raise ValueError(f"Invalid compression '{self.compression}'. Valid options: {valid}")
