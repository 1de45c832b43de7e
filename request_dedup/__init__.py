from .client import DeduplicatingClient
from .config import DedupConfig
from .deduplication import InFlightRequest, RequestDeduplicator
from .errors import RequestAbortedError, is_abort_error
from .keys import build_key
from .metrics import DedupMetrics
from .serializers import clone_response, snapshot_response
from .stats import DedupStats

__all__ = [
    "DeduplicatingClient",
    "DedupConfig",
    "InFlightRequest",
    "RequestDeduplicator",
    "RequestAbortedError",
    "is_abort_error",
    "build_key",
    "DedupMetrics",
    "DedupStats",
    "clone_response",
    "snapshot_response",
]

__version__ = "1.0.0"
