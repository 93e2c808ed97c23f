"""Change feed framing, decoding, backoff, pre-fetch, and follower session."""

from .backoff import IncrementalBackoff, RetryDisabled, RetryOptions, RetryState
from .checkpoint import InMemoryCheckpointStore, PersistentCheckpointStore
from .decoding import (
    DecodeResult,
    DecodeStatus,
    RecordDecoder,
    SequenceCursor,
    extract_sequence,
)
from .events import EventHub, view_event
from .follower import ChangesFollower, FollowerState, redact_url
from .framing import LineFramer
from .metrics import ChangesMetrics
from .prefetch import ViewPrefetcher, ViewQueryError, ViewSpec, normalize_views

__all__ = [
    "ChangesFollower",
    "ChangesMetrics",
    "DecodeResult",
    "DecodeStatus",
    "EventHub",
    "FollowerState",
    "IncrementalBackoff",
    "InMemoryCheckpointStore",
    "LineFramer",
    "PersistentCheckpointStore",
    "RecordDecoder",
    "RetryDisabled",
    "RetryOptions",
    "RetryState",
    "SequenceCursor",
    "ViewPrefetcher",
    "ViewQueryError",
    "ViewSpec",
    "extract_sequence",
    "normalize_views",
    "redact_url",
    "view_event",
]
