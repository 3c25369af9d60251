"""Pydantic schemas: payload envelope, wire models and read models."""

from .payloads import (
    AssessmentPayload,
    BasePayload,
    EntityPayload,
    MutationPayload,
    ResponsePayload,
    dump_payload,
    parse_payload,
)
from .sync import (
    ConflictFilters,
    ConflictStats,
    DrainResult,
    QueueStats,
    SyncPhase,
    SyncStatusSnapshot,
)
from .transport import (
    PullChange,
    PullResponse,
    PushItem,
    PushResult,
    PushStatus,
)

__all__ = [
    "AssessmentPayload",
    "BasePayload",
    "EntityPayload",
    "MutationPayload",
    "ResponsePayload",
    "dump_payload",
    "parse_payload",
    "ConflictFilters",
    "ConflictStats",
    "DrainResult",
    "QueueStats",
    "SyncPhase",
    "SyncStatusSnapshot",
    "PullChange",
    "PullResponse",
    "PushItem",
    "PushResult",
    "PushStatus",
]
