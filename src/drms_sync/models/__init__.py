"""Database models for the local sync store."""

from .base import Base, SerializableMixin, TimestampMixin
from .conflict import (
    SYSTEM_RESOLVER,
    ConflictRecord,
    ResolutionSide,
    ResolutionStrategy,
)
from .sync_queue import (
    LIVE_STATUSES,
    EntityType,
    QueueStatus,
    SyncAction,
    SyncQueueItem,
)
from .sync_state import SyncStateEntry

__all__ = [
    "Base",
    "SerializableMixin",
    "TimestampMixin",
    "ConflictRecord",
    "ResolutionSide",
    "ResolutionStrategy",
    "SYSTEM_RESOLVER",
    "EntityType",
    "LIVE_STATUSES",
    "QueueStatus",
    "SyncAction",
    "SyncQueueItem",
    "SyncStateEntry",
]
