"""SyncQueueItem model.

One row per local mutation waiting to be replayed against the server of
record. The ``syncing`` status doubles as the per-item lock: the queue never
hands out a second item for an entity while one is ``syncing``.
"""

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from drms_sync.models.base import Base, SerializableMixin, TimestampMixin


class EntityType(str, enum.Enum):
    """Domain record families subject to offline mutation."""

    ASSESSMENT = "assessment"
    RESPONSE = "response"
    ENTITY = "entity"


class SyncAction(str, enum.Enum):
    """Mutation kinds."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, enum.Enum):
    """Queue item lifecycle states."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"


# Statuses that still need work and count against the queue capacity
LIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.SYNCING, QueueStatus.FAILED)


class SyncQueueItem(Base, TimestampMixin, SerializableMixin):
    """Durable record of a pending local mutation."""

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_status_priority", "status", "priority", "created_at"),
        Index("ix_sync_queue_entity", "entity_uuid", "created_at", "sequence"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    local_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=QueueStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    server_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    conflict_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    @property
    def queue_status(self) -> QueueStatus:
        """Status as an enum; unknown values mean the store is corrupt."""
        return QueueStatus(self.status)

    def is_due(self, now: datetime) -> bool:
        """Whether a failed item's backoff window has elapsed."""
        return self.next_retry_at is None or self.next_retry_at <= now

    def __repr__(self) -> str:
        """Return string representation of SyncQueueItem."""
        return (
            f"<SyncQueueItem(id={self.id}, entity={self.entity_type}:{self.entity_uuid}, "
            f"action={self.action}, status={self.status})>"
        )
