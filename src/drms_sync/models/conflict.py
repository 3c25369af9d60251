"""ConflictRecord model.

Audit trail of version conflicts detected during push. Records are created
once, resolved at most once, and never deleted.
"""

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from drms_sync.models.base import Base
from drms_sync.utils.timestamps import utcnow


class ResolutionStrategy(str, enum.Enum):
    """Conflict resolution strategies."""

    LAST_WRITE_WINS = "last_write_wins"
    MANUAL = "manual"


class ResolutionSide(str, enum.Enum):
    """Which version became ``resolved_data``."""

    LOCAL = "local"
    SERVER = "server"
    MANUAL = "manual"


SYSTEM_RESOLVER = "system"


class ConflictRecord(Base):
    """Persisted conflict between a queued local mutation and the server copy."""

    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index("ix_sync_conflicts_entity", "entity_type", "entity_uuid"),
        Index("ix_sync_conflicts_resolved_created", "is_resolved", "created_at"),
    )

    conflict_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    queue_item_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    local_version: Mapped[int] = mapped_column(Integer, nullable=False)
    server_version: Mapped[int] = mapped_column(Integer, nullable=False)
    local_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    server_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )

    resolution_strategy: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ResolutionStrategy.LAST_WRITE_WINS.value
    )
    resolved_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # "metadata" is reserved on declarative classes
    conflict_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    @property
    def conflict_reason(self) -> str:
        """Free-text classification of the conflict."""
        return str((self.conflict_metadata or {}).get("conflictReason", ""))

    @property
    def auto_resolved(self) -> bool:
        """True when the system resolved the conflict without an operator."""
        return bool((self.conflict_metadata or {}).get("autoResolved", False))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "conflictId": self.conflict_id,
            "entityType": self.entity_type,
            "entityUuid": self.entity_uuid,
            "queueItemId": self.queue_item_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "localVersion": self.local_version,
            "serverVersion": self.server_version,
            "localData": self.local_data,
            "serverData": self.server_data,
            "resolutionStrategy": self.resolution_strategy,
            "resolvedData": self.resolved_data,
            "isResolved": self.is_resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolvedBy": self.resolved_by,
            "metadata": dict(self.conflict_metadata or {}),
        }

    def __repr__(self) -> str:
        """Return string representation of ConflictRecord."""
        return (
            f"<ConflictRecord(conflict_id={self.conflict_id}, "
            f"entity={self.entity_type}:{self.entity_uuid}, resolved={self.is_resolved})>"
        )
