"""Read models for queue statistics, conflict queries and engine status."""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from drms_sync.models.sync_queue import EntityType
from drms_sync.utils.timestamps import to_naive_utc


class CamelModel(BaseModel):
    """Serialized with camelCase keys for operator tooling."""

    model_config = ConfigDict(populate_by_name=True)


class QueueStats(CamelModel):
    """Counts over the local sync queue."""

    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict, alias="byStatus")
    by_type: Dict[str, int] = Field(default_factory=dict, alias="byType")
    by_action: Dict[str, int] = Field(default_factory=dict, alias="byAction")
    ready: int = Field(default=0, description="Pending plus due retryable failures")
    oldest_pending: Optional[datetime] = Field(default=None, alias="oldestPending")
    avg_attempts: float = Field(default=0.0, alias="avgAttempts")

    @property
    def pending(self) -> int:
        """Number of pending items."""
        return self.by_status.get("pending", 0)

    @property
    def failed(self) -> int:
        """Number of failed items."""
        return self.by_status.get("failed", 0)

    @property
    def conflict(self) -> int:
        """Number of items closed by a conflict."""
        return self.by_status.get("conflict", 0)


class ConflictFilters(CamelModel):
    """Filters for conflict history, listing and export."""

    entity_type: Optional[EntityType] = Field(default=None, alias="entityType")
    entity_uuid: Optional[str] = Field(default=None, alias="entityUuid")
    resolved: Optional[bool] = None
    date_from: Optional[datetime] = Field(default=None, alias="dateFrom")
    date_to: Optional[datetime] = Field(default=None, alias="dateTo")

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Stored timestamps are naive UTC."""
        return to_naive_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_date_range(self) -> "ConflictFilters":
        """Start date must not be after end date."""
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("dateFrom must be before dateTo")
        return self


class ConflictStats(CamelModel):
    """Aggregate view of the conflict audit log."""

    total_conflicts: int = Field(default=0, alias="totalConflicts")
    unresolved_conflicts: int = Field(default=0, alias="unresolvedConflicts")
    auto_resolved_conflicts: int = Field(default=0, alias="autoResolvedConflicts")
    manually_resolved_conflicts: int = Field(
        default=0, alias="manuallyResolvedConflicts"
    )
    resolution_rate: float = Field(default=0.0, alias="resolutionRate")
    conflicts_by_type: Dict[str, int] = Field(
        default_factory=lambda: {t.value: 0 for t in EntityType},
        alias="conflictsByType",
    )
    recent_conflicts: List[Dict[str, Any]] = Field(
        default_factory=list, alias="recentConflicts"
    )


class SyncPhase(str, enum.Enum):
    """Engine connectivity state machine."""

    OFFLINE = "offline"
    SETTLING = "settling"
    DRAINING = "draining"
    IDLE = "idle"


class SyncStatusSnapshot(CamelModel):
    """Observable engine state handed to subscribers."""

    is_online: bool = Field(default=False, alias="isOnline")
    phase: SyncPhase = SyncPhase.OFFLINE
    sync_in_progress: bool = Field(default=False, alias="syncInProgress")
    progress: int = Field(default=0, ge=0, le=100)
    last_sync_attempt: Optional[datetime] = Field(default=None, alias="lastSyncAttempt")
    last_successful_sync: Optional[datetime] = Field(
        default=None, alias="lastSuccessfulSync"
    )
    pending_count: int = Field(default=0, alias="pendingCount")
    failed_count: int = Field(default=0, alias="failedCount")
    conflict_count: int = Field(default=0, alias="conflictCount")
    auto_sync_enabled: bool = Field(default=False, alias="autoSyncEnabled")
    halted: bool = False
    last_error: Optional[str] = Field(default=None, alias="lastError")


class DrainResult(CamelModel):
    """Outcome of one drain."""

    started_at: datetime = Field(..., alias="startedAt")
    finished_at: Optional[datetime] = Field(default=None, alias="finishedAt")
    batches: int = 0
    processed: int = 0
    synced: int = 0
    conflicts: int = 0
    failed: int = 0
    retryable_failures: int = Field(default=0, alias="retryableFailures")
    conflict_ids: List[str] = Field(default_factory=list, alias="conflictIds")
    failed_item_ids: List[str] = Field(default_factory=list, alias="failedItemIds")
    skipped_reason: Optional[str] = Field(default=None, alias="skippedReason")
    interrupted: bool = False

    @property
    def skipped(self) -> bool:
        """True when no drain ran (offline, halted)."""
        return self.skipped_reason is not None
