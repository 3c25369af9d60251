"""Key/value sync metadata persisted next to the queue."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from drms_sync.models.base import Base
from drms_sync.utils.timestamps import utcnow

LAST_SYNC_ATTEMPT = "last_sync_attempt"
LAST_SUCCESSFUL_SYNC = "last_successful_sync"
PULL_CURSOR = "pull_cursor"


class SyncStateEntry(Base):
    """Single persisted sync metadata value."""

    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
