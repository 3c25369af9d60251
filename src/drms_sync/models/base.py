"""Base model classes for the local sync store."""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime, inspect
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from drms_sync.utils.timestamps import utcnow

Base: Any = declarative_base()


class TimestampMixin:
    """Mixin for adding timestamp fields to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class SerializableMixin:
    """Column-driven ``to_dict`` for API responses."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        result = {}
        for attr in inspect(self).mapper.column_attrs:
            value = getattr(self, attr.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            result[attr.key] = value
        return result

    def __repr__(self) -> str:
        """Return string representation."""
        return f"<{self.__class__.__name__}(id={getattr(self, 'id', None)})>"
