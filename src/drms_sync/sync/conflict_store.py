"""Durable conflict audit log.

Records are written once, resolved at most once and never deleted. The store
answers history, statistics and CSV export queries for operators.
"""

import csv
import io
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import Select

from drms_sync.core.database import session_scope
from drms_sync.models.conflict import ConflictRecord
from drms_sync.models.sync_queue import EntityType
from drms_sync.schemas.sync import ConflictFilters, ConflictStats
from drms_sync.utils.exceptions import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
)
from drms_sync.utils.logging import get_logger
from drms_sync.utils.pagination import PaginatedResponse, PaginationParams, paginate
from drms_sync.utils.timestamps import isoformat, utcnow

logger = get_logger(__name__)

CSV_HEADERS = [
    "Conflict ID",
    "Entity Type",
    "Entity ID",
    "Conflict Date",
    "Resolution Method",
    "Local Version",
    "Server Version",
    "Resolved",
    "Resolved At",
    "Resolved By",
    "Auto Resolved",
    "Conflict Reason",
]

RECENT_CONFLICTS_LIMIT = 10


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


class ConflictStore:
    """Persistence and queries over ``ConflictRecord``."""

    def __init__(self, session_factory: sessionmaker):
        """Initialize the store with a session factory for the local database."""
        self.session_factory = session_factory

    def add(self, record: ConflictRecord) -> ConflictRecord:
        """Persist a new conflict record."""
        with session_scope(self.session_factory) as session:
            session.add(record)
            session.flush()
        return record

    def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        """Get a conflict record by id."""
        with session_scope(self.session_factory) as session:
            return session.get(ConflictRecord, conflict_id)

    def mark_resolved(
        self,
        conflict_id: str,
        resolved_data: Optional[Dict[str, Any]],
        resolved_by: str,
        strategy: str,
        metadata: Optional[Dict[str, Any]] = None,
        resolved_at: Optional[datetime] = None,
    ) -> ConflictRecord:
        """Resolve a conflict exactly once.

        Args:
            conflict_id: Record to resolve
            resolved_data: Winning version of the record
            resolved_by: ``system`` or an operator identifier
            strategy: Resolution strategy that produced ``resolved_data``
            metadata: Keys merged into the record metadata
            resolved_at: Resolution time, defaults to now

        Returns:
            The resolved record

        Raises:
            ConflictNotFoundError: No such record
            ConflictAlreadyResolvedError: The record was resolved before
        """
        with session_scope(self.session_factory) as session:
            record = session.get(ConflictRecord, conflict_id)
            if record is None:
                raise ConflictNotFoundError(conflict_id)
            if record.is_resolved:
                raise ConflictAlreadyResolvedError(conflict_id)

            merged = dict(record.conflict_metadata or {})
            merged.update(metadata or {})

            record.resolved_data = resolved_data
            record.resolved_by = resolved_by
            record.resolution_strategy = strategy
            record.resolved_at = resolved_at or utcnow()
            record.is_resolved = True
            # JSON columns are not mutation-tracked; assign a new dict
            record.conflict_metadata = merged
            session.flush()
            return record

    def _filtered(self, filters: Optional[ConflictFilters]) -> Select:
        stmt = select(ConflictRecord)
        if filters is None:
            return stmt

        if filters.entity_type is not None:
            stmt = stmt.where(ConflictRecord.entity_type == filters.entity_type.value)
        if filters.entity_uuid:
            stmt = stmt.where(ConflictRecord.entity_uuid == filters.entity_uuid)
        if filters.resolved is not None:
            stmt = stmt.where(ConflictRecord.is_resolved.is_(filters.resolved))
        if filters.date_from is not None:
            stmt = stmt.where(ConflictRecord.created_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(ConflictRecord.created_at <= filters.date_to)
        return stmt

    @staticmethod
    def _newest_first(stmt: Select) -> Select:
        return stmt.order_by(
            ConflictRecord.created_at.desc(), ConflictRecord.conflict_id.desc()
        )

    def query(
        self,
        filters: Optional[ConflictFilters] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PaginatedResponse[Dict[str, Any]]:
        """Filtered, paginated conflict listing, newest first."""
        params = PaginationParams(page=page, page_size=page_size)
        stmt = self._newest_first(self._filtered(filters))

        with session_scope(self.session_factory) as session:
            return paginate(session, stmt, params)

    def history(
        self, filters: Optional[ConflictFilters] = None, limit: Optional[int] = None
    ) -> List[ConflictRecord]:
        """Conflict records matching ``filters``, newest first."""
        stmt = self._newest_first(self._filtered(filters))
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt).all())

    def stats(self) -> ConflictStats:
        """Aggregate counts, resolution rate and the most recent conflicts."""
        with session_scope(self.session_factory) as session:
            total = session.scalar(select(func.count()).select_from(ConflictRecord)) or 0
            resolved = session.scalars(
                select(ConflictRecord).where(ConflictRecord.is_resolved.is_(True))
            ).all()
            by_type_rows = session.execute(
                select(ConflictRecord.entity_type, func.count()).group_by(
                    ConflictRecord.entity_type
                )
            ).all()
            recent = session.scalars(
                self._newest_first(select(ConflictRecord)).limit(RECENT_CONFLICTS_LIMIT)
            ).all()
            recent_dicts = [record.to_dict() for record in recent]

        auto_resolved = sum(1 for record in resolved if record.auto_resolved)
        manually_resolved = len(resolved) - auto_resolved
        rate = 0.0
        if total:
            rate = round((auto_resolved + manually_resolved) / total * 100, 2)

        conflicts_by_type = {entity_type.value: 0 for entity_type in EntityType}
        for entity_type, count in by_type_rows:
            conflicts_by_type[str(entity_type)] = count

        return ConflictStats(
            total_conflicts=total,
            unresolved_conflicts=total - len(resolved),
            auto_resolved_conflicts=auto_resolved,
            manually_resolved_conflicts=manually_resolved,
            resolution_rate=rate,
            conflicts_by_type=conflicts_by_type,
            recent_conflicts=recent_dicts,
        )

    def export_csv(self, filters: Optional[ConflictFilters] = None) -> str:
        """Render matching conflicts as CSV with a fixed column order."""
        records = self.history(filters)

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
        writer.writerow(CSV_HEADERS)
        for record in records:
            writer.writerow(
                [
                    record.conflict_id,
                    record.entity_type,
                    record.entity_uuid,
                    isoformat(record.created_at),
                    record.resolution_strategy,
                    record.local_version,
                    record.server_version,
                    _yes_no(record.is_resolved),
                    isoformat(record.resolved_at),
                    record.resolved_by or "",
                    _yes_no(record.auto_resolved),
                    record.conflict_reason,
                ]
            )

        logger.info("conflicts_exported", rows=len(records))
        return buffer.getvalue()

    @staticmethod
    def export_filename(
        filters: Optional[ConflictFilters] = None, today: Optional[date] = None
    ) -> str:
        """Attachment name describing the export filters."""
        day = today or utcnow().date()
        name = f"conflict-report-{day.isoformat()}"
        if filters is None:
            return f"{name}.csv"

        if filters.entity_type is not None:
            name += f"-{filters.entity_type.value}"
        if filters.resolved is not None:
            name += "-resolved" if filters.resolved else "-unresolved"

        date_from = filters.date_from.date().isoformat() if filters.date_from else None
        date_to = filters.date_to.date().isoformat() if filters.date_to else None
        if date_from and date_to:
            name += f"-{date_from}-to-{date_to}"
        elif date_from:
            name += f"-from-{date_from}"
        elif date_to:
            name += f"-until-{date_to}"

        return f"{name}.csv"
