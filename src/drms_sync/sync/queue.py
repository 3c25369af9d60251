"""Durable, priority-ordered queue of local mutations.

Every operation runs in its own short transaction and never awaits, so a
status transition is atomic with respect to the event loop. The ``syncing``
status is the per-item lock; ``dequeue_batch`` only hands out the oldest live
item of each entity, which keeps per-entity order strictly FIFO.
"""

import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from drms_sync.config import Settings, get_settings
from drms_sync.core.database import session_scope
from drms_sync.models.sync_queue import (
    LIVE_STATUSES,
    EntityType,
    QueueStatus,
    SyncAction,
    SyncQueueItem,
)
from drms_sync.schemas.payloads import BasePayload, dump_payload, parse_payload
from drms_sync.schemas.sync import QueueStats
from drms_sync.utils.exceptions import (
    CorruptQueueStateError,
    PayloadValidationError,
    QueueStorageError,
)
from drms_sync.utils.id_generator import new_queue_item_id
from drms_sync.utils.logging import get_logger
from drms_sync.utils.pagination import PaginatedResponse, PaginationParams, paginate
from drms_sync.utils.timestamps import utcnow

logger = get_logger(__name__)

DEFAULT_PRIORITY = 5

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]
_KNOWN_VALUES = [status.value for status in QueueStatus]


def _is_disk_full(error: OperationalError) -> bool:
    return "database or disk is full" in str(error.orig).lower()


class SyncQueue:
    """Persistent store of pending mutations."""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the queue.

        Args:
            session_factory: Session factory bound to the local database
            settings: Capacity and retry policy
            clock: Source of naive UTC timestamps
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def max_attempts(self) -> int:
        """Attempts after which an item needs a manual retry."""
        return self.settings.max_attempts

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before retry number ``attempts``."""
        s = self.settings
        delay = s.retry_initial_delay_seconds * (
            s.retry_exponential_base ** max(attempts - 1, 0)
        )
        delay = min(delay, s.retry_max_delay_seconds)
        if s.retry_jitter:
            delay = delay * (0.5 + random.random())
        return delay

    # Producing side

    def enqueue(
        self,
        entity_type: Union[EntityType, str],
        action: Union[SyncAction, str],
        entity_uuid: str,
        payload: Union[BasePayload, Dict[str, Any], None],
        priority: int = DEFAULT_PRIORITY,
        local_version: Optional[int] = None,
    ) -> SyncQueueItem:
        """Persist a new pending mutation.

        Args:
            entity_type: Entity family
            action: create, update or delete
            entity_uuid: Identifier of the mutated record
            payload: Mutation payload, validated against ``entity_type``
            priority: Lower numbers sync first
            local_version: Version the edit is based on; defaults to the
                payload's ``version``

        Returns:
            The stored item

        Raises:
            PayloadValidationError: Unknown type/action or invalid payload
            QueueStorageError: The database stayed full after eviction
        """
        try:
            action_value = SyncAction(action).value
        except ValueError as e:
            raise PayloadValidationError(f"Unknown sync action: {action}") from e
        if not entity_uuid:
            raise PayloadValidationError("entity_uuid is required")

        parsed = parse_payload(entity_type, payload)
        values: Dict[str, Any] = {
            "entity_type": EntityType(entity_type).value,
            "action": action_value,
            "entity_uuid": entity_uuid,
            "payload": dump_payload(parsed),
            "local_version": local_version if local_version is not None else parsed.version,
            "priority": priority,
        }

        try:
            item = self._insert(values)
        except OperationalError as e:
            if not _is_disk_full(e):
                raise QueueStorageError(f"Could not store sync item: {e}") from e
            logger.warning("sync_queue_storage_full", entity_uuid=entity_uuid)
            with session_scope(self.session_factory) as session:
                self._evict_one(session, reason="storage_full")
            try:
                item = self._insert(values, check_capacity=False)
            except OperationalError as retry_error:
                raise QueueStorageError(
                    f"Sync queue storage is full: {retry_error}"
                ) from retry_error

        logger.info(
            "sync_item_enqueued",
            item_id=item.id,
            entity_type=item.entity_type,
            action=item.action,
            entity_uuid=item.entity_uuid,
            priority=item.priority,
        )
        return item

    def _insert(self, values: Dict[str, Any], check_capacity: bool = True) -> SyncQueueItem:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            if check_capacity and self._live_count(session) >= self.settings.queue_capacity:
                self._evict_one(session, reason="capacity")

            sequence = (session.scalar(select(func.max(SyncQueueItem.sequence))) or 0) + 1
            item = SyncQueueItem(
                id=new_queue_item_id(now),
                sequence=sequence,
                status=QueueStatus.PENDING.value,
                attempts=0,
                retryable=True,
                created_at=now,
                updated_at=now,
                **values,
            )
            session.add(item)
            session.flush()
            return item

    def _live_count(self, session: Session) -> int:
        return session.scalar(
            select(func.count())
            .select_from(SyncQueueItem)
            .where(SyncQueueItem.status.in_(_LIVE_VALUES))
        ) or 0

    def _evict_one(self, session: Session, reason: str) -> Optional[SyncQueueItem]:
        victim = session.scalars(
            select(SyncQueueItem)
            .where(SyncQueueItem.status == QueueStatus.PENDING.value)
            .order_by(
                SyncQueueItem.priority.desc(),
                SyncQueueItem.created_at.asc(),
                SyncQueueItem.sequence.asc(),
            )
            .limit(1)
        ).first()

        if victim is None:
            logger.error(
                "sync_queue_over_capacity",
                reason=reason,
                capacity=self.settings.queue_capacity,
            )
            return None

        session.delete(victim)
        session.flush()
        logger.warning(
            "sync_queue_item_evicted",
            reason=reason,
            item_id=victim.id,
            entity_type=victim.entity_type,
            entity_uuid=victim.entity_uuid,
            priority=victim.priority,
        )
        return victim

    # Consuming side

    def dequeue_batch(self, max_items: Optional[int] = None) -> List[SyncQueueItem]:
        """Claim the next batch for pushing.

        Due retryable failures are promoted back to ``pending`` first. Only the
        oldest live item of each entity is eligible, and only when it is
        ``pending``; candidates are ordered by priority, then age.

        Args:
            max_items: Batch size; defaults to ``sync_batch_size``

        Returns:
            Items now in ``syncing``

        Raises:
            CorruptQueueStateError: Persisted rows cannot be interpreted
        """
        limit = max_items or self.settings.sync_batch_size
        now = self.clock()

        with session_scope(self.session_factory) as session:
            self._check_integrity(session)
            self._promote_due_failures(session, now)

            try:
                live = session.scalars(
                    select(SyncQueueItem)
                    .where(SyncQueueItem.status.in_(_LIVE_VALUES))
                    .order_by(SyncQueueItem.created_at, SyncQueueItem.sequence)
                ).all()
            except (ValueError, TypeError) as e:
                raise CorruptQueueStateError(f"Unreadable sync queue row: {e}") from e

            heads: Dict[str, SyncQueueItem] = {}
            for item in live:
                heads.setdefault(item.entity_uuid, item)

            candidates = [
                item for item in heads.values() if item.status == QueueStatus.PENDING.value
            ]
            candidates.sort(key=lambda i: (i.priority, i.created_at, i.sequence))

            batch = candidates[:limit]
            for item in batch:
                item.status = QueueStatus.SYNCING.value
                item.last_attempt_at = now
                item.updated_at = now

        if batch:
            logger.debug("sync_batch_dequeued", size=len(batch))
        return batch

    def _check_integrity(self, session: Session) -> None:
        unknown = session.scalars(
            select(SyncQueueItem.status)
            .where(SyncQueueItem.status.not_in(_KNOWN_VALUES))
            .limit(1)
        ).first()
        if unknown is not None:
            raise CorruptQueueStateError(f"Unknown sync queue status: {unknown!r}")

    def _promote_due_failures(self, session: Session, now: datetime) -> int:
        failed = session.scalars(
            select(SyncQueueItem).where(
                SyncQueueItem.status == QueueStatus.FAILED.value,
                SyncQueueItem.retryable.is_(True),
                SyncQueueItem.attempts < self.max_attempts,
            )
        ).all()

        promoted = 0
        for item in failed:
            if item.is_due(now):
                item.status = QueueStatus.PENDING.value
                item.updated_at = now
                promoted += 1
        return promoted

    # Outcome transitions

    def _claimed_item(
        self, session: Session, item_id: str, target: QueueStatus
    ) -> Optional[SyncQueueItem]:
        item = session.get(SyncQueueItem, item_id)
        if item is None:
            logger.warning("sync_item_missing", item_id=item_id, target=target.value)
            return None
        if item.status != QueueStatus.SYNCING.value:
            logger.warning(
                "sync_item_invalid_transition",
                item_id=item_id,
                current=item.status,
                target=target.value,
            )
            return None
        return item

    def mark_synced(self, item_id: str, server_version: Optional[int] = None) -> bool:
        """Record a successful push.

        Later live items of the same entity based on an older version are
        rebased onto ``server_version``.
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            item = self._claimed_item(session, item_id, QueueStatus.SYNCED)
            if item is None:
                return False

            item.status = QueueStatus.SYNCED.value
            item.synced_at = now
            item.updated_at = now
            item.server_version = server_version
            item.last_error = None
            item.next_retry_at = None

            if server_version is not None:
                later = session.scalars(
                    select(SyncQueueItem).where(
                        SyncQueueItem.entity_uuid == item.entity_uuid,
                        SyncQueueItem.id != item.id,
                        SyncQueueItem.status.in_(
                            [QueueStatus.PENDING.value, QueueStatus.FAILED.value]
                        ),
                        SyncQueueItem.local_version < server_version,
                    )
                ).all()
                for follower in later:
                    follower.local_version = server_version
                    follower.updated_at = now

        logger.info("sync_item_synced", item_id=item_id, server_version=server_version)
        return True

    def mark_failed(self, item_id: str, error: str, retryable: bool = True) -> bool:
        """Record a failed push attempt and schedule the next one.

        Args:
            item_id: Item that failed
            error: Failure description kept on the item
            retryable: False for permanent failures such as validation errors

        Returns:
            True if the transition was applied
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            item = self._claimed_item(session, item_id, QueueStatus.FAILED)
            if item is None:
                return False

            item.attempts += 1
            item.status = QueueStatus.FAILED.value
            item.last_error = error
            item.updated_at = now

            if retryable and item.attempts < self.max_attempts:
                item.retryable = True
                item.next_retry_at = now + timedelta(
                    seconds=self.backoff_delay(item.attempts)
                )
            else:
                item.retryable = False
                item.next_retry_at = None

            attempts = item.attempts
            next_retry_at = item.next_retry_at

        logger.warning(
            "sync_item_failed",
            item_id=item_id,
            error=error,
            attempts=attempts,
            retryable=next_retry_at is not None,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        return True

    def mark_conflict(self, item_id: str, conflict_id: str) -> bool:
        """Close an item whose push was answered with a version conflict."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            item = self._claimed_item(session, item_id, QueueStatus.CONFLICT)
            if item is None:
                return False

            item.status = QueueStatus.CONFLICT.value
            item.conflict_id = conflict_id
            item.updated_at = now
            item.next_retry_at = None

        logger.info("sync_item_conflicted", item_id=item_id, conflict_id=conflict_id)
        return True

    # Queries

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        """Get a queue item by id."""
        with session_scope(self.session_factory) as session:
            return session.get(SyncQueueItem, item_id)

    def list_items(
        self,
        status: Optional[Union[QueueStatus, str]] = None,
        entity_type: Optional[Union[EntityType, str]] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PaginatedResponse[Dict[str, Any]]:
        """List queue items in processing order."""
        params = PaginationParams(page=page, page_size=page_size)
        stmt = select(SyncQueueItem)
        if status is not None:
            stmt = stmt.where(SyncQueueItem.status == QueueStatus(status).value)
        if entity_type is not None:
            stmt = stmt.where(SyncQueueItem.entity_type == EntityType(entity_type).value)

        stmt = stmt.order_by(
            SyncQueueItem.priority, SyncQueueItem.created_at, SyncQueueItem.sequence
        )

        with session_scope(self.session_factory) as session:
            return paginate(session, stmt, params)

    def stats(self) -> QueueStats:
        """Counts by status, type and action plus retry readiness."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            by_status = {
                str(status): count
                for status, count in session.execute(
                    select(SyncQueueItem.status, func.count()).group_by(SyncQueueItem.status)
                ).all()
            }
            by_type = {
                str(entity_type): count
                for entity_type, count in session.execute(
                    select(SyncQueueItem.entity_type, func.count()).group_by(
                        SyncQueueItem.entity_type
                    )
                ).all()
            }
            by_action = {
                str(action): count
                for action, count in session.execute(
                    select(SyncQueueItem.action, func.count()).group_by(SyncQueueItem.action)
                ).all()
            }
            oldest_pending = session.scalar(
                select(func.min(SyncQueueItem.created_at)).where(
                    SyncQueueItem.status == QueueStatus.PENDING.value
                )
            )
            avg_attempts = session.scalar(select(func.avg(SyncQueueItem.attempts)))
            due_failures = session.scalar(
                select(func.count())
                .select_from(SyncQueueItem)
                .where(
                    SyncQueueItem.status == QueueStatus.FAILED.value,
                    SyncQueueItem.retryable.is_(True),
                    SyncQueueItem.attempts < self.max_attempts,
                    (SyncQueueItem.next_retry_at.is_(None))
                    | (SyncQueueItem.next_retry_at <= now),
                )
            ) or 0

        for status in QueueStatus:
            by_status.setdefault(status.value, 0)

        return QueueStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            by_action=by_action,
            ready=by_status[QueueStatus.PENDING.value] + due_failures,
            oldest_pending=oldest_pending,
            avg_attempts=round(float(avg_attempts or 0.0), 2),
        )

    def next_retry_due(self) -> Optional[datetime]:
        """Earliest time an automatically retryable failure becomes due.

        Returns:
            None when no failed item will be retried without an operator
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            scheduled = session.scalars(
                select(SyncQueueItem.next_retry_at).where(
                    SyncQueueItem.status == QueueStatus.FAILED.value,
                    SyncQueueItem.retryable.is_(True),
                    SyncQueueItem.attempts < self.max_attempts,
                )
            ).all()

        if not scheduled:
            return None
        return min(when or now for when in scheduled)

    # Operator actions

    def reprioritize(self, item_id: str, priority: int) -> bool:
        """Change the priority of a pending or failed item."""
        with session_scope(self.session_factory) as session:
            item = session.get(SyncQueueItem, item_id)
            if item is None or item.status not in (
                QueueStatus.PENDING.value,
                QueueStatus.FAILED.value,
            ):
                return False
            item.priority = priority
            item.updated_at = self.clock()
        return True

    def reprioritize_type(self, entity_type: Union[EntityType, str], priority: int) -> int:
        """Change the priority of every waiting item of one entity family."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            items = session.scalars(
                select(SyncQueueItem).where(
                    SyncQueueItem.entity_type == EntityType(entity_type).value,
                    SyncQueueItem.status.in_(
                        [QueueStatus.PENDING.value, QueueStatus.FAILED.value]
                    ),
                )
            ).all()
            for item in items:
                item.priority = priority
                item.updated_at = now
            count = len(items)

        logger.info(
            "sync_queue_reprioritized",
            entity_type=EntityType(entity_type).value,
            priority=priority,
            count=count,
        )
        return count

    def retry_failed(self) -> int:
        """Reset every failed item to pending, ignoring backoff and attempts."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            items = session.scalars(
                select(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.FAILED.value)
            ).all()
            for item in items:
                item.status = QueueStatus.PENDING.value
                item.attempts = 0
                item.retryable = True
                item.next_retry_at = None
                item.updated_at = now
            count = len(items)

        logger.info("sync_failed_items_reset", count=count)
        return count

    def clear_failed(self) -> int:
        """Discard every failed item."""
        with session_scope(self.session_factory) as session:
            result = session.execute(
                delete(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.FAILED.value)
            )
            count = result.rowcount or 0

        logger.warning("sync_failed_items_cleared", count=count)
        return count

    def prune_completed(self, older_than: Optional[timedelta] = None) -> int:
        """Delete synced and conflicted items past the retention window."""
        retention = older_than
        if retention is None:
            retention = timedelta(hours=self.settings.completed_retention_hours)
        cutoff = self.clock() - retention

        with session_scope(self.session_factory) as session:
            result = session.execute(
                delete(SyncQueueItem).where(
                    SyncQueueItem.status.in_(
                        [QueueStatus.SYNCED.value, QueueStatus.CONFLICT.value]
                    ),
                    SyncQueueItem.updated_at < cutoff,
                )
            )
            count = result.rowcount or 0

        if count:
            logger.info("sync_queue_pruned", count=count, cutoff=cutoff.isoformat())
        return count

    def recover_interrupted(self) -> int:
        """Return items left in ``syncing`` by a crash to ``pending``."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            items = session.scalars(
                select(SyncQueueItem).where(
                    SyncQueueItem.status == QueueStatus.SYNCING.value
                )
            ).all()
            for item in items:
                item.status = QueueStatus.PENDING.value
                item.updated_at = now
            count = len(items)

        if count:
            logger.warning("sync_items_recovered", count=count)
        return count
