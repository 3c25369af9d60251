"""Conflict detection and resolution.

A conflict exists when the server reports a version strictly newer than the
version the local edit was based on. The record is persisted unresolved before
any strategy runs, so a crash mid-resolution never loses it.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from drms_sync.config import Settings, get_settings
from drms_sync.models.conflict import (
    SYSTEM_RESOLVER,
    ConflictRecord,
    ResolutionSide,
    ResolutionStrategy,
)
from drms_sync.models.sync_queue import SyncQueueItem
from drms_sync.schemas.sync import ConflictFilters, ConflictStats
from drms_sync.schemas.transport import PushResult
from drms_sync.sync.conflict_store import ConflictStore
from drms_sync.utils.exceptions import PayloadValidationError
from drms_sync.utils.id_generator import new_conflict_id
from drms_sync.utils.logging import audit_logger, get_logger
from drms_sync.utils.timestamps import parse_timestamp, utcnow

logger = get_logger(__name__)

ResolutionListener = Callable[[ConflictRecord], None]

_TIMESTAMP_KEYS = ("lastModified", "last_modified", "updatedAt", "updated_at")


def _modified_at(data: Optional[Dict[str, Any]]) -> Optional[datetime]:
    if not data:
        return None
    for key in _TIMESTAMP_KEYS:
        if data.get(key) is not None:
            return parse_timestamp(data[key])
    return None


class ConflictResolver:
    """Creates conflict records and resolves them by the configured strategy."""

    def __init__(
        self,
        store: ConflictStore,
        strategy: Optional[Union[ResolutionStrategy, str]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the resolver.

        Args:
            store: Conflict audit log
            strategy: Overrides ``settings.conflict_strategy``
            settings: Application settings
            clock: Source of naive UTC timestamps
        """
        self.store = store
        self.settings = settings or get_settings()
        self.strategy = ResolutionStrategy(strategy or self.settings.conflict_strategy)
        self.clock = clock
        self._listeners: List[ResolutionListener] = []

    @staticmethod
    def is_conflict(local_version: int, server_version: Optional[int]) -> bool:
        """A conflict needs a strictly newer server version."""
        return server_version is not None and server_version > local_version

    def on_resolved(self, listener: ResolutionListener) -> Callable[[], None]:
        """Register a resolution listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def handle_conflict(
        self, item: SyncQueueItem, outcome: PushResult
    ) -> Optional[ConflictRecord]:
        """Record a conflict reported for ``item`` and apply the strategy.

        Args:
            item: Queue item whose push was answered with a conflict
            outcome: Server verdict carrying the server version and data

        Returns:
            The conflict record, resolved unless the strategy is manual, or
            None when the outcome does not describe a real conflict
        """
        if not self.is_conflict(item.local_version, outcome.server_version):
            logger.warning(
                "conflict_ignored_not_newer",
                item_id=item.id,
                local_version=item.local_version,
                server_version=outcome.server_version,
            )
            return None

        server_version = int(outcome.server_version or 0)
        detected_at = self.clock()
        record = ConflictRecord(
            conflict_id=new_conflict_id(detected_at),
            entity_type=item.entity_type,
            entity_uuid=item.entity_uuid,
            queue_item_id=item.id,
            created_at=detected_at,
            local_version=item.local_version,
            server_version=server_version,
            local_data=dict(item.payload or {}),
            server_data=outcome.server_data,
            resolution_strategy=self.strategy.value,
            is_resolved=False,
            conflict_metadata={
                "conflictReason": (
                    f"Version mismatch: local v{item.local_version}, "
                    f"server v{server_version}"
                ),
                "action": item.action,
                "priority": item.priority,
                "autoResolved": False,
            },
        )
        self.store.add(record)
        audit_logger.log_conflict_detected(
            record.conflict_id,
            record.entity_type,
            record.entity_uuid,
            record.local_version,
            record.server_version,
        )

        if self.strategy == ResolutionStrategy.MANUAL:
            logger.info(
                "conflict_awaiting_operator",
                conflict_id=record.conflict_id,
                entity_uuid=record.entity_uuid,
            )
            return record

        return self.resolve_last_write_wins(record, outcome.server_last_modified)

    def _pick_winner(
        self, record: ConflictRecord, server_last_modified: Any
    ) -> Tuple[ResolutionSide, str, Optional[datetime], Optional[datetime]]:
        local_ts = _modified_at(record.local_data)
        server_ts = parse_timestamp(server_last_modified) or _modified_at(
            record.server_data
        )

        if local_ts is None or server_ts is None:
            return (
                ResolutionSide.SERVER,
                "modification time missing, server wins by tie-break",
                local_ts,
                server_ts,
            )
        if local_ts > server_ts:
            return ResolutionSide.LOCAL, "local modified later", local_ts, server_ts
        if server_ts > local_ts:
            return ResolutionSide.SERVER, "server modified later", local_ts, server_ts
        return (
            ResolutionSide.SERVER,
            "equal modification times, server wins by tie-break",
            local_ts,
            server_ts,
        )

    def resolve_last_write_wins(
        self, record: ConflictRecord, server_last_modified: Any = None
    ) -> ConflictRecord:
        """Resolve in favour of the strictly later modification.

        Equal or missing timestamps resolve to the server copy. The losing
        version stays on the record for audit.
        """
        winner, detail, local_ts, server_ts = self._pick_winner(
            record, server_last_modified
        )
        loser = ResolutionSide.LOCAL if winner == ResolutionSide.SERVER else ResolutionSide.SERVER
        resolved_data = record.local_data if winner == ResolutionSide.LOCAL else record.server_data

        resolved = self.store.mark_resolved(
            record.conflict_id,
            resolved_data=resolved_data,
            resolved_by=SYSTEM_RESOLVER,
            strategy=ResolutionStrategy.LAST_WRITE_WINS.value,
            metadata={
                "autoResolved": True,
                "winningSide": winner.value,
                "losingSide": loser.value,
                "conflictReason": f"{record.conflict_reason}; {detail}",
                "localLastModified": local_ts.isoformat() if local_ts else None,
                "serverLastModified": server_ts.isoformat() if server_ts else None,
            },
            resolved_at=self.clock(),
        )
        audit_logger.log_conflict_resolved(
            resolved.conflict_id,
            ResolutionStrategy.LAST_WRITE_WINS.value,
            SYSTEM_RESOLVER,
            winner.value,
        )
        self._notify(resolved)
        return resolved

    def resolve_manually(
        self,
        conflict_id: str,
        resolved_data: Dict[str, Any],
        resolved_by: str,
    ) -> ConflictRecord:
        """Operator override of an unresolved conflict.

        Raises:
            PayloadValidationError: No resolved version was given
            ConflictNotFoundError: Unknown conflict id
            ConflictAlreadyResolvedError: The conflict was already resolved
        """
        if resolved_data is None:
            raise PayloadValidationError(
                f"Manual resolution of {conflict_id} needs the version to keep"
            )

        resolved = self.store.mark_resolved(
            conflict_id,
            resolved_data=resolved_data,
            resolved_by=resolved_by,
            strategy=ResolutionStrategy.MANUAL.value,
            metadata={"autoResolved": False, "winningSide": ResolutionSide.MANUAL.value},
            resolved_at=self.clock(),
        )
        audit_logger.log_conflict_resolved(
            resolved.conflict_id,
            ResolutionStrategy.MANUAL.value,
            resolved_by,
            ResolutionSide.MANUAL.value,
        )
        self._notify(resolved)
        return resolved

    def _notify(self, record: ConflictRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(
                    "conflict_listener_failed",
                    conflict_id=record.conflict_id,
                    error=str(e),
                )

    def get_conflict_history(
        self, filters: Optional[ConflictFilters] = None, limit: Optional[int] = None
    ) -> List[ConflictRecord]:
        """Conflict history, newest first."""
        return self.store.history(filters, limit)

    def get_conflict_stats(self) -> ConflictStats:
        """Aggregate conflict statistics."""
        return self.store.stats()

    def export_csv(self, filters: Optional[ConflictFilters] = None) -> str:
        """CSV export of the conflict history."""
        return self.store.export_csv(filters)
