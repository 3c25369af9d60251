"""Sync orchestration.

The engine owns the connectivity state machine (offline, settling, draining,
idle), drains the queue in batches through the transport, routes per-item
outcomes to the queue and the conflict resolver, and schedules automatic and
accelerated retry drains. At most one drain runs at a time; the in-flight task
is checked and replaced without an intervening ``await``.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from drms_sync.config import Settings, get_settings
from drms_sync.core.database import session_scope
from drms_sync.models.conflict import ConflictRecord, ResolutionSide
from drms_sync.models.sync_queue import EntityType, SyncAction, SyncQueueItem
from drms_sync.models.sync_state import (
    LAST_SUCCESSFUL_SYNC,
    LAST_SYNC_ATTEMPT,
    PULL_CURSOR,
    SyncStateEntry,
)
from drms_sync.schemas.payloads import BasePayload
from drms_sync.schemas.sync import DrainResult, SyncPhase, SyncStatusSnapshot
from drms_sync.schemas.transport import PullChange, PushItem, PushResult, PushStatus
from drms_sync.sync.conflict_resolver import ConflictResolver
from drms_sync.sync.network_monitor import NetworkEvent, NetworkMonitor
from drms_sync.sync.queue import DEFAULT_PRIORITY, SyncQueue
from drms_sync.sync.transport import SyncTransport
from drms_sync.utils.exceptions import (
    BatchRejectedError,
    CorruptQueueStateError,
    TransportError,
)
from drms_sync.utils.logging import bind_sync_context, get_logger
from drms_sync.utils.timestamps import parse_timestamp, utcnow

logger = get_logger(__name__)

StatusListener = Callable[[SyncStatusSnapshot], None]
RemoteChangesListener = Callable[[List[PullChange]], None]


class SyncEngine:
    """Drains the sync queue whenever the device is online."""

    def __init__(
        self,
        queue: SyncQueue,
        transport: SyncTransport,
        resolver: ConflictResolver,
        monitor: NetworkMonitor,
        settings: Optional[Settings] = None,
        settle_delay_seconds: Optional[float] = None,
        auto_sync_interval_minutes: Optional[float] = None,
        accelerated_retry_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the engine.

        Args:
            queue: Local mutation queue
            transport: Client for the server of record
            resolver: Conflict resolver
            monitor: Connectivity monitor driving the state machine
            settings: Application settings; explicit arguments override them
            settle_delay_seconds: Wait after reconnecting before draining
            auto_sync_interval_minutes: Period of automatic drains
            accelerated_retry_seconds: Delay of the retry drain scheduled after
                retryable failures
            batch_size: Items per push
            clock: Source of naive UTC timestamps
        """
        self.queue = queue
        self.transport = transport
        self.resolver = resolver
        self.monitor = monitor
        self.settings = settings or get_settings()
        self.clock = clock

        s = self.settings
        self.settle_delay_seconds = (
            s.settle_delay_seconds if settle_delay_seconds is None else settle_delay_seconds
        )
        self.auto_sync_interval_seconds = 60.0 * (
            s.auto_sync_interval_minutes
            if auto_sync_interval_minutes is None
            else auto_sync_interval_minutes
        )
        self.accelerated_retry_seconds = (
            s.accelerated_retry_seconds
            if accelerated_retry_seconds is None
            else accelerated_retry_seconds
        )
        self.batch_size = batch_size or s.sync_batch_size

        self._current_drain: Optional["asyncio.Task[DrainResult]"] = None
        self._auto_task: Optional["asyncio.Task[None]"] = None
        self._settle_task: Optional["asyncio.Task[None]"] = None
        self._retry_task: Optional["asyncio.Task[None]"] = None
        self._auto_requested = False
        self._halted = False

        self._listeners: List[StatusListener] = []
        self._remote_listeners: List[RemoteChangesListener] = []
        self._unsubscribe_monitor: Optional[Callable[[], None]] = None

        self.resolver.on_resolved(self._on_conflict_resolved)

        online = self.monitor.is_online
        self._status = SyncStatusSnapshot(
            is_online=online,
            phase=SyncPhase.IDLE if online else SyncPhase.OFFLINE,
            last_sync_attempt=parse_timestamp(self._get_state(LAST_SYNC_ATTEMPT)),
            last_successful_sync=parse_timestamp(self._get_state(LAST_SUCCESSFUL_SYNC)),
        )

    # Observable state

    @property
    def status(self) -> SyncStatusSnapshot:
        """Current engine snapshot."""
        return self._status.model_copy()

    @property
    def is_syncing(self) -> bool:
        """True while a drain task is running."""
        return self._current_drain is not None and not self._current_drain.done()

    @property
    def halted(self) -> bool:
        """True after corrupt queue state stopped automatic syncing."""
        return self._halted

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; it receives the current snapshot at once."""
        self._listeners.append(listener)
        self._call_listener(listener, self.status)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_remote_changes(self, listener: RemoteChangesListener) -> Callable[[], None]:
        """Register a consumer of pulled server changes."""
        self._remote_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._remote_listeners:
                self._remote_listeners.remove(listener)

        return unsubscribe

    def _call_listener(self, listener: StatusListener, snapshot: SyncStatusSnapshot) -> None:
        try:
            listener(snapshot)
        except Exception as e:
            logger.error("sync_status_listener_failed", error=str(e))

    def _update(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)
        snapshot = self.status
        for listener in list(self._listeners):
            self._call_listener(listener, snapshot)

    def refresh_counts(self) -> None:
        """Reload queue counts into the snapshot."""
        stats = self.queue.stats()
        self._update(
            pending_count=stats.pending,
            failed_count=stats.failed,
            conflict_count=stats.conflict,
        )

    # Persisted sync metadata

    def _get_state(self, key: str) -> Optional[str]:
        with session_scope(self.queue.session_factory) as session:
            entry = session.get(SyncStateEntry, key)
            return entry.value if entry else None

    def _set_state(self, key: str, value: Optional[str]) -> None:
        with session_scope(self.queue.session_factory) as session:
            entry = session.get(SyncStateEntry, key)
            if entry is None:
                session.add(SyncStateEntry(key=key, value=value, updated_at=self.clock()))
            else:
                entry.value = value
                entry.updated_at = self.clock()

    # Lifecycle

    async def start(self) -> None:
        """Recover interrupted work, attach to the monitor and start probing."""
        recovered = self.queue.recover_interrupted()
        if self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe(self._on_network_event)

        self.refresh_counts()
        if self.settings.auto_sync_enabled:
            self.start_auto_sync()

        self.monitor.start()
        logger.info(
            "sync_engine_started",
            online=self.monitor.is_online,
            recovered=recovered,
            auto_sync=self._auto_requested,
        )
        if self.monitor.is_online:
            self._enter_settling()

    async def stop(self) -> None:
        """Cancel timers and the monitor; let an in-flight drain finish."""
        self._cancel_timers()
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        await self.monitor.stop()

        if self._current_drain is not None:
            await asyncio.gather(self._current_drain, return_exceptions=True)
        logger.info("sync_engine_stopped")

    def _cancel_timers(self) -> None:
        for task in (self._auto_task, self._settle_task, self._retry_task):
            if task is not None and not task.done():
                task.cancel()
        self._auto_task = None
        self._settle_task = None
        self._retry_task = None

    # Connectivity state machine

    def _on_network_event(self, event: NetworkEvent) -> None:
        if event == NetworkEvent.ONLINE:
            self._update(is_online=True)
            self._enter_settling()
            return

        # In-flight pushes complete; the drain loop stops before the next batch
        self._cancel_timers()
        self._update(is_online=False, phase=SyncPhase.OFFLINE)

    def _enter_settling(self) -> None:
        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
        if not self.is_syncing:
            self._update(phase=SyncPhase.SETTLING)
        self._settle_task = asyncio.create_task(self._settle_then_sync())

    async def _settle_then_sync(self) -> None:
        await asyncio.sleep(self.settle_delay_seconds)
        self._settle_task = None
        if not self.monitor.is_online:
            return
        if self._halted:
            self._update(phase=SyncPhase.IDLE)
            return

        if self._auto_requested:
            self._schedule_auto_timer()
        self.trigger_manual_sync()

    # Scheduling

    def start_auto_sync(self, interval_minutes: Optional[float] = None) -> None:
        """Drain periodically while online."""
        if interval_minutes is not None:
            self.auto_sync_interval_seconds = interval_minutes * 60.0
        self._auto_requested = True
        self._update(auto_sync_enabled=True)
        if self.monitor.is_online and not self._halted:
            self._schedule_auto_timer()

    def stop_auto_sync(self) -> None:
        """Stop periodic drains."""
        self._auto_requested = False
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
        self._auto_task = None
        self._update(auto_sync_enabled=False)

    def _schedule_auto_timer(self) -> None:
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
        self._auto_task = asyncio.create_task(self._auto_sync_loop())

    async def _auto_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.auto_sync_interval_seconds)
            if self.monitor.is_online and not self._halted:
                self.trigger_manual_sync()

    def _schedule_accelerated_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._accelerated_retry_loop())
        logger.info("accelerated_retry_scheduled", delay=self.accelerated_retry_seconds)

    async def _accelerated_retry_loop(self) -> None:
        # Ticks until a retryable failure is due; backoff may outlast one tick
        while self.monitor.is_online and not self._halted:
            await asyncio.sleep(self.accelerated_retry_seconds)
            next_due = self.queue.next_retry_due()
            if next_due is None:
                break
            if next_due <= self.clock():
                self._retry_task = None
                self.trigger_manual_sync()
                return
        self._retry_task = None

    # Drains

    def trigger_manual_sync(self) -> "asyncio.Task[DrainResult]":
        """Start a drain, or return the one already running.

        Returns:
            Task resolving to the drain result; a skipped result when offline
            or halted
        """
        if self._current_drain is not None and not self._current_drain.done():
            return self._current_drain

        if not self.monitor.is_online:
            return asyncio.create_task(self._skipped("offline"))
        if self._halted:
            return asyncio.create_task(self._skipped("halted"))

        task = asyncio.create_task(self._drain())
        self._current_drain = task
        task.add_done_callback(self._on_drain_done)
        self._update(sync_in_progress=True, phase=SyncPhase.DRAINING, progress=0)
        return task

    async def _skipped(self, reason: str) -> DrainResult:
        now = self.clock()
        logger.debug("sync_skipped", reason=reason)
        return DrainResult(started_at=now, finished_at=now, skipped_reason=reason)

    def _on_drain_done(self, task: "asyncio.Task[DrainResult]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("drain_failed", error=str(error), error_type=type(error).__name__)

    async def _drain(self) -> DrainResult:
        started_at = self.clock()
        result = DrainResult(started_at=started_at)
        bind_sync_context(drain_started_at=started_at.isoformat())
        self._set_state(LAST_SYNC_ATTEMPT, started_at.isoformat())
        self._update(last_sync_attempt=started_at, last_error=None)
        logger.info("drain_started")

        completed = False
        try:
            eligible = self.queue.stats().ready
            while self.monitor.is_online and not self._halted:
                batch = self.queue.dequeue_batch(self.batch_size)
                if not batch:
                    completed = True
                    break

                result.batches += 1
                await self._push_batch(batch, result)

                progress = 100
                if eligible:
                    progress = min(100, int(result.processed * 100 / eligible))
                self._update(progress=progress)
                self.refresh_counts()

            if not completed:
                result.interrupted = True
                logger.info("drain_interrupted", online=self.monitor.is_online)
        except CorruptQueueStateError as e:
            self._halt(str(e))
            raise
        except Exception as e:
            logger.error("drain_error", error=str(e))
            self._update(last_error=str(e))
            raise
        finally:
            result.finished_at = self.clock()
            self._current_drain = None
            self._finish_drain(result, completed)

        logger.info(
            "drain_completed",
            batches=result.batches,
            processed=result.processed,
            synced=result.synced,
            conflicts=result.conflicts,
            failed=result.failed,
        )
        return result

    def _finish_drain(self, result: DrainResult, completed: bool) -> None:
        changes: Dict[str, Any] = {
            "sync_in_progress": False,
            "phase": SyncPhase.IDLE if self.monitor.is_online else SyncPhase.OFFLINE,
        }
        stats = self.queue.stats()
        if completed:
            changes["progress"] = 100
            if result.failed == 0 and stats.pending == 0 and stats.failed == 0:
                changes["last_successful_sync"] = result.finished_at
                self._set_state(LAST_SUCCESSFUL_SYNC, result.finished_at.isoformat())
        changes.update(
            pending_count=stats.pending,
            failed_count=stats.failed,
            conflict_count=stats.conflict,
        )
        self._update(**changes)

        if (
            self.monitor.is_online
            and not self._halted
            and self.queue.next_retry_due() is not None
        ):
            self._schedule_accelerated_retry()
        self.prune_completed()

    def _halt(self, reason: str) -> None:
        self._halted = True
        self._cancel_timers()
        logger.error("sync_halted", reason=reason)
        self._update(halted=True, last_error=reason)

    def resume(self) -> None:
        """Clear a halt after the operator repaired the local store."""
        if not self._halted:
            return
        self._halted = False
        self._update(halted=False, last_error=None)
        logger.info("sync_resumed")
        if self._auto_requested and self.monitor.is_online:
            self._schedule_auto_timer()

    async def _push_batch(self, batch: List[SyncQueueItem], result: DrainResult) -> None:
        items = [
            PushItem(
                entity_type=item.entity_type,
                action=item.action,
                entity_uuid=item.entity_uuid,
                payload=item.payload,
                local_version=item.local_version,
                offline_id=item.id,
            )
            for item in batch
        ]

        try:
            outcomes = await self.transport.push(items)
        except BatchRejectedError as e:
            logger.error("sync_batch_rejected", size=len(batch), error=str(e))
            self._fail_batch(batch, str(e), retryable=False, result=result)
            return
        except TransportError as e:
            logger.warning("sync_batch_transient_failure", size=len(batch), error=str(e))
            self._fail_batch(batch, str(e), retryable=True, result=result)
            self._update(last_error=str(e))
            return
        except Exception as e:
            self._fail_batch(batch, f"Push failed: {e}", retryable=True, result=result)
            raise

        by_uuid: Dict[str, PushResult] = {outcome.entity_uuid: outcome for outcome in outcomes}
        for item in batch:
            try:
                self._apply_outcome(item, by_uuid.get(item.entity_uuid), result)
            except CorruptQueueStateError:
                raise
            except Exception as e:
                logger.error("sync_outcome_failed", item_id=item.id, error=str(e))
                self._record_failure(
                    item, f"Outcome handling failed: {e}", retryable=True, result=result
                )
            result.processed += 1

    def _fail_batch(
        self, batch: List[SyncQueueItem], error: str, retryable: bool, result: DrainResult
    ) -> None:
        for item in batch:
            self._record_failure(item, error, retryable, result)
            result.processed += 1

    def _apply_outcome(
        self, item: SyncQueueItem, outcome: Optional[PushResult], result: DrainResult
    ) -> None:
        if outcome is None:
            self._record_failure(item, "No result returned for item", True, result)
            return

        if outcome.status == PushStatus.OK:
            if self.queue.mark_synced(item.id, outcome.server_version):
                result.synced += 1
            return

        if outcome.status == PushStatus.CONFLICT:
            record = self.resolver.handle_conflict(item, outcome)
            if record is None:
                self._record_failure(
                    item,
                    f"Conflict without a newer server version ({outcome.server_version})",
                    True,
                    result,
                )
                return
            if self.queue.mark_conflict(item.id, record.conflict_id):
                result.conflicts += 1
                result.conflict_ids.append(record.conflict_id)
            return

        self._record_failure(
            item, outcome.error or "Server rejected item", outcome.retryable, result
        )

    def _record_failure(
        self, item: SyncQueueItem, error: str, retryable: bool, result: DrainResult
    ) -> None:
        if not self.queue.mark_failed(item.id, error, retryable):
            return
        result.failed += 1
        result.failed_item_ids.append(item.id)
        if retryable and item.attempts + 1 < self.queue.max_attempts:
            result.retryable_failures += 1

    # Conflict follow-up

    def _on_conflict_resolved(self, record: ConflictRecord) -> None:
        metadata = record.conflict_metadata or {}
        side = metadata.get("winningSide")
        push_back = side == ResolutionSide.LOCAL.value or (
            side == ResolutionSide.MANUAL.value
            and record.resolved_data is not None
            and record.resolved_data != record.server_data
        )
        if not push_back:
            return

        action = SyncAction.UPDATE
        if metadata.get("action") == SyncAction.DELETE.value:
            action = SyncAction.DELETE

        payload = dict(record.resolved_data or {})
        payload["version"] = record.server_version
        item = self.enqueue(
            record.entity_type,
            action,
            record.entity_uuid,
            payload,
            priority=int(metadata.get("priority", DEFAULT_PRIORITY)),
            local_version=record.server_version,
        )
        logger.info(
            "conflict_resolution_requeued",
            conflict_id=record.conflict_id,
            item_id=item.id,
            winning_side=side,
        )

    # Operator and domain actions

    def enqueue(
        self,
        entity_type: Union[EntityType, str],
        action: Union[SyncAction, str],
        entity_uuid: str,
        payload: Union[BasePayload, Dict[str, Any], None],
        priority: int = DEFAULT_PRIORITY,
        local_version: Optional[int] = None,
    ) -> SyncQueueItem:
        """Queue a mutation and start a drain when online and idle."""
        item = self.queue.enqueue(
            entity_type, action, entity_uuid, payload, priority, local_version
        )
        self.refresh_counts()
        if (
            self.monitor.is_online
            and not self._halted
            and not self.is_syncing
            and self._status.phase != SyncPhase.SETTLING
        ):
            self.trigger_manual_sync()
        return item

    def retry_failed_items(self) -> "asyncio.Task[DrainResult]":
        """Reset every failed item to pending and start a drain."""
        count = self.queue.retry_failed()
        logger.info("sync_retry_failed_items", count=count)
        self.refresh_counts()
        return self.trigger_manual_sync()

    def clear_failed_items(self) -> int:
        """Discard every failed item."""
        count = self.queue.clear_failed()
        self.refresh_counts()
        return count

    def prune_completed(self) -> int:
        """Drop synced and conflicted items older than the retention window."""
        try:
            return self.queue.prune_completed()
        except Exception as e:
            logger.error("sync_queue_prune_failed", error=str(e))
            return 0

    async def pull_remote_changes(self) -> int:
        """Page through server changes since the persisted cursor.

        Returns:
            Number of changes handed to ``on_remote_changes`` listeners
        """
        cursor = self._get_state(PULL_CURSOR)
        total = 0
        while True:
            page = await self.transport.pull(cursor, self.settings.pull_page_limit)
            if page.changes:
                for listener in list(self._remote_listeners):
                    try:
                        listener(page.changes)
                    except Exception as e:
                        logger.error("remote_changes_listener_failed", error=str(e))
                total += len(page.changes)

            if not page.cursor or page.cursor == cursor:
                break
            cursor = page.cursor
            self._set_state(PULL_CURSOR, cursor)
            if not page.has_more:
                break

        logger.info("remote_changes_pulled", count=total, cursor=cursor)
        return total
