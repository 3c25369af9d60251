"""Tests for the durable sync queue.

Runs against a real SQLite file; only the clock is controlled.
"""

import sqlite3
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from drms_sync.core.database import session_scope
from drms_sync.models.sync_queue import QueueStatus, SyncQueueItem
from drms_sync.sync.queue import SyncQueue
from drms_sync.utils.exceptions import (
    CorruptQueueStateError,
    PayloadValidationError,
    QueueStorageError,
)
from tests.mocks import assessment_payload, response_payload


def _enqueue(queue, entity_uuid, priority=5, **payload_fields):
    return queue.enqueue(
        "assessment",
        "update",
        entity_uuid,
        assessment_payload(**payload_fields),
        priority=priority,
    )


class TestEnqueue:
    """Test producing side of the queue."""

    def test_enqueue_persists_pending_item(self, queue):
        """Test a valid mutation is stored as pending."""
        item = _enqueue(queue, "a1", version=3)

        stored = queue.get(item.id)
        assert stored is not None
        assert stored.id.startswith("sq_")
        assert stored.status == QueueStatus.PENDING.value
        assert stored.priority == 5
        assert stored.attempts == 0
        assert stored.local_version == 3
        assert stored.entity_type == "assessment"
        assert "entity_type" not in stored.payload
        assert stored.payload["assessmentType"] == "RAPID"

    def test_explicit_local_version_wins_over_payload(self, queue):
        """Test local_version argument overrides the payload version."""
        item = queue.enqueue(
            "assessment", "create", "a1", assessment_payload(version=1), local_version=4
        )

        assert item.local_version == 4

    def test_sequence_increases(self, queue):
        """Test each item gets a later sequence number."""
        first = _enqueue(queue, "a1")
        second = _enqueue(queue, "a2")

        assert second.sequence == first.sequence + 1

    def test_unknown_entity_type_rejected(self, queue):
        """Test unknown entity families never reach the store."""
        with pytest.raises(PayloadValidationError):
            queue.enqueue("donor", "update", "d1", {"version": 1})

        assert queue.stats().total == 0

    def test_unknown_action_rejected(self, queue):
        """Test unknown mutation kinds are rejected."""
        with pytest.raises(PayloadValidationError):
            queue.enqueue("assessment", "upsert", "a1", assessment_payload())

    def test_mismatched_payload_tag_rejected(self, queue):
        """Test a payload tagged for another entity family is rejected."""
        with pytest.raises(PayloadValidationError):
            queue.enqueue("assessment", "update", "a1", {"entity_type": "response"})

    def test_response_payload_accepted(self, queue):
        """Test the response family validates through the same envelope."""
        item = queue.enqueue("response", "create", "r1", response_payload())

        assert item.entity_type == "response"
        assert "entity_type" not in item.payload
        assert item.payload["responseType"] == "FOOD"


class TestCapacity:
    """Test bounded eviction when the queue is full."""

    def test_evicts_largest_priority_number_oldest_first(
        self, session_factory, settings, clock
    ):
        """Test one pending low-priority item is evicted for a new one."""
        queue = SyncQueue(
            session_factory, settings.model_copy(update={"queue_capacity": 3}), clock=clock
        )
        urgent = _enqueue(queue, "a1", priority=1)
        clock.advance(1)
        old_low = _enqueue(queue, "a2", priority=9)
        clock.advance(1)
        new_low = _enqueue(queue, "a3", priority=9)
        clock.advance(1)
        with capture_logs() as logs:
            latest = _enqueue(queue, "a4", priority=5)

        assert queue.get(old_low.id) is None
        evictions = [log for log in logs if log["event"] == "sync_queue_item_evicted"]
        assert len(evictions) == 1
        assert evictions[0]["item_id"] == old_low.id
        assert evictions[0]["reason"] == "capacity"
        assert evictions[0]["log_level"] == "warning"
        for kept in (urgent, new_low, latest):
            assert queue.get(kept.id) is not None
        assert queue.stats().total == 3

    def test_over_capacity_when_nothing_evictable(self, session_factory, settings, clock):
        """Test the new mutation is kept when no pending item can be dropped."""
        queue = SyncQueue(
            session_factory, settings.model_copy(update={"queue_capacity": 1}), clock=clock
        )
        first = _enqueue(queue, "a1")
        queue.dequeue_batch()

        second = _enqueue(queue, "a2")

        assert queue.get(first.id).status == QueueStatus.SYNCING.value
        assert queue.get(second.id).status == QueueStatus.PENDING.value

    def test_completed_items_do_not_count(self, session_factory, settings, clock):
        """Test synced items do not use capacity."""
        queue = SyncQueue(
            session_factory, settings.model_copy(update={"queue_capacity": 1}), clock=clock
        )
        first = _enqueue(queue, "a1")
        queue.dequeue_batch()
        queue.mark_synced(first.id, 2)

        second = _enqueue(queue, "a2")

        assert queue.get(first.id) is not None
        assert queue.get(second.id) is not None

    def test_disk_full_evicts_and_retries(self, queue, clock, monkeypatch):
        """Test a full database evicts one pending item and stores the new one."""
        kept = _enqueue(queue, "a1", priority=1)
        clock.advance(1)
        victim = _enqueue(queue, "a2", priority=9)
        insert = queue._insert
        attempts = []

        def full_once(values, check_capacity=True):
            attempts.append(check_capacity)
            if len(attempts) == 1:
                raise OperationalError(
                    "INSERT", {}, sqlite3.OperationalError("database or disk is full")
                )
            return insert(values, check_capacity=check_capacity)

        monkeypatch.setattr(queue, "_insert", full_once)
        with capture_logs() as logs:
            latest = _enqueue(queue, "a3")

        assert attempts == [True, False]
        assert queue.get(victim.id) is None
        assert queue.get(kept.id) is not None
        assert queue.get(latest.id).status == QueueStatus.PENDING.value
        events = [log["event"] for log in logs]
        assert "sync_queue_storage_full" in events
        evictions = [log for log in logs if log["event"] == "sync_queue_item_evicted"]
        assert [log["item_id"] for log in evictions] == [victim.id]
        assert evictions[0]["reason"] == "storage_full"

    def test_disk_still_full_raises(self, queue, monkeypatch):
        """Test a database that stays full after eviction surfaces a storage error."""
        _enqueue(queue, "a1")

        def always_full(values, check_capacity=True):
            raise OperationalError(
                "INSERT", {}, sqlite3.OperationalError("database or disk is full")
            )

        monkeypatch.setattr(queue, "_insert", always_full)
        with pytest.raises(QueueStorageError):
            _enqueue(queue, "a2")



class TestDequeue:
    """Test batch selection, ordering and per-entity locking."""

    def test_orders_by_priority_then_age(self, queue, clock):
        """Test lower priority numbers are dequeued first."""
        low = _enqueue(queue, "e1", priority=5)
        clock.advance(1)
        high = _enqueue(queue, "e2", priority=1)
        clock.advance(1)
        mid = _enqueue(queue, "e3", priority=3)
        clock.advance(1)
        mid_later = _enqueue(queue, "e4", priority=3)

        batch = queue.dequeue_batch()

        assert [item.id for item in batch] == [high.id, mid.id, mid_later.id, low.id]
        assert all(item.status == QueueStatus.SYNCING.value for item in batch)
        assert all(item.last_attempt_at == clock.now for item in batch)

    def test_respects_max_items(self, queue):
        """Test the batch size limit."""
        for index in range(5):
            _enqueue(queue, f"e{index}")

        assert len(queue.dequeue_batch(2)) == 2
        assert len(queue.dequeue_batch(10)) == 3

    def test_entity_items_processed_in_creation_order(self, queue, clock):
        """Test three edits of one entity come out one at a time, oldest first."""
        created = []
        for index in range(3):
            created.append(_enqueue(queue, "r1", priority=5 - index))
            clock.advance(1)

        seen = []
        for _ in range(3):
            batch = queue.dequeue_batch()
            assert len(batch) == 1
            seen.append(batch[0].id)
            queue.mark_synced(batch[0].id)

        assert seen == [item.id for item in created]
        assert queue.dequeue_batch() == []

    def test_entity_in_flight_is_not_handed_out_again(self, queue, clock):
        """Test no two items of one entity are syncing at the same time."""
        _enqueue(queue, "r1")
        clock.advance(1)
        _enqueue(queue, "r1")
        _enqueue(queue, "e2")

        first = queue.dequeue_batch()
        second = queue.dequeue_batch()

        assert sorted(item.entity_uuid for item in first) == ["e2", "r1"]
        assert second == []

    def test_failed_head_blocks_entity_until_due(self, queue, clock):
        """Test a failed item keeps later edits of its entity waiting."""
        head = _enqueue(queue, "r1")
        clock.advance(1)
        follower = _enqueue(queue, "r1")

        queue.dequeue_batch()
        queue.mark_failed(head.id, "HTTP 503")

        assert queue.dequeue_batch() == []

        clock.advance(30)
        batch = queue.dequeue_batch()

        assert [item.id for item in batch] == [head.id]
        assert batch[0].attempts == 1
        assert queue.get(follower.id).status == QueueStatus.PENDING.value

    def test_unknown_status_raises_corrupt_state(self, queue, session_factory):
        """Test uninterpretable rows propagate instead of being skipped."""
        item = _enqueue(queue, "a1")
        with session_scope(session_factory) as session:
            session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item.id)
                .values(status="bogus")
            )

        with pytest.raises(CorruptQueueStateError):
            queue.dequeue_batch()


class TestTransitions:
    """Test outcome transitions and backoff."""

    def test_mark_synced(self, queue, clock):
        """Test syncing to synced records the server version."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()

        assert queue.mark_synced(item.id, server_version=2) is True

        stored = queue.get(item.id)
        assert stored.status == QueueStatus.SYNCED.value
        assert stored.server_version == 2
        assert stored.synced_at == clock.now

    def test_mark_synced_rebases_followers(self, queue, clock):
        """Test later edits of the entity move onto the confirmed version."""
        head = _enqueue(queue, "a1")
        clock.advance(1)
        follower = _enqueue(queue, "a1")
        queue.dequeue_batch()

        queue.mark_synced(head.id, server_version=2)

        assert queue.get(follower.id).local_version == 2

    def test_transition_from_wrong_status_is_rejected(self, queue):
        """Test invalid transitions return False and change nothing."""
        item = _enqueue(queue, "a1")

        assert queue.mark_synced(item.id) is False
        assert queue.mark_failed(item.id, "boom") is False
        assert queue.mark_conflict(item.id, "conflict_x") is False
        assert queue.mark_synced("sq_missing") is False
        assert queue.get(item.id).status == QueueStatus.PENDING.value

    def test_backoff_schedule_until_max_attempts(self, queue, clock):
        """Test exponential backoff and the switch to manual retry."""
        item = _enqueue(queue, "a1")

        queue.dequeue_batch()
        queue.mark_failed(item.id, "timeout")
        stored = queue.get(item.id)
        assert stored.attempts == 1
        assert stored.retryable is True
        assert stored.next_retry_at == clock.now + timedelta(seconds=30)

        clock.advance(30)
        queue.dequeue_batch()
        queue.mark_failed(item.id, "timeout")
        stored = queue.get(item.id)
        assert stored.attempts == 2
        assert stored.next_retry_at == clock.now + timedelta(seconds=60)

        clock.advance(60)
        queue.dequeue_batch()
        queue.mark_failed(item.id, "timeout")
        stored = queue.get(item.id)
        assert stored.attempts == 3
        assert stored.retryable is False
        assert stored.next_retry_at is None

        clock.advance(10_000)
        assert queue.dequeue_batch() == []

    def test_permanent_failure_is_not_retried(self, queue, clock):
        """Test non-retryable failures wait for an operator."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()

        queue.mark_failed(item.id, "HTTP 422", retryable=False)

        stored = queue.get(item.id)
        assert stored.status == QueueStatus.FAILED.value
        assert stored.retryable is False
        assert stored.last_error == "HTTP 422"
        clock.advance(3600)
        assert queue.dequeue_batch() == []

    def test_backoff_delay_is_capped(self, queue):
        """Test the delay never exceeds the configured maximum."""
        assert queue.backoff_delay(1) == 30
        assert queue.backoff_delay(3) == 120
        assert queue.backoff_delay(20) == 900

    def test_mark_conflict(self, queue):
        """Test syncing to conflict links the conflict record."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()

        assert queue.mark_conflict(item.id, "conflict_1") is True

        stored = queue.get(item.id)
        assert stored.status == QueueStatus.CONFLICT.value
        assert stored.conflict_id == "conflict_1"


class TestQueries:
    """Test statistics and listings."""

    def test_stats(self, queue, clock):
        """Test counts by status, type and action."""
        first = _enqueue(queue, "a1", priority=1)
        clock.advance(1)
        second = _enqueue(queue, "a2", priority=2)
        clock.advance(1)
        third = queue.enqueue("response", "update", "r1", response_payload(), priority=3)

        queue.dequeue_batch(1)
        queue.mark_synced(first.id)
        queue.dequeue_batch(1)
        queue.mark_failed(second.id, "HTTP 503")

        stats = queue.stats()

        assert stats.total == 3
        assert stats.pending == 1
        assert stats.failed == 1
        assert stats.by_status["synced"] == 1
        assert stats.by_status["conflict"] == 0
        assert stats.by_type == {"assessment": 2, "response": 1}
        assert stats.by_action == {"update": 3}
        assert stats.ready == 1
        assert stats.oldest_pending == third.created_at
        assert stats.avg_attempts == 0.33

    def test_stats_serialize_with_camel_case(self, queue):
        """Test stats dump with operator-facing keys."""
        _enqueue(queue, "a1")

        dumped = queue.stats().model_dump(by_alias=True)

        assert dumped["byStatus"]["pending"] == 1
        assert "oldestPending" in dumped

    def test_list_items_paginates(self, queue):
        """Test paginated listing in processing order."""
        for index in range(3):
            _enqueue(queue, f"e{index}", priority=3 - index)

        page = queue.list_items(page=1, page_size=2)

        assert page.total == 3
        assert page.total_pages == 2
        assert page.has_next is True
        assert [item["entity_uuid"] for item in page.items] == ["e2", "e1"]

    def test_list_items_filters_by_status(self, queue):
        """Test status filtering."""
        _enqueue(queue, "a1")
        _enqueue(queue, "a2")
        queue.dequeue_batch(1)

        page = queue.list_items(status="syncing")

        assert page.total == 1


class TestOperatorActions:
    """Test manual queue maintenance."""

    def test_retry_failed_resets_items(self, queue):
        """Test failed items return to pending with a fresh attempt budget."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()
        queue.mark_failed(item.id, "HTTP 422", retryable=False)

        assert queue.retry_failed() == 1

        stored = queue.get(item.id)
        assert stored.status == QueueStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.retryable is True
        assert stored.next_retry_at is None
        assert [i.id for i in queue.dequeue_batch()] == [item.id]

    def test_clear_failed_deletes_only_failed(self, queue):
        """Test clearing leaves other statuses alone."""
        failed = _enqueue(queue, "a1", priority=1)
        pending = _enqueue(queue, "a2", priority=2)
        queue.dequeue_batch(1)
        queue.mark_failed(failed.id, "HTTP 400", retryable=False)

        assert queue.clear_failed() == 1

        assert queue.get(failed.id) is None
        assert queue.get(pending.id) is not None

    def test_reprioritize(self, queue):
        """Test priority changes for waiting items only."""
        waiting = _enqueue(queue, "a1", priority=5)
        in_flight = _enqueue(queue, "a2", priority=1)
        queue.dequeue_batch(1)

        assert queue.reprioritize(waiting.id, 1) is True
        assert queue.reprioritize(in_flight.id, 9) is False
        assert queue.get(waiting.id).priority == 1

    def test_reprioritize_type(self, queue):
        """Test bulk priority change per entity family."""
        _enqueue(queue, "a1")
        _enqueue(queue, "a2")
        queue.enqueue("response", "create", "r1", response_payload())

        assert queue.reprioritize_type("assessment", 1) == 2

        batch = queue.dequeue_batch(2)
        assert {item.entity_type for item in batch} == {"assessment"}

    def test_prune_completed(self, queue, clock):
        """Test synced items past retention are deleted."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()
        queue.mark_synced(item.id)

        assert queue.prune_completed() == 0

        clock.advance(73 * 3600)
        assert queue.prune_completed() == 1
        assert queue.get(item.id) is None

    def test_recover_interrupted(self, queue):
        """Test items left syncing by a crash become pending again."""
        item = _enqueue(queue, "a1")
        queue.dequeue_batch()

        assert queue.recover_interrupted() == 1
        assert queue.get(item.id).status == QueueStatus.PENDING.value
