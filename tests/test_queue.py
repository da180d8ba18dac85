"""Tests for the durable task queue."""

import asyncio
from datetime import timedelta

from sqlalchemy import select, text, update

from conftest import load, seed_execution
from models.database import (
    ExecutionStatus,
    NodeStatus,
    NodeTask,
    QueueEntry,
    QueueStatus,
    WorkflowExecution,
    utcnow,
)
from models.payloads import NodeExecutionPayload, PollApiStatusPayload
from services.queue import seconds_from_now


def node_payload(task_id: int = 1, execution_id: int = 1) -> NodeExecutionPayload:
    return NodeExecutionPayload(execution_id=execution_id, task_id=task_id,
                                node_id=f"n{task_id}", node_type="text-input")


# ============================================================================
# Enqueue / claim
# ============================================================================


class TestClaim:

    async def test_enqueue_stores_denormalized_ids(self, queue, database):
        entry_id = await queue.enqueue(node_payload(task_id=7, execution_id=3), priority=1)

        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.task_type == "node_execution"
        assert entry.execution_id == 3
        assert entry.node_task_id == 7
        assert entry.max_attempts == 3
        assert "task_type" not in entry.payload
        assert entry.payload["task_id"] == 7

    async def test_claim_orders_by_priority_then_age(self, queue):
        low = await queue.enqueue(node_payload(1), priority=0)
        high = await queue.enqueue(node_payload(2), priority=5)
        mid = await queue.enqueue(node_payload(3), priority=1)

        claimed = await queue.claim_batch(10, "w1")

        assert [e.id for e in claimed] == [high, mid, low]
        assert all(e.status == QueueStatus.PROCESSING.value for e in claimed)
        assert all(e.locked_by == "w1" for e in claimed)

    async def test_claim_returns_rows_when_lock_time_is_truncated(self, queue, database, monkeypatch):
        # Emulate a DATETIME column without fractional seconds
        async with database.get_session() as session:
            await session.execute(text(
                "CREATE TRIGGER truncate_locked_at AFTER UPDATE OF locked_at ON task_queue "
                "WHEN length(NEW.locked_at) > 19 "
                "BEGIN UPDATE task_queue SET locked_at = substr(NEW.locked_at, 1, 19) WHERE id = NEW.id; END"
            ))
            await session.commit()
        entry_id = await queue.enqueue(node_payload(1))
        claim_time = (utcnow() + timedelta(seconds=1)).replace(microsecond=654321)
        monkeypatch.setattr("services.queue.utcnow", lambda: claim_time)

        claimed = await queue.claim_batch(5, "w1")

        assert [e.id for e in claimed] == [entry_id]
        assert claimed[0].locked_at == claim_time.replace(microsecond=0)

    async def test_future_rows_are_not_claimed(self, queue):
        await queue.enqueue(node_payload(1), not_before=seconds_from_now(60))

        assert await queue.claim_batch(5, "w1") == []

    async def test_concurrent_claims_never_share_a_row(self, queue):
        ids = [await queue.enqueue(node_payload(i)) for i in range(1, 11)]

        batches = await asyncio.gather(
            queue.claim_batch(5, "w1"),
            queue.claim_batch(5, "w2"),
            queue.claim_batch(5, "w3"),
        )

        claimed = [e.id for batch in batches for e in batch]
        assert len(claimed) == len(set(claimed))
        assert sorted(claimed) == ids
        for worker_id, batch in zip(("w1", "w2", "w3"), batches):
            assert all(e.locked_by == worker_id for e in batch)

    async def test_unlock_returns_rows_without_consuming_attempts(self, queue, database):
        entry_id = await queue.enqueue(node_payload(1))
        await queue.claim_batch(1, "w1")

        assert await queue.unlock([entry_id], "other-worker") == 0
        assert await queue.unlock([entry_id], "w1") == 1

        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempts == 0
        assert entry.locked_by is None


# ============================================================================
# Failure handling
# ============================================================================


class TestFailure:

    async def test_fail_reschedules_until_attempts_exhausted(self, queue, database):
        execution_id, (task_id,) = await seed_execution(
            database, [{"node_id": "a", "node_type": "video-gen", "status": NodeStatus.QUEUED.value}]
        )
        entry_id = await queue.enqueue(node_payload(task_id, execution_id))

        assert await queue.fail(entry_id, "boom") is True
        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempts == 1
        assert entry.scheduled_at > utcnow() + timedelta(seconds=20)

        assert await queue.fail(entry_id, "boom") is True
        assert await queue.fail(entry_id, "boom again") is False

        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.FAILED.value
        assert entry.attempts == 3
        assert entry.last_error == "boom again"

        node = await load(database, NodeTask, task_id)
        assert node.status == NodeStatus.FAILED.value
        assert node.error_message == "boom again"
        execution = await load(database, WorkflowExecution, execution_id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message == "boom again"

    async def test_failure_does_not_overwrite_completed_node(self, queue, database):
        execution_id, (task_id,) = await seed_execution(
            database, [{"node_id": "a", "node_type": "video-gen", "status": NodeStatus.COMPLETED.value}]
        )
        entry_id = await queue.enqueue(node_payload(task_id, execution_id))
        async with database.get_session() as session:
            await session.execute(update(QueueEntry).where(QueueEntry.id == entry_id).values(attempts=2))
            await session.commit()

        assert await queue.fail(entry_id, "late failure") is False

        node = await load(database, NodeTask, task_id)
        assert node.status == NodeStatus.COMPLETED.value

    async def test_release_stale_returns_old_locks(self, queue, database):
        entry_id = await queue.enqueue(node_payload(1))
        fresh_id = await queue.enqueue(node_payload(2))
        await queue.claim_batch(2, "dead-worker")
        async with database.get_session() as session:
            await session.execute(
                update(QueueEntry).where(QueueEntry.id == entry_id)
                .values(locked_at=utcnow() - timedelta(seconds=700))
            )
            await session.commit()

        assert await queue.release_stale() == 1

        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.attempts == 1
        assert entry.locked_by is None
        fresh = await load(database, QueueEntry, fresh_id)
        assert fresh.status == QueueStatus.PROCESSING.value

    async def test_release_stale_fails_exhausted_rows(self, queue, database):
        execution_id, (task_id,) = await seed_execution(
            database, [{"node_id": "a", "node_type": "video-gen", "status": NodeStatus.PROCESSING.value}]
        )
        entry_id = await queue.enqueue(node_payload(task_id, execution_id))
        await queue.claim_batch(1, "dead-worker")
        async with database.get_session() as session:
            await session.execute(
                update(QueueEntry).where(QueueEntry.id == entry_id)
                .values(attempts=2, locked_at=utcnow() - timedelta(seconds=700))
            )
            await session.commit()

        assert await queue.release_stale() == 1

        entry = await load(database, QueueEntry, entry_id)
        assert entry.status == QueueStatus.FAILED.value
        assert "Lock expired after 3 attempts" in entry.last_error
        node = await load(database, NodeTask, task_id)
        assert node.status == NodeStatus.FAILED.value


# ============================================================================
# Queries
# ============================================================================


class TestQueries:

    async def test_has_active_node_task_ignores_polls_and_settled_rows(self, queue):
        entry_id = await queue.enqueue(node_payload(task_id=4))
        await queue.enqueue(PollApiStatusPayload(node_task_id=9, execution_id=1, external_task_id="ext"))

        assert await queue.has_active_node_task(4) is True
        assert await queue.has_active_node_task(9) is False

        await queue.complete(entry_id)
        assert await queue.has_active_node_task(4) is False

    async def test_active_count_and_stats(self, queue):
        await queue.enqueue(node_payload(1, execution_id=5))
        done = await queue.enqueue(node_payload(2, execution_id=5))
        await queue.enqueue(PollApiStatusPayload(node_task_id=3, execution_id=6, external_task_id="x"))
        await queue.complete(done)

        assert await queue.active_count(5) == 1

        stats = await queue.stats()
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_type"]["poll_api_status"] == {"pending": 1}
        assert stats["oldest_pending_lag_seconds"] is not None
