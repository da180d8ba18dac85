"""Durable task queue backed by the ``task_queue`` table.

Lifecycle of a row:

    pending --claim--> processing --complete--> completed
                           |
                           +--fail / stale release--> pending (attempts + 1)
                           |
                           +--attempts exhausted--> failed (propagated to the
                                                    node task and execution)

The claim is a single conditional bulk UPDATE, so two workers racing for the
same rows can never both flip them to ``processing``.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.database import Database
from core.logging import get_logger
from models.database import (
    ExecutionStatus,
    NodeStatus,
    NodeTask,
    QueueEntry,
    QueueStatus,
    TaskType,
    WorkflowExecution,
    utcnow,
)
from models.payloads import NodeExecutionPayload, PollApiStatusPayload, encode_payload

logger = get_logger(__name__)

Payload = Union[NodeExecutionPayload, PollApiStatusPayload]

_TERMINAL_NODE_STATUSES = (NodeStatus.COMPLETED.value, NodeStatus.FAILED.value)
_ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


def seconds_from_now(seconds: float) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


async def propagate_failure(session: AsyncSession, node_task_id: Optional[int],
                            execution_id: Optional[int], error: str) -> None:
    """Mark a node task and its execution failed inside the caller's transaction.

    Both updates are conditional on the row not already being terminal, so a
    late failure never overwrites a completed node or a finished execution.
    """
    now = utcnow()
    if node_task_id is not None:
        await session.execute(
            update(NodeTask)
            .where(NodeTask.id == node_task_id,
                   NodeTask.status.notin_(_TERMINAL_NODE_STATUSES))
            .values(status=NodeStatus.FAILED.value, error_message=error[:2000], completed_at=now)
        )
    if execution_id is not None:
        await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id,
                   WorkflowExecution.status == ExecutionStatus.RUNNING.value)
            .values(status=ExecutionStatus.FAILED.value, error_message=error[:2000], completed_at=now)
        )


class TaskQueue:
    """Enqueue, claim and settle queue rows."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    # ========================================================================
    # Producing
    # ========================================================================

    def new_entry(self, payload: Payload, priority: int = 0,
                  not_before: Optional[datetime] = None) -> QueueEntry:
        """Build an unsaved row so callers can add it in their own transaction."""
        if isinstance(payload, NodeExecutionPayload):
            node_task_id = payload.task_id
        else:
            node_task_id = payload.node_task_id
        return QueueEntry(
            task_type=payload.task_type,
            payload=encode_payload(payload),
            status=QueueStatus.PENDING.value,
            priority=priority,
            scheduled_at=not_before or utcnow(),
            attempts=0,
            max_attempts=self.settings.worker_max_attempts,
            execution_id=payload.execution_id,
            node_task_id=node_task_id,
        )

    async def enqueue(self, payload: Payload, priority: int = 0,
                      not_before: Optional[datetime] = None) -> int:
        """Insert a pending row and return its id."""
        entry = self.new_entry(payload, priority=priority, not_before=not_before)
        async with self.database.get_session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        logger.debug("Task enqueued", queue_task_id=entry.id, task_type=entry.task_type,
                     priority=priority, scheduled_at=entry.scheduled_at.isoformat())
        return entry.id

    # ========================================================================
    # Claiming
    # ========================================================================

    async def claim_batch(self, limit: int, worker_id: str) -> List[QueueEntry]:
        """Atomically claim up to ``limit`` due rows for ``worker_id``.

        Candidates are ordered by priority (desc), created_at, id. The outer
        WHERE re-checks ``status = pending`` so a row another worker flipped
        first is simply not updated here.
        """
        now = utcnow()
        candidates = (
            select(QueueEntry.id)
            .where(
                QueueEntry.status == QueueStatus.PENDING.value,
                QueueEntry.scheduled_at <= now,
                QueueEntry.attempts < QueueEntry.max_attempts,
            )
            .order_by(QueueEntry.priority.desc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
            .limit(limit)
        )
        if self.database.supports_skip_locked:
            candidates = candidates.with_for_update(skip_locked=True)

        async with self.database.get_session() as session:
            result = await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id.in_(candidates.scalar_subquery()),
                       QueueEntry.status == QueueStatus.PENDING.value)
                .values(status=QueueStatus.PROCESSING.value, locked_at=now, locked_by=worker_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if not result.rowcount:
                return []

            rows = await session.execute(
                select(QueueEntry)
                .where(QueueEntry.locked_by == worker_id,
                       QueueEntry.status == QueueStatus.PROCESSING.value)
                .order_by(QueueEntry.priority.desc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
            )
            claimed = list(rows.scalars().all())

        logger.debug("Claimed tasks", worker_id=worker_id, count=len(claimed))
        return claimed

    async def release_stale(self, timeout_seconds: Optional[int] = None) -> int:
        """Return rows locked longer than ``timeout_seconds`` to pending.

        Releasing consumes an attempt. A row whose attempts reach
        ``max_attempts`` is failed instead and the failure is propagated.
        Returns the number of rows touched.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.settings.worker_lock_timeout
        threshold = utcnow() - timedelta(seconds=timeout)
        touched = 0

        async with self.database.get_session() as session:
            result = await session.execute(
                select(QueueEntry)
                .where(QueueEntry.status == QueueStatus.PROCESSING.value,
                       QueueEntry.locked_at < threshold)
            )
            stale = list(result.scalars().all())

            for entry in stale:
                attempts = entry.attempts + 1
                exhausted = attempts >= entry.max_attempts
                values: Dict[str, Any] = {
                    "attempts": attempts,
                    "locked_at": None,
                    "locked_by": None,
                }
                if exhausted:
                    error = f"Lock expired after {attempts} attempts (worker {entry.locked_by})"
                    values.update(status=QueueStatus.FAILED.value, last_error=error)
                else:
                    values.update(status=QueueStatus.PENDING.value)

                res = await session.execute(
                    update(QueueEntry)
                    .where(QueueEntry.id == entry.id,
                           QueueEntry.status == QueueStatus.PROCESSING.value,
                           QueueEntry.locked_at < threshold)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    continue
                touched += 1
                if exhausted:
                    await propagate_failure(session, entry.node_task_id, entry.execution_id, values["last_error"])
                    logger.warning("Stale task failed permanently", queue_task_id=entry.id,
                                   attempts=attempts)
                else:
                    logger.info("Released stale lock", queue_task_id=entry.id,
                                previous_worker=entry.locked_by, attempts=attempts)

            await session.commit()

        return touched

    # ========================================================================
    # Settling
    # ========================================================================

    async def complete(self, entry_id: int) -> None:
        async with self.database.get_session() as session:
            await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id)
                .values(status=QueueStatus.COMPLETED.value, locked_at=None, locked_by=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def fail(self, entry_id: int, error: str) -> bool:
        """Record a task failure.

        Returns True when the row was rescheduled for another attempt and
        False when it became terminally failed.
        """
        error = (error or "Unknown error")[:2000]
        async with self.database.get_session() as session:
            entry = await session.get(QueueEntry, entry_id)
            if entry is None:
                logger.warning("Cannot fail missing queue task", queue_task_id=entry_id)
                return False

            attempts = entry.attempts + 1
            if attempts < entry.max_attempts:
                await session.execute(
                    update(QueueEntry)
                    .where(QueueEntry.id == entry_id)
                    .values(status=QueueStatus.PENDING.value, attempts=attempts,
                            scheduled_at=seconds_from_now(self.settings.queue_retry_delay),
                            locked_at=None, locked_by=None, last_error=error)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                logger.warning("Task failed, will retry", queue_task_id=entry_id,
                               attempts=attempts, max_attempts=entry.max_attempts, error=error)
                return True

            await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id)
                .values(status=QueueStatus.FAILED.value, attempts=attempts,
                        locked_at=None, locked_by=None, last_error=error)
                .execution_options(synchronize_session=False)
            )
            await propagate_failure(session, entry.node_task_id, entry.execution_id, error)
            await session.commit()

        logger.error("Task failed permanently", queue_task_id=entry_id,
                     attempts=attempts, error=error)
        return False

    async def unlock(self, entry_ids: Iterable[int], worker_id: str) -> int:
        """Hand claimed-but-unstarted rows back without consuming an attempt."""
        ids = list(entry_ids)
        if not ids:
            return 0
        async with self.database.get_session() as session:
            result = await session.execute(
                update(QueueEntry)
                .where(QueueEntry.id.in_(ids),
                       QueueEntry.locked_by == worker_id,
                       QueueEntry.status == QueueStatus.PROCESSING.value)
                .values(status=QueueStatus.PENDING.value, locked_at=None, locked_by=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount or 0

    # ========================================================================
    # Queries
    # ========================================================================

    async def has_active_node_task(self, node_task_id: int,
                                   session: Optional[AsyncSession] = None) -> bool:
        """Whether a pending/processing node_execution row exists for the node task."""
        stmt = (
            select(func.count(QueueEntry.id))
            .where(QueueEntry.node_task_id == node_task_id,
                   QueueEntry.task_type == TaskType.NODE_EXECUTION.value,
                   QueueEntry.status.in_(_ACTIVE_QUEUE_STATUSES))
        )
        if session is not None:
            return bool((await session.execute(stmt)).scalar_one())
        async with self.database.get_session() as own:
            return bool((await own.execute(stmt)).scalar_one())

    async def active_count(self, execution_id: int) -> int:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(func.count(QueueEntry.id))
                .where(QueueEntry.execution_id == execution_id,
                       QueueEntry.status.in_(_ACTIVE_QUEUE_STATUSES))
            )
            return result.scalar_one()

    async def stats(self) -> Dict[str, Any]:
        """Row counts per status and task type, plus the oldest due pending row age."""
        async with self.database.get_session() as session:
            grouped = await session.execute(
                select(QueueEntry.status, QueueEntry.task_type, func.count(QueueEntry.id))
                .group_by(QueueEntry.status, QueueEntry.task_type)
            )
            oldest = await session.execute(
                select(func.min(QueueEntry.scheduled_at))
                .where(QueueEntry.status == QueueStatus.PENDING.value)
            )
            oldest_pending = oldest.scalar_one_or_none()

        by_status: Dict[str, int] = {s.value: 0 for s in QueueStatus}
        by_type: Dict[str, Dict[str, int]] = {}
        for status, task_type, count in grouped.all():
            by_status[status] = by_status.get(status, 0) + count
            by_type.setdefault(task_type, {})[status] = count

        lag = None
        if oldest_pending is not None:
            lag = max(0.0, (utcnow() - oldest_pending).total_seconds())

        return {
            "by_status": by_status,
            "by_type": by_type,
            "oldest_pending_lag_seconds": round(lag, 1) if lag is not None else None,
        }
