"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect running executions with nothing left in the queue
- Re-queue polls for external tasks whose poll row was lost
- Reset orphaned queued nodes and resume the execution
"""

import asyncio
from datetime import timedelta
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import select, update

from constants import DEFAULT_PROVIDER
from core.logging import get_logger
from models.database import ExecutionStatus, NodeStatus, NodeTask, WorkflowExecution, utcnow
from models.payloads import PollApiStatusPayload
from services.queue import seconds_from_now

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.orchestrator import ExecutionOrchestrator
    from services.queue import TaskQueue

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that recovers abandoned workflow executions.

    An execution is abandoned when it is still ``running``, older than the
    grace period, and has no pending or processing queue rows. That happens
    when a worker dies between a node state change and its queue insert, or
    when an operator deletes queue rows by hand.
    """

    def __init__(self, database: "Database", settings: "Settings",
                 queue: "TaskQueue", orchestrator: "ExecutionOrchestrator"):
        self.database = database
        self.settings = settings
        self.queue = queue
        self.orchestrator = orchestrator
        self.grace_seconds = settings.recovery_grace_seconds
        self.sweep_interval = settings.recovery_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    grace_seconds=self.grace_seconds,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> List[int]:
        """Single sweep iteration. Returns the execution ids that were recovered."""
        threshold = utcnow() - timedelta(seconds=self.grace_seconds)
        async with self.database.get_session() as session:
            result = await session.execute(
                select(WorkflowExecution.id)
                .where(WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                       WorkflowExecution.created_at < threshold)
                .order_by(WorkflowExecution.id.asc())
            )
            candidates = list(result.scalars().all())

        if not candidates:
            return []

        logger.debug("Sweeping running executions", count=len(candidates))

        recovered = []
        for execution_id in candidates:
            try:
                if await self._check_execution(execution_id):
                    recovered.append(execution_id)
            except Exception as e:
                logger.error("Failed to check execution",
                             execution_id=execution_id, error=str(e))
        return recovered

    async def _check_execution(self, execution_id: int) -> bool:
        """Recover one execution if nothing in the queue will move it forward."""
        if await self.queue.active_count(execution_id):
            return False

        async with self.database.get_session() as session:
            result = await session.execute(
                select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.id.asc())
            )
            tasks = list(result.scalars().all())

            repolled = 0
            for task in tasks:
                if task.status == NodeStatus.PROCESSING.value and task.external_task_id:
                    inputs = task.input_data or {}
                    session.add(self.queue.new_entry(
                        PollApiStatusPayload(
                            node_task_id=task.id,
                            execution_id=execution_id,
                            external_task_id=task.external_task_id,
                            provider=inputs.get('_provider') or DEFAULT_PROVIDER,
                            api_key=inputs.get('_resolved_api_key'),
                            max_polls=self.settings.poll_max_polls,
                        ),
                        priority=self.settings.poll_priority,
                        not_before=seconds_from_now(self.settings.poll_interval),
                    ))
                    repolled += 1

            # Queued or processing without a queue row will never run
            orphaned = [
                t.id for t in tasks
                if t.status == NodeStatus.QUEUED.value
                or (t.status == NodeStatus.PROCESSING.value and not t.external_task_id)
            ]
            if orphaned:
                await session.execute(
                    update(NodeTask)
                    .where(NodeTask.id.in_(orphaned),
                           NodeTask.status.in_((NodeStatus.QUEUED.value, NodeStatus.PROCESSING.value)),
                           NodeTask.external_task_id.is_(None))
                    .values(status=NodeStatus.PENDING.value, started_at=None)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()

        logger.info("Triggering recovery", execution_id=execution_id,
                    repolled=repolled, reset=len(orphaned))
        if not repolled:
            await self.orchestrator.advance(execution_id)
        return True
