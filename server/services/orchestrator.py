"""Execution Orchestrator - drives a workflow execution to completion.

State machine for one execution::

    running --advance--> (queue next ready node) --run_node--> ... --finalize-->
        running (next iteration) | completed | failed

Only one node of an execution is in flight (queued or processing) at a time.
Every lifecycle transition is a conditional UPDATE on the expected prior
state, so a duplicate queue row or a second worker can never double-run a
node or double-advance an iteration.
"""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import delete, select, update

from constants import MANUAL_TRIGGER_TYPE, SYNCHRONOUS_RESULT_NODE_TYPES, DEFAULT_PROVIDER, gallery_item_type
from core.logging import get_logger
from models.database import (
    ExecutionStatus,
    GalleryItem,
    NodeStatus,
    NodeTask,
    Workflow,
    WorkflowExecution,
    utcnow,
)
from models.payloads import NodeExecutionPayload, PollApiStatusPayload
from services.exceptions import (
    DuplicateExecutionGuard,
    InsufficientCredits,
    NodeExecutionError,
    TaskNotFound,
    WorkflowError,
)
from services.queue import propagate_failure, seconds_from_now
from services.workflow_graph import WorkflowGraph

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.credits import CreditLedger
    from services.node_executor import ExecutionResult, NodeExecutor
    from services.pricing import PricingService
    from services.queue import TaskQueue
    from services.storage import ArtifactStorage
    from services.workflow_graph import GraphResolver

logger = get_logger(__name__)

_ACTIVE_NODE_STATUSES = (NodeStatus.QUEUED.value, NodeStatus.PROCESSING.value)

TEMPORARY_RESULT_WARNING = (
    "This result is stored on the API provider's temporary storage and may be "
    "deleted. Please download immediately."
)


class ExecutionOrchestrator:
    """Starts executions, runs nodes, advances and finalizes iterations."""

    def __init__(
        self,
        database: "Database",
        settings: "Settings",
        queue: "TaskQueue",
        credits: "CreditLedger",
        pricing: "PricingService",
        executor: "NodeExecutor",
        resolver: "GraphResolver",
        storage: "ArtifactStorage",
    ):
        self.database = database
        self.settings = settings
        self.queue = queue
        self.credits = credits
        self.pricing = pricing
        self.executor = executor
        self.resolver = resolver
        self.storage = storage

    # ========================================================================
    # Starting
    # ========================================================================

    def _effective_repeat_count(self, graph: WorkflowGraph, requested: Optional[int]) -> int:
        """Clamp the requested repeat count; a manual trigger with
        ``enableRepeat`` overrides it with its own ``repeatCount``."""
        limit = self.settings.max_repeat_count
        repeat = max(1, min(limit, int(requested or 1)))
        for node in graph.definition.nodes:
            if node.type == MANUAL_TRIGGER_TYPE and node.data.get('enableRepeat'):
                try:
                    node_repeat = int(node.data.get('repeatCount') or 1)
                except (TypeError, ValueError):
                    node_repeat = 1
                repeat = max(1, min(limit, node_repeat))
        return repeat

    async def start_execution(
        self,
        user_id: int,
        workflow_id: Optional[int] = None,
        workflow_data: Optional[Dict[str, Any]] = None,
        repeat_count: Optional[int] = 1,
    ) -> WorkflowExecution:
        """Create an execution with one pending node task per graph node and
        queue the first ready node.

        Args:
            user_id: Owner charged for node costs
            workflow_id: Saved workflow to run (its graph is snapshotted)
            workflow_data: Graph JSON to run instead of a saved workflow
            repeat_count: Requested iterations, clamped to [1, max_repeat_count]

        Raises:
            TaskNotFound: unknown workflow_id
            WorkflowError: empty or invalid graph
            WorkflowCycleError: graph is not a DAG
            InsufficientCredits: balance below cost x iterations
        """
        if workflow_data is None:
            if workflow_id is None:
                raise WorkflowError("Either workflow_id or workflow_data is required")
            async with self.database.get_session() as session:
                workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                raise TaskNotFound("Workflow", workflow_id)
            workflow_data = workflow.json_data

        graph = WorkflowGraph.from_json(workflow_data)
        if not graph.node_ids:
            raise WorkflowError("Workflow has no nodes to execute")
        order = graph.topological_order()
        repeat = self._effective_repeat_count(graph, repeat_count)

        total_cost = await self.pricing.estimate_workflow_cost(
            [node.type for node in graph.definition.nodes], repeat
        )
        if total_cost > 0:
            balance = await self.credits.balance(user_id)
            if balance < total_cost:
                raise InsufficientCredits(total_cost, balance)

        async with self.database.get_session() as session:
            execution = WorkflowExecution(
                user_id=user_id,
                workflow_id=workflow_id,
                status=ExecutionStatus.RUNNING.value,
                repeat_count=repeat,
                current_iteration=1,
                iteration_outputs=[],
                workflow_snapshot=workflow_data,
            )
            session.add(execution)
            await session.flush()
            for node_id in order:
                node = graph.definition.node(node_id)
                session.add(NodeTask(
                    execution_id=execution.id,
                    node_id=node.id,
                    node_type=node.type,
                    status=NodeStatus.PENDING.value,
                    input_data=dict(node.data),
                ))
            await session.commit()
            await session.refresh(execution)

        logger.info("Execution started", execution_id=execution.id, user_id=user_id,
                    nodes=len(order), repeat_count=repeat, estimated_cost=total_cost)
        await self.advance(execution.id)
        return execution

    # ========================================================================
    # Advancing
    # ========================================================================

    async def advance(self, execution_id: int) -> Optional[int]:
        """Queue the next ready node, or finalize when every node is terminal.

        Returns the queued node task id, if any.
        """
        finalize = False
        async with self.database.get_session() as session:
            execution = await session.get(WorkflowExecution, execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING.value:
                return None

            result = await session.execute(
                select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.id.asc())
            )
            tasks = list(result.scalars().all())
            pending = [t for t in tasks if t.status == NodeStatus.PENDING.value]

            if not pending:
                if all(NodeStatus(t.status).is_terminal for t in tasks):
                    finalize = True
                else:
                    return None
            elif any(t.status in _ACTIVE_NODE_STATUSES for t in tasks):
                # Another node is in flight; its completion advances again
                return None
            else:
                graph = await self.resolver.load_graph(execution_id, session=session)
                task = graph.next_ready(tasks) if graph else pending[0]
                if task is None:
                    doomed = graph.blocked_by_failure(tasks) if graph else []
                    await self._fail_blocked(session, doomed or pending)
                    await session.commit()
                    finalize = True
                else:
                    return await self._enqueue_node(session, execution_id, task)

        if finalize:
            await self.finalize(execution_id)
        return None

    async def _enqueue_node(self, session, execution_id: int, task: NodeTask) -> Optional[int]:
        if await self.queue.has_active_node_task(task.id, session=session):
            logger.info("Node already in queue, skipping", execution_id=execution_id, node_task_id=task.id)
            return None

        res = await session.execute(
            update(NodeTask)
            .where(NodeTask.id == task.id, NodeTask.status == NodeStatus.PENDING.value)
            .values(status=NodeStatus.QUEUED.value)
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            return None

        session.add(self.queue.new_entry(
            NodeExecutionPayload(
                execution_id=execution_id,
                task_id=task.id,
                node_id=task.node_id,
                node_type=task.node_type,
            ),
            priority=self.settings.node_priority,
        ))
        await session.commit()
        logger.info("Node queued", execution_id=execution_id, node_task_id=task.id,
                    node_id=task.node_id, node_type=task.node_type)
        return task.id

    async def _fail_blocked(self, session, tasks: List[NodeTask]) -> None:
        now = utcnow()
        for task in tasks:
            await session.execute(
                update(NodeTask)
                .where(NodeTask.id == task.id, NodeTask.status == NodeStatus.PENDING.value)
                .values(status=NodeStatus.FAILED.value, completed_at=now,
                        error_message="Upstream node did not complete")
                .execution_options(synchronize_session=False)
            )
        logger.warning("Blocked nodes failed", node_task_ids=[t.id for t in tasks])

    # ========================================================================
    # Finalizing
    # ========================================================================

    async def finalize(self, execution_id: int) -> None:
        """Record the iteration; start the next one or close the execution."""
        async with self.database.get_session() as session:
            execution = await session.get(WorkflowExecution, execution_id)
            if execution is None:
                logger.warning("Execution not found for finalize", execution_id=execution_id)
                return
            if execution.status != ExecutionStatus.RUNNING.value:
                return

            result = await session.execute(
                select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.id.asc())
            )
            tasks = list(result.scalars().all())
            if any(not NodeStatus(t.status).is_terminal for t in tasks):
                return

            all_completed = all(t.status == NodeStatus.COMPLETED.value for t in tasks)
            result_url = None
            outputs: Dict[str, Dict[str, Any]] = {}
            for task in tasks:
                if task.result_url:
                    result_url = task.result_url
                outputs[task.node_id] = {"status": task.status, "resultUrl": task.result_url}

            iteration = execution.current_iteration
            iteration_outputs = list(execution.iteration_outputs or [])
            iteration_outputs.append({
                "iteration": iteration,
                "result_url": result_url,
                "outputs": outputs,
                "completed_at": utcnow().isoformat(sep=' ', timespec='seconds'),
            })

            if all_completed and iteration < execution.repeat_count:
                res = await session.execute(
                    update(WorkflowExecution)
                    .where(WorkflowExecution.id == execution_id,
                           WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                           WorkflowExecution.current_iteration == iteration)
                    .values(current_iteration=iteration + 1, iteration_outputs=iteration_outputs)
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    return
                for task in tasks:
                    session.add(NodeTask(
                        execution_id=execution_id,
                        node_id=task.node_id,
                        node_type=task.node_type,
                        status=NodeStatus.PENDING.value,
                        input_data=dict(task.input_data or {}),
                    ))
                await session.flush()
                await session.execute(
                    delete(NodeTask)
                    .where(NodeTask.id.in_([t.id for t in tasks]))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                logger.info("Iteration complete, starting next", execution_id=execution_id,
                            iteration=iteration, repeat_count=execution.repeat_count)
                start_next = True
            else:
                all_results = [io["result_url"] for io in iteration_outputs if io.get("result_url")]
                durable = self.storage.is_durable
                metadata: Dict[str, Any] = {
                    "storage_mode": "cdn" if durable else "direct",
                    "is_temporary": not durable,
                    "total_iterations": execution.repeat_count,
                    "completed_iterations": len(iteration_outputs),
                }
                if not durable and result_url:
                    metadata["warning"] = TEMPORARY_RESULT_WARNING
                    metadata["download_urgency"] = "high"

                status = ExecutionStatus.COMPLETED if all_completed else ExecutionStatus.FAILED
                values: Dict[str, Any] = {
                    "status": status.value,
                    "result_url": result_url,
                    "output_data": {"nodes": outputs, "metadata": metadata, "all_results": all_results},
                    "iteration_outputs": iteration_outputs,
                    "completed_at": utcnow(),
                }
                if not all_completed:
                    failed = next((t for t in tasks if t.status == NodeStatus.FAILED.value), None)
                    if failed is not None and failed.error_message:
                        values["error_message"] = failed.error_message
                res = await session.execute(
                    update(WorkflowExecution)
                    .where(WorkflowExecution.id == execution_id,
                           WorkflowExecution.status == ExecutionStatus.RUNNING.value)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if not res.rowcount:
                    return
                logger.info("Execution finalized", execution_id=execution_id, status=status.value,
                            iterations=len(iteration_outputs), result_url=result_url)
                start_next = False
                user_id, workflow_id = execution.user_id, execution.workflow_id

        if start_next:
            await self.advance(execution_id)
        else:
            await self._record_gallery(execution_id, user_id, workflow_id, iteration_outputs)

    async def _record_gallery(self, execution_id: int, user_id: Optional[int],
                              workflow_id: Optional[int], iteration_outputs: List[Dict[str, Any]]) -> None:
        if not user_id:
            return
        for io in iteration_outputs:
            url = io.get("result_url")
            if not url:
                continue
            try:
                async with self.database.get_session() as session:
                    session.add(GalleryItem(
                        user_id=user_id,
                        workflow_id=workflow_id,
                        item_type=gallery_item_type(url),
                        url=url,
                        item_metadata={"execution_id": execution_id, "iteration": io.get("iteration")},
                    ))
                    await session.commit()
            except Exception as e:
                logger.warning("Gallery insert failed", execution_id=execution_id,
                               iteration=io.get("iteration"), error=str(e))

    # ========================================================================
    # Running nodes
    # ========================================================================

    def _check_reentry(self, task: NodeTask) -> None:
        """Raise DuplicateExecutionGuard when the node must not be dispatched again."""
        if task.external_task_id:
            raise DuplicateExecutionGuard(task.id, f"already has external_task_id {task.external_task_id}")
        if NodeStatus(task.status).is_terminal:
            raise DuplicateExecutionGuard(task.id, f"already {task.status}")
        if task.status == NodeStatus.PROCESSING.value and task.started_at is not None:
            age = (utcnow() - task.started_at).total_seconds()
            if age < self.settings.node_processing_guard:
                raise DuplicateExecutionGuard(task.id, f"already processing for {int(age)}s")

    async def run_node(self, payload: NodeExecutionPayload) -> None:
        """Execute one node task.

        Raises:
            TaskNotFound: node task or execution row missing
            InsufficientCredits: balance below the node cost (nothing changed)
            NodeExecutionError: dispatch failed (charge refunded, node re-queued).
                Any other error after the charge is refunded the same way and re-raised.
        """
        async with self.database.get_session() as session:
            task = await session.get(NodeTask, payload.task_id)
            if task is None:
                raise TaskNotFound("Node task", payload.task_id)
            execution = await session.get(WorkflowExecution, task.execution_id)
            if execution is None:
                raise TaskNotFound("Execution", task.execution_id)

        if execution.status != ExecutionStatus.RUNNING.value:
            logger.info("Execution no longer running, skipping node",
                        node_task_id=task.id, execution_status=execution.status)
            return

        if payload.delay_elapsed:
            await self._resume_deferred(task)
            return

        try:
            self._check_reentry(task)
        except DuplicateExecutionGuard as guard:
            logger.info("Skipping node", node_id=task.node_id, node_task_id=task.id, reason=guard.reason)
            return

        input_data = dict(task.input_data or {})
        input_data.update(await self.resolver.resolve_inputs(execution.id, task.node_id))
        input_data.setdefault('_node_id', task.node_id)
        input_data.setdefault('_execution_id', execution.id)
        input_data.setdefault('_user_id', execution.user_id)

        cost = await self.pricing.get_node_cost(task.node_type)
        charge = await self.credits.charge(
            execution.user_id, cost,
            description=f"Node execution: {task.node_type}",
            reference_id=f"task_{task.id}",
        )

        if not await self._mark_processing(task):
            await self.credits.refund(charge, "node claimed by another worker")
            logger.info("Node state changed before dispatch, skipping", node_task_id=task.id)
            return

        logger.info("Executing node", node_id=task.node_id, node_type=task.node_type,
                    node_task_id=task.id, cost=cost)
        try:
            result = await self.executor.execute(task.node_type, input_data)
            if not result.success:
                raise NodeExecutionError(task.node_type, result.error or "Node execution failed")

            if result.defer_seconds:
                await self._defer(task, result)
                return

            if result.is_async and task.node_type not in SYNCHRONOUS_RESULT_NODE_TYPES:
                await self._hand_off_to_poller(task, execution.id, result, input_data)
                return

            await self._complete(task.id, result.output, result.result_url, result.task_id)
        except Exception as e:
            # Node is still processing with nothing recorded; the queue retry re-dispatches it
            error = str(e) or type(e).__name__
            await self.credits.refund(charge, error)
            await self._requeue_after_failure(task.id, error)
            raise

        await self.advance(execution.id)

    async def _mark_processing(self, task: NodeTask) -> bool:
        conditions = [
            NodeTask.id == task.id,
            NodeTask.status == task.status,
            NodeTask.external_task_id.is_(None),
        ]
        if task.started_at is not None:
            conditions.append(NodeTask.started_at == task.started_at)
        else:
            conditions.append(NodeTask.started_at.is_(None))
        async with self.database.get_session() as session:
            res = await session.execute(
                update(NodeTask)
                .where(*conditions)
                .values(status=NodeStatus.PROCESSING.value, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return bool(res.rowcount)

    async def _requeue_after_failure(self, node_task_id: int, error: Optional[str]) -> None:
        # Back to queued so the queue retry can dispatch it again
        async with self.database.get_session() as session:
            await session.execute(
                update(NodeTask)
                .where(NodeTask.id == node_task_id, NodeTask.status == NodeStatus.PROCESSING.value)
                .values(status=NodeStatus.QUEUED.value, started_at=None,
                        error_message=(error or "")[:2000] or None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _complete(self, node_task_id: int, output: Dict[str, Any],
                        result_url: Optional[str], external_task_id: Optional[str] = None,
                        from_status: str = NodeStatus.PROCESSING.value) -> bool:
        values: Dict[str, Any] = {
            "status": NodeStatus.COMPLETED.value,
            "output_data": output or {},
            "result_url": result_url,
            "completed_at": utcnow(),
            "error_message": None,
        }
        if external_task_id:
            values["external_task_id"] = external_task_id
        async with self.database.get_session() as session:
            res = await session.execute(
                update(NodeTask)
                .where(NodeTask.id == node_task_id, NodeTask.status == from_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if res.rowcount:
            logger.info("Node completed", node_task_id=node_task_id, result_url=result_url)
        return bool(res.rowcount)

    async def _defer(self, task: NodeTask, result: "ExecutionResult") -> None:
        async with self.database.get_session() as session:
            await session.execute(
                update(NodeTask)
                .where(NodeTask.id == task.id, NodeTask.status == NodeStatus.PROCESSING.value)
                .values(status=NodeStatus.QUEUED.value, output_data=result.output or {}, started_at=None)
                .execution_options(synchronize_session=False)
            )
            session.add(self.queue.new_entry(
                NodeExecutionPayload(
                    execution_id=task.execution_id,
                    task_id=task.id,
                    node_id=task.node_id,
                    node_type=task.node_type,
                    delay_elapsed=True,
                ),
                priority=self.settings.node_priority,
                not_before=seconds_from_now(result.defer_seconds),
            ))
            await session.commit()
        logger.info("Node deferred", node_task_id=task.id, defer_seconds=result.defer_seconds)

    async def _resume_deferred(self, task: NodeTask) -> None:
        if task.status != NodeStatus.QUEUED.value:
            logger.info("Deferred node no longer queued, skipping", node_task_id=task.id, status=task.status)
            return
        if await self._complete(task.id, task.output_data or {}, task.result_url,
                                from_status=NodeStatus.QUEUED.value):
            await self.advance(task.execution_id)

    async def _hand_off_to_poller(self, task: NodeTask, execution_id: int,
                                  result: "ExecutionResult", input_data: Dict[str, Any]) -> None:
        provider = result.provider or input_data.get('_provider') or DEFAULT_PROVIDER
        api_key = result.api_key or input_data.get('_resolved_api_key')
        async with self.database.get_session() as session:
            await session.execute(
                update(NodeTask)
                .where(NodeTask.id == task.id, NodeTask.status == NodeStatus.PROCESSING.value)
                .values(external_task_id=result.task_id, output_data=result.output or {})
                .execution_options(synchronize_session=False)
            )
            session.add(self.queue.new_entry(
                PollApiStatusPayload(
                    node_task_id=task.id,
                    execution_id=execution_id,
                    external_task_id=result.task_id,
                    provider=provider,
                    api_key=api_key,
                    poll_count=0,
                    max_polls=self.settings.poll_max_polls,
                ),
                priority=self.settings.poll_priority,
                not_before=seconds_from_now(self.settings.poll_interval),
            ))
            await session.commit()
        logger.info("External task submitted, polling queued", node_task_id=task.id,
                    external_task_id=result.task_id, provider=provider)

    # ========================================================================
    # Poller callbacks
    # ========================================================================

    async def complete_external(self, node_task_id: int, execution_id: int,
                                result_url: Optional[str]) -> bool:
        """Finish an async node with its (stored) artifact URL and advance."""
        completed = await self._complete(node_task_id, {"video": result_url}, result_url)
        if completed:
            await self.advance(execution_id)
        return completed

    async def fail_node(self, node_task_id: Optional[int], execution_id: Optional[int], error: str) -> None:
        """Terminally fail a node and its execution."""
        async with self.database.get_session() as session:
            await propagate_failure(session, node_task_id, execution_id, error)
            await session.commit()
        logger.warning("Node failed", node_task_id=node_task_id, execution_id=execution_id, error=error)
