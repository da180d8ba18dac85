"""Tests for execution orchestration: start, run, advance and finalize."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import LINEAR_GRAPH, load, seed_execution
from models.database import (
    CreditTransaction,
    ExecutionStatus,
    GalleryItem,
    NodeStatus,
    NodeTask,
    QueueEntry,
    QueueStatus,
    WorkflowExecution,
    utcnow,
)
from models.payloads import NodeExecutionPayload, decode_payload
from services.exceptions import (
    InsufficientCredits,
    NodeExecutionError,
    TaskNotFound,
    WorkflowCycleError,
)
from services.node_executor import ExecutionResult


async def node_tasks(database, execution_id):
    async with database.get_session() as session:
        result = await session.execute(
            select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.id.asc())
        )
        return list(result.scalars().all())


async def queue_rows(database):
    async with database.get_session() as session:
        result = await session.execute(select(QueueEntry).order_by(QueueEntry.id.asc()))
        return list(result.scalars().all())


def payload_for(task: NodeTask, **extra) -> NodeExecutionPayload:
    return NodeExecutionPayload(execution_id=task.execution_id, task_id=task.id,
                                node_id=task.node_id, node_type=task.node_type, **extra)


async def drain(worker, rounds: int = 20) -> None:
    for _ in range(rounds):
        if not await worker.run_once():
            return


# ============================================================================
# Starting executions
# ============================================================================


class TestStartExecution:

    async def test_creates_tasks_and_queues_first_node(self, orchestrator, database):
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)

        tasks = await node_tasks(database, execution.id)
        assert [(t.node_id, t.status) for t in tasks] == [
            ("prompt", NodeStatus.QUEUED.value),
            ("video", NodeStatus.PENDING.value),
        ]
        assert tasks[0].input_data == {"text": "a cat on a skateboard"}

        (row,) = await queue_rows(database)
        assert row.priority == 1
        payload = decode_payload(row.task_type, row.payload)
        assert payload.task_id == tasks[0].id
        assert payload.delay_elapsed is False

    async def test_rejects_cycles(self, orchestrator):
        graph = {
            "nodes": [{"id": "a", "type": "x"}, {"id": "b", "type": "x"}],
            "connections": [
                {"from": {"nodeId": "a"}, "to": {"nodeId": "b"}},
                {"from": {"nodeId": "b"}, "to": {"nodeId": "a"}},
            ],
        }
        with pytest.raises(WorkflowCycleError):
            await orchestrator.start_execution(user_id=1, workflow_data=graph)

    async def test_unknown_workflow(self, orchestrator):
        with pytest.raises(TaskNotFound):
            await orchestrator.start_execution(user_id=1, workflow_id=404)

    async def test_preflight_checks_cost_for_every_iteration(self, orchestrator, pricing, credits, database):
        await pricing.set_node_cost("video-gen", 10)
        await credits.grant(1, 20)

        with pytest.raises(InsufficientCredits) as exc_info:
            await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH, repeat_count=3)

        assert exc_info.value.required == 30
        async with database.get_session() as session:
            result = await session.execute(select(WorkflowExecution))
            assert result.scalars().all() == []

    async def test_manual_trigger_repeat_overrides_request(self, orchestrator):
        graph = {
            "nodes": [{"id": "t", "type": "manual-trigger", "data": {"enableRepeat": True, "repeatCount": 4}}],
            "connections": [],
        }

        execution = await orchestrator.start_execution(user_id=1, workflow_data=graph, repeat_count=2)

        assert execution.repeat_count == 4

    async def test_repeat_count_is_clamped(self, orchestrator, settings):
        execution = await orchestrator.start_execution(
            user_id=1, workflow_data=LINEAR_GRAPH, repeat_count=settings.max_repeat_count + 50
        )
        assert execution.repeat_count == settings.max_repeat_count


# ============================================================================
# Running nodes
# ============================================================================


class TestRunNode:

    async def test_runs_whole_workflow_and_finalizes(self, orchestrator, executor, worker, database):
        executor.results["text-input"] = ExecutionResult(success=True, output={"text": "a cat"})
        executor.results["video-gen"] = ExecutionResult(
            success=True, output={"video": "https://provider.test/v.mp4"},
            result_url="https://provider.test/v.mp4",
        )
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)

        await drain(worker)

        execution = await load(database, WorkflowExecution, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.result_url == "https://provider.test/v.mp4"
        assert execution.completed_at is not None
        metadata = execution.output_data["metadata"]
        assert metadata["storage_mode"] == "direct"
        assert metadata["is_temporary"] is True
        assert metadata["download_urgency"] == "high"
        assert execution.output_data["all_results"] == ["https://provider.test/v.mp4"]
        assert execution.output_data["nodes"]["video"]["status"] == "completed"

        # The prompt text flowed into the video node
        video_input = executor.calls[1][1]
        assert video_input["prompt"] == "a cat"
        assert video_input["model"] == "wan-2.1"

        async with database.get_session() as session:
            gallery = (await session.execute(select(GalleryItem))).scalars().all()
        assert [(g.url, g.item_type, g.item_metadata) for g in gallery] == [
            ("https://provider.test/v.mp4", "video", {"execution_id": execution.id, "iteration": 1}),
        ]

    async def test_node_with_external_task_is_not_dispatched_again(
        self, orchestrator, executor, pricing, credits, database
    ):
        await pricing.set_node_cost("video-gen", 5)
        await credits.grant(1, 50)
        execution_id, (task_id,) = await seed_execution(database, [
            {"node_id": "video", "node_type": "video-gen", "status": NodeStatus.PROCESSING.value,
             "external_task_id": "rh-1", "started_at": utcnow() - timedelta(hours=2)},
        ])
        task = await load(database, NodeTask, task_id)

        await orchestrator.run_node(payload_for(task))

        assert executor.calls == []
        assert await credits.balance(1) == 50
        assert (await load(database, NodeTask, task_id)).status == NodeStatus.PROCESSING.value

    async def test_recently_started_node_is_skipped(self, orchestrator, executor, database):
        execution_id, (task_id,) = await seed_execution(database, [
            {"node_id": "video", "node_type": "video-gen", "status": NodeStatus.PROCESSING.value,
             "started_at": utcnow() - timedelta(seconds=30)},
        ])

        await orchestrator.run_node(payload_for(await load(database, NodeTask, task_id)))

        assert executor.calls == []

    async def test_insufficient_credits_leaves_node_untouched(
        self, orchestrator, executor, pricing, credits, database
    ):
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)
        await pricing.set_node_cost("text-input", 20)
        entry = await credits.grant(1, 10)
        first = (await node_tasks(database, execution.id))[0]

        with pytest.raises(InsufficientCredits):
            await orchestrator.run_node(payload_for(first))

        assert executor.calls == []
        assert (await load(database, NodeTask, first.id)).status == NodeStatus.QUEUED.value
        assert await credits.balance(1) == 10
        async with database.get_session() as session:
            usage = (await session.execute(
                select(CreditTransaction).where(CreditTransaction.type == "usage")
            )).scalars().all()
        assert usage == []

    async def test_dispatch_failure_refunds_and_requeues(
        self, orchestrator, executor, pricing, credits, database
    ):
        executor.results["text-input"] = ExecutionResult.failure("provider said no")
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)
        await pricing.set_node_cost("text-input", 4)
        await credits.grant(1, 10)
        first = (await node_tasks(database, execution.id))[0]

        with pytest.raises(NodeExecutionError, match="provider said no"):
            await orchestrator.run_node(payload_for(first))

        assert await credits.balance(1) == 10
        node = await load(database, NodeTask, first.id)
        assert node.status == NodeStatus.QUEUED.value
        assert node.started_at is None
        async with database.get_session() as session:
            kinds = (await session.execute(
                select(CreditTransaction.type).order_by(CreditTransaction.id.asc())
            )).scalars().all()
        assert kinds == ["grant", "usage", "refund"]

    async def test_error_after_charge_refunds_and_requeues(
        self, orchestrator, executor, pricing, credits, database
    ):
        def explode(input_data):
            raise RuntimeError("plugin crashed")

        executor.results["text-input"] = explode
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)
        await pricing.set_node_cost("text-input", 10)
        await credits.grant(1, 100)
        first = (await node_tasks(database, execution.id))[0]

        with pytest.raises(RuntimeError, match="plugin crashed"):
            await orchestrator.run_node(payload_for(first))

        assert await credits.balance(1) == 100
        node = await load(database, NodeTask, first.id)
        assert node.status == NodeStatus.QUEUED.value
        assert node.error_message == "plugin crashed"

        # The queue retry dispatches the node again instead of skipping it
        executor.results["text-input"] = ExecutionResult(success=True, output={"text": "ok"})
        await orchestrator.run_node(payload_for(first))
        assert (await load(database, NodeTask, first.id)).status == NodeStatus.COMPLETED.value
        assert await credits.balance(1) == 90

    async def test_numeric_task_id_is_polled(self, orchestrator, executor, pricing, credits, database):
        executor.results["text-input"] = ExecutionResult.from_dict(
            {"success": True, "taskId": 123456789, "apiKey": "k-1"}
        )
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)
        await pricing.set_node_cost("text-input", 10)
        await credits.grant(1, 100)
        first = (await node_tasks(database, execution.id))[0]

        await orchestrator.run_node(payload_for(first))

        node = await load(database, NodeTask, first.id)
        assert node.status == NodeStatus.PROCESSING.value
        assert node.external_task_id == "123456789"
        poll = [r for r in await queue_rows(database) if r.task_type == "poll_api_status"]
        assert [r.payload["external_task_id"] for r in poll] == ["123456789"]
        assert await credits.balance(1) == 90

    async def test_async_result_hands_off_to_poller(self, orchestrator, executor, database, settings):
        executor.results["text-input"] = ExecutionResult(
            success=True, output={"taskId": "rh-77"}, task_id="rh-77", provider="rhub", api_key="k-1"
        )
        execution = await orchestrator.start_execution(user_id=1, workflow_data=LINEAR_GRAPH)
        first = (await node_tasks(database, execution.id))[0]

        await orchestrator.run_node(payload_for(first))

        node = await load(database, NodeTask, first.id)
        assert node.status == NodeStatus.PROCESSING.value
        assert node.external_task_id == "rh-77"
        poll = (await queue_rows(database))[-1]
        assert poll.task_type == "poll_api_status"
        assert poll.priority == settings.poll_priority
        assert poll.scheduled_at > utcnow() + timedelta(seconds=5)
        assert poll.payload["poll_count"] == 0
        assert poll.payload["max_polls"] == 60
        assert poll.payload["api_key"] == "k-1"
        assert poll.payload["external_task_id"] == "rh-77"

    async def test_social_post_task_id_completes_synchronously(self, orchestrator, executor, database):
        executor.results["social-post"] = ExecutionResult(success=True, output={"postId": "p1"}, task_id="p1")
        graph = {"nodes": [{"id": "post", "type": "social-post"}], "connections": []}
        execution = await orchestrator.start_execution(user_id=1, workflow_data=graph)
        (task,) = await node_tasks(database, execution.id)

        await orchestrator.run_node(payload_for(task))

        assert (await load(database, NodeTask, task.id)).status == NodeStatus.COMPLETED.value
        assert (await load(database, WorkflowExecution, execution.id)).status == ExecutionStatus.COMPLETED.value

    async def test_delay_reschedules_then_completes(self, orchestrator, executor, database):
        executor.results["delay"] = ExecutionResult(success=True, output={"x": 1}, defer_seconds=30)
        graph = {"nodes": [{"id": "wait", "type": "delay", "data": {"duration": 30}}], "connections": []}
        execution = await orchestrator.start_execution(user_id=1, workflow_data=graph)
        (task,) = await node_tasks(database, execution.id)

        await orchestrator.run_node(payload_for(task))

        node = await load(database, NodeTask, task.id)
        assert node.status == NodeStatus.QUEUED.value
        assert node.output_data == {"x": 1}
        resume = (await queue_rows(database))[-1]
        assert resume.payload["delay_elapsed"] is True
        assert resume.scheduled_at > utcnow() + timedelta(seconds=25)

        await orchestrator.run_node(payload_for(task, delay_elapsed=True))

        assert len(executor.calls) == 1
        assert (await load(database, NodeTask, task.id)).status == NodeStatus.COMPLETED.value
        assert (await load(database, WorkflowExecution, execution.id)).status == ExecutionStatus.COMPLETED.value

    async def test_missing_node_task_raises(self, orchestrator):
        with pytest.raises(TaskNotFound):
            await orchestrator.run_node(NodeExecutionPayload(
                execution_id=1, task_id=999, node_id="x", node_type="x"
            ))


# ============================================================================
# Advancing and finalizing
# ============================================================================


class TestAdvanceAndFinalize:

    async def test_repeat_starts_next_iteration_with_fresh_tasks(self, orchestrator, database):
        execution_id, old_ids = await seed_execution(database, [
            {"node_id": "prompt", "node_type": "text-input", "status": NodeStatus.COMPLETED.value,
             "input_data": {"text": "a cat on a skateboard"}, "output_data": {"text": "a cat"}},
            {"node_id": "video", "node_type": "video-gen", "status": NodeStatus.COMPLETED.value,
             "input_data": {"model": "wan-2.1"}, "result_url": "https://provider.test/1.mp4"},
        ], graph=LINEAR_GRAPH, repeat_count=3)

        await orchestrator.finalize(execution_id)

        execution = await load(database, WorkflowExecution, execution_id)
        assert execution.status == ExecutionStatus.RUNNING.value
        assert execution.current_iteration == 2
        assert len(execution.iteration_outputs) == 1
        assert execution.iteration_outputs[0]["iteration"] == 1
        assert execution.iteration_outputs[0]["result_url"] == "https://provider.test/1.mp4"

        tasks = await node_tasks(database, execution_id)
        assert not set(old_ids) & {t.id for t in tasks}
        assert [(t.node_id, t.input_data) for t in tasks] == [
            ("prompt", {"text": "a cat on a skateboard"}),
            ("video", {"model": "wan-2.1"}),
        ]
        assert [t.status for t in tasks] == [NodeStatus.QUEUED.value, NodeStatus.PENDING.value]
        assert all(t.output_data is None and t.result_url is None for t in tasks)

    async def test_finalize_twice_records_one_iteration(self, orchestrator, database):
        execution_id, _ = await seed_execution(database, [
            {"node_id": "prompt", "node_type": "text-input", "status": NodeStatus.COMPLETED.value},
        ], graph={"nodes": [{"id": "prompt", "type": "text-input"}]})

        await orchestrator.finalize(execution_id)
        await orchestrator.finalize(execution_id)

        execution = await load(database, WorkflowExecution, execution_id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert len(execution.iteration_outputs) == 1
        assert "warning" not in execution.output_data["metadata"]

    async def test_failed_node_fails_execution(self, orchestrator, database):
        execution_id, _ = await seed_execution(database, [
            {"node_id": "prompt", "node_type": "text-input", "status": NodeStatus.COMPLETED.value},
            {"node_id": "video", "node_type": "video-gen", "status": NodeStatus.FAILED.value,
             "error_message": "API error: quota"},
        ], graph=LINEAR_GRAPH, repeat_count=3)

        await orchestrator.finalize(execution_id)

        execution = await load(database, WorkflowExecution, execution_id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message == "API error: quota"
        assert execution.current_iteration == 1

    async def test_advance_fails_nodes_behind_a_failure(self, orchestrator, database):
        execution_id, (prompt_id, video_id) = await seed_execution(database, [
            {"node_id": "prompt", "node_type": "text-input", "status": NodeStatus.FAILED.value},
            {"node_id": "video", "node_type": "video-gen"},
        ], graph=LINEAR_GRAPH)

        assert await orchestrator.advance(execution_id) is None

        video = await load(database, NodeTask, video_id)
        assert video.status == NodeStatus.FAILED.value
        assert video.error_message == "Upstream node did not complete"
        assert (await load(database, WorkflowExecution, execution_id)).status == ExecutionStatus.FAILED.value

    async def test_advance_does_not_double_queue(self, orchestrator, database, queue):
        execution_id, (prompt_id, _) = await seed_execution(
            database, [{"node_id": "prompt", "node_type": "text-input"},
                       {"node_id": "video", "node_type": "video-gen"}],
            graph=LINEAR_GRAPH,
        )

        assert await orchestrator.advance(execution_id) == prompt_id
        assert await orchestrator.advance(execution_id) is None

        rows = await queue_rows(database)
        assert len(rows) == 1
        assert rows[0].status == QueueStatus.PENDING.value
