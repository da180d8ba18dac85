"""Shared fixtures: file-backed SQLite database and wired services."""

from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from core.config import Settings
from core.database import Database
from models.database import (
    ExecutionStatus,
    NodeStatus,
    NodeTask,
    WorkflowExecution,
)
from services.credits import CreditLedger
from services.node_executor import ExecutionResult
from services.orchestrator import ExecutionOrchestrator
from services.poller import ExternalTaskPoller
from services.pricing import PricingService
from services.providers import ProviderRegistry
from services.queue import TaskQueue
from services.storage import ArtifactStorage
from services.worker import Worker
from services.workflow_graph import GraphResolver


LINEAR_GRAPH: Dict[str, Any] = {
    "nodes": [
        {"id": "prompt", "type": "text-input", "data": {"text": "a cat on a skateboard"}},
        {"id": "video", "type": "video-gen", "data": {"model": "wan-2.1"}},
    ],
    "connections": [
        {"from": {"nodeId": "prompt", "portId": "text"}, "to": {"nodeId": "video", "portId": "prompt"}},
    ],
}


class ScriptedExecutor:
    """NodeExecutor stand-in returning a scripted result per node type."""

    def __init__(self, results: Optional[Dict[str, Union[ExecutionResult, Callable]]] = None):
        self.results = dict(results or {})
        self.calls: List[tuple] = []

    def knows(self, node_type: str) -> bool:
        return True

    async def execute(self, node_type: str, input_data: Dict[str, Any]) -> ExecutionResult:
        self.calls.append((node_type, dict(input_data)))
        result = self.results.get(node_type)
        if callable(result):
            return result(input_data)
        if result is None:
            return ExecutionResult(success=True, output={"value": node_type})
        return result


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        upload_dir=str(tmp_path / "uploads"),
        app_url="http://worker.test",
        log_format="console",
        worker_id="test-worker",
        recovery_grace_seconds=60,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def queue(database, settings) -> TaskQueue:
    return TaskQueue(database, settings)


@pytest.fixture
def credits(database) -> CreditLedger:
    return CreditLedger(database)


@pytest.fixture
def pricing(database) -> PricingService:
    return PricingService(database)


@pytest.fixture
def resolver(database) -> GraphResolver:
    return GraphResolver(database)


@pytest.fixture
def storage(settings) -> ArtifactStorage:
    return ArtifactStorage(settings)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def orchestrator(database, settings, queue, credits, pricing, executor, resolver, storage):
    return ExecutionOrchestrator(
        database=database,
        settings=settings,
        queue=queue,
        credits=credits,
        pricing=pricing,
        executor=executor,
        resolver=resolver,
        storage=storage,
    )


@pytest.fixture
def provider_registry(settings) -> ProviderRegistry:
    return ProviderRegistry(settings)


@pytest.fixture
def poller(database, settings, queue, provider_registry, storage, orchestrator) -> ExternalTaskPoller:
    return ExternalTaskPoller(database, settings, queue, provider_registry, storage, orchestrator)


@pytest.fixture
def worker(settings, queue, orchestrator, poller) -> Worker:
    return Worker(settings, queue, orchestrator, poller)


async def seed_execution(database: Database, nodes: List[Dict[str, Any]],
                         graph: Optional[Dict[str, Any]] = None, user_id: int = 1,
                         repeat_count: int = 1) -> tuple:
    """Insert an execution and its node tasks directly.

    ``nodes`` items: ``{"node_id", "node_type", "status", ...NodeTask fields}``.
    Returns ``(execution_id, [node_task_id, ...])``.
    """
    async with database.get_session() as session:
        execution = WorkflowExecution(
            user_id=user_id,
            status=ExecutionStatus.RUNNING.value,
            repeat_count=repeat_count,
            current_iteration=1,
            iteration_outputs=[],
            workflow_snapshot=graph,
        )
        session.add(execution)
        await session.flush()
        tasks = []
        for overrides in nodes:
            fields = {"status": NodeStatus.PENDING.value, "input_data": {}}
            fields.update(overrides)
            task = NodeTask(execution_id=execution.id, **fields)
            session.add(task)
            tasks.append(task)
        await session.commit()
        return execution.id, [t.id for t in tasks]


async def load(database: Database, model, ident):
    async with database.get_session() as session:
        return await session.get(model, ident)
