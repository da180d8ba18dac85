"""External Task Poller - checks async provider tasks until they settle.

Each ``poll_api_status`` queue row is one status check. A still-running task
is re-enqueued as a fresh row ``poll_interval`` seconds later with
``poll_count + 1``; the worker never sleeps while waiting.
"""

import secrets
import time
from typing import Optional, TYPE_CHECKING

from core.logging import get_logger
from models.database import NodeStatus, NodeTask, utcnow
from models.payloads import PollApiStatusPayload
from services.exceptions import (
    PollBudgetExhausted,
    StaleExecution,
    TerminalProviderError,
    TransientProviderError,
    WorkflowError,
)
from services.queue import seconds_from_now

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.orchestrator import ExecutionOrchestrator
    from services.providers import ProviderRegistry
    from services.queue import TaskQueue
    from services.storage import ArtifactStorage

logger = get_logger(__name__)


class ExternalTaskPoller:
    """Handles ``poll_api_status`` queue rows."""

    def __init__(
        self,
        database: "Database",
        settings: "Settings",
        queue: "TaskQueue",
        providers: "ProviderRegistry",
        storage: "ArtifactStorage",
        orchestrator: "ExecutionOrchestrator",
    ):
        self.database = database
        self.settings = settings
        self.queue = queue
        self.providers = providers
        self.storage = storage
        self.orchestrator = orchestrator

    async def poll(self, payload: PollApiStatusPayload) -> None:
        """Check one external task and settle, re-poll or fail its node.

        Raises:
            WorkflowError: no API key is available for the provider
        """
        async with self.database.get_session() as session:
            node_task = await session.get(NodeTask, payload.node_task_id)

        if node_task is None or node_task.status != NodeStatus.PROCESSING.value:
            logger.info("Node task no longer processing, dropping poll",
                        node_task_id=payload.node_task_id,
                        status=node_task.status if node_task else None)
            return

        if node_task.started_at is not None:
            age = (utcnow() - node_task.started_at).total_seconds()
            if age > self.settings.poll_stale_after:
                stale = StaleExecution(node_task.id)
                logger.warning("External task is stale", node_task_id=node_task.id,
                               external_task_id=payload.external_task_id, age_seconds=int(age))
                await self.orchestrator.fail_node(node_task.id, payload.execution_id, str(stale))
                return

        api_key = self.providers.resolve_api_key(payload.provider, payload.api_key)
        if not api_key:
            raise WorkflowError(f"No API key available for provider {payload.provider}")

        try:
            provider = self.providers.get(payload.provider)
            status = await provider.query(payload.external_task_id, api_key)
        except TransientProviderError as e:
            if payload.poll_count < payload.max_polls:
                await self._repoll(payload, self.settings.poll_retry_delay)
                logger.warning("Provider unreachable, retrying poll", node_task_id=node_task.id,
                               poll_count=payload.poll_count, error=str(e))
                return
            await self.orchestrator.fail_node(node_task.id, payload.execution_id, f"API error: {e.message}")
            return
        except TerminalProviderError as e:
            await self.orchestrator.fail_node(node_task.id, payload.execution_id, f"API error: {e.message}")
            return

        logger.debug("Poll status", node_task_id=node_task.id, status=status.status,
                     poll_count=payload.poll_count)

        if status.is_success:
            result_url = await self._store_result(status.result_url)
            await self.orchestrator.complete_external(node_task.id, payload.execution_id, result_url)
            return

        if status.is_failed:
            await self.orchestrator.fail_node(
                node_task.id, payload.execution_id, status.error or "External task failed"
            )
            return

        if payload.poll_count >= payload.max_polls:
            timeout = PollBudgetExhausted(payload.max_polls, self.settings.poll_interval)
            await self.orchestrator.fail_node(node_task.id, payload.execution_id, str(timeout))
            return

        await self._repoll(payload, self.settings.poll_interval)

    async def _repoll(self, payload: PollApiStatusPayload, delay: int) -> None:
        await self.queue.enqueue(
            payload.next_poll(),
            priority=self.settings.poll_priority,
            not_before=seconds_from_now(delay),
        )

    async def _store_result(self, provider_url: Optional[str]) -> Optional[str]:
        """Copy the provider artifact to durable storage; keep the provider URL on failure."""
        if not provider_url:
            return None
        filename = f"video_{int(time.time())}_{secrets.token_hex(6)}.mp4"
        stored = await self.storage.upload(provider_url, filename)
        return stored or provider_url
