"""Queue worker - claims queue rows and routes them to their handlers.

One iteration: release stale locks, claim a batch, process the batch in
claim order. A handler that returns normally completes its row; a handler
that raises fails it (retry or terminal, decided by the queue).
"""

import asyncio
import os
import signal
import socket
import time
from typing import List, Optional, TYPE_CHECKING

from core.logging import bound_context, get_logger, log_execution_time
from models.database import QueueEntry
from models.payloads import NodeExecutionPayload, PollApiStatusPayload, decode_payload
from services.exceptions import InvalidPayload

if TYPE_CHECKING:
    from core.config import Settings
    from services.orchestrator import ExecutionOrchestrator
    from services.poller import ExternalTaskPoller
    from services.queue import TaskQueue

logger = get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}_{os.getpid()}"


class Worker:
    """Claims and processes queue rows, once or until stopped."""

    def __init__(
        self,
        settings: "Settings",
        queue: "TaskQueue",
        orchestrator: "ExecutionOrchestrator",
        poller: "ExternalTaskPoller",
        worker_id: Optional[str] = None,
    ):
        self.settings = settings
        self.queue = queue
        self.orchestrator = orchestrator
        self.poller = poller
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.batch_size = settings.worker_batch_size
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Finish the current row, hand back the rest of the batch, then exit."""
        if not self._stop.is_set():
            logger.info("Worker stop requested", worker_id=self.worker_id)
        self._stop.set()

    # ========================================================================
    # Processing
    # ========================================================================

    async def process(self, entry: QueueEntry) -> bool:
        """Run one claimed row. Returns True when the row completed."""
        with bound_context(queue_task_id=entry.id, execution_id=entry.execution_id,
                           task_type=entry.task_type):
            start = time.time()
            try:
                payload = decode_payload(entry.task_type, entry.payload)
                if isinstance(payload, NodeExecutionPayload):
                    await self.orchestrator.run_node(payload)
                elif isinstance(payload, PollApiStatusPayload):
                    await self.poller.poll(payload)
                else:
                    raise InvalidPayload(f"Unknown task type: {entry.task_type}")
            except Exception as e:
                logger.error("Task failed", worker_id=self.worker_id,
                             error_type=type(e).__name__, error=str(e))
                await self.queue.fail(entry.id, str(e) or type(e).__name__)
                return False

            await self.queue.complete(entry.id)
            log_execution_time(logger, entry.task_type, start, time.time(), worker_id=self.worker_id)
            return True

    async def run_once(self) -> int:
        """Release stale locks, claim one batch and process it.

        Returns the number of rows processed (completed or failed).
        """
        released = await self.queue.release_stale()
        if released:
            logger.info("Released stale tasks", count=released)

        claimed: List[QueueEntry] = await self.queue.claim_batch(self.batch_size, self.worker_id)
        if not claimed:
            return 0

        logger.info("Processing batch", worker_id=self.worker_id, count=len(claimed))
        processed = 0
        for index, entry in enumerate(claimed):
            if self.stopping:
                remaining = [e.id for e in claimed[index:]]
                unlocked = await self.queue.unlock(remaining, self.worker_id)
                logger.info("Returned unprocessed tasks", count=unlocked)
                break
            await self.process(entry)
            processed += 1
        return processed

    # ========================================================================
    # Daemon loop
    # ========================================================================

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support
                pass

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        """Process batches until a stop is requested."""
        self.install_signal_handlers()
        logger.info("Worker started", worker_id=self.worker_id, batch_size=self.batch_size,
                    sleep_interval=self.settings.worker_sleep_interval)

        while not self.stopping:
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error("Worker iteration failed", worker_id=self.worker_id, error=str(e),
                             exc_info=True)
                await self._pause(self.settings.worker_error_backoff)
                continue

            if not processed:
                await self._pause(self.settings.worker_sleep_interval)

        logger.info("Worker stopped", worker_id=self.worker_id)
