"""Read-only operational routes (queue backlog, execution inspection)."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select

from core.container import container
from core.database import Database
from core.logging import get_logger
from models.database import NodeTask, WorkflowExecution
from services.queue import TaskQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["ops"])


@router.get("/queue/stats")
async def queue_stats(
    queue: TaskQueue = Depends(lambda: container.queue())
):
    """Queue row counts per status and task type."""
    return {"success": True, "stats": await queue.stats()}


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: int,
    database: Database = Depends(lambda: container.database())
):
    """Execution row with its current node tasks."""
    async with database.get_session() as session:
        execution = await session.get(WorkflowExecution, execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
        result = await session.execute(
            select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.id.asc())
        )
        tasks = list(result.scalars().all())

    return {
        "success": True,
        "execution": execution.model_dump(mode="json"),
        "node_tasks": [task.model_dump(mode="json") for task in tasks],
    }
