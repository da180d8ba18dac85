"""SQLModel database models and tables."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utctoday() -> date:
    return utcnow().date()


# ============================================================================
# Status enums
# ============================================================================

class QueueStatus(str, Enum):
    """Queue entry lifecycle.

    State transitions:
        PENDING -> PROCESSING (atomic claim only)
        PROCESSING -> PENDING (retry / stale release)
                   -> COMPLETED
                   -> FAILED (attempts exhausted)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    NODE_EXECUTION = "node_execution"
    POLL_API_STATUS = "poll_api_status"


class NodeStatus(str, Enum):
    """Node task lifecycle inside one iteration."""
    PENDING = "pending"        # Created, waiting for upstream nodes
    QUEUED = "queued"          # Queue entry exists
    PROCESSING = "processing"  # Dispatched (or waiting on an external task)
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(str, Enum):
    USAGE = "usage"
    REFUND = "refund"
    GRANT = "grant"


# ============================================================================
# Queue
# ============================================================================

class QueueEntry(SQLModel, table=True):
    """Durable queue row claimed by workers."""

    __tablename__ = "task_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    task_type: str = Field(max_length=50, index=True)
    payload: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    status: str = Field(default=QueueStatus.PENDING.value, max_length=20, index=True)
    priority: int = Field(default=0)
    scheduled_at: datetime = Field(default_factory=utcnow, index=True)
    locked_at: Optional[datetime] = Field(default=None)
    locked_by: Optional[str] = Field(default=None, max_length=255, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    # Denormalized from payload for guard and recovery queries
    execution_id: Optional[int] = Field(default=None, index=True)
    node_task_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Workflows and executions
# ============================================================================

class Workflow(SQLModel, table=True):
    """Live workflow definitions (graph JSON)."""

    __tablename__ = "workflows"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    name: str = Field(default="Untitled", max_length=255)
    json_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowExecution(SQLModel, table=True):
    """One run of a workflow, possibly spanning several repeat iterations."""

    __tablename__ = "workflow_executions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    workflow_id: Optional[int] = Field(default=None, index=True)
    status: str = Field(default=ExecutionStatus.RUNNING.value, max_length=20, index=True)
    repeat_count: int = Field(default=1)
    current_iteration: int = Field(default=1)
    iteration_outputs: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    workflow_snapshot: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    output_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    result_url: Optional[str] = Field(default=None, max_length=2048)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


class NodeTask(SQLModel, table=True):
    """Per-iteration execution record of one graph node."""

    __tablename__ = "node_tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: int = Field(index=True)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=100)
    status: str = Field(default=NodeStatus.PENDING.value, max_length=20, index=True)
    input_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    result_url: Optional[str] = Field(default=None, max_length=2048)
    external_task_id: Optional[str] = Field(default=None, max_length=255)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Credits
# ============================================================================

class NodeCost(SQLModel, table=True):
    """Per-call credit cost of a node type."""

    __tablename__ = "node_costs"

    id: Optional[int] = Field(default=None, primary_key=True)
    node_type: str = Field(max_length=100, unique=True, index=True)
    cost_per_call: float = Field(default=0.0, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)


class CreditLedgerEntry(SQLModel, table=True):
    """A batch of credits; consumed FIFO by expiry."""

    __tablename__ = "credit_ledger"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    credits: float = Field(ge=0)
    remaining: float = Field(ge=0)
    source: str = Field(default="topup", max_length=50)
    expires_at: Optional[date] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(SQLModel, table=True):
    """Append-only audit row for every balance change."""

    __tablename__ = "credit_transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    type: str = Field(max_length=20)
    amount: float
    balance_after: float
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255, index=True)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Gallery
# ============================================================================

class GalleryItem(SQLModel, table=True):
    """Final artifacts surfaced in the user's gallery."""

    __tablename__ = "user_gallery"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    workflow_id: Optional[int] = Field(default=None)
    item_type: str = Field(default="video", max_length=20)
    url: str = Field(max_length=2048)
    # "metadata" is reserved on declarative classes
    item_metadata: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSON)
    )
    created_at: datetime = Field(default_factory=utcnow)
