"""Workflow worker exception hierarchy."""


class WorkflowError(Exception):
    """Base exception for all queue / execution errors."""


class InvalidPayload(WorkflowError, ValueError):
    """Queue row payload does not match its task type."""


class TaskNotFound(WorkflowError):
    """A queue payload references a node task or execution that does not exist."""

    def __init__(self, kind: str, ident):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident} not found")


class UnknownNodeType(WorkflowError):
    """No node source knows how to run this node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class NodeExecutionError(WorkflowError):
    """Node dispatch returned a failure."""

    def __init__(self, node_type: str, message: str):
        self.node_type = node_type
        super().__init__(message)


class InsufficientCredits(WorkflowError):
    """User balance does not cover the node cost."""

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: required {required:g}, available {available:g}"
        )


class DuplicateExecutionGuard(WorkflowError):
    """Node re-entry rejected because the node already ran or is running."""

    def __init__(self, node_task_id: int, reason: str):
        self.node_task_id = node_task_id
        self.reason = reason
        super().__init__(f"Node task {node_task_id} skipped: {reason}")


class WorkflowCycleError(WorkflowError):
    """Workflow graph contains a cycle."""

    def __init__(self, node_ids):
        self.node_ids = sorted(node_ids)
        super().__init__(f"Workflow contains a cycle between nodes: {', '.join(self.node_ids)}")


# ============================================================================
# External provider errors
# ============================================================================

class ProviderError(WorkflowError):
    """Error from an external task provider."""

    def __init__(self, provider_name: str, message: str):
        self.provider_name = provider_name
        self.message = message
        super().__init__(f"[{provider_name}] {message}")


class TransientProviderError(ProviderError):
    """Transport-level failure; the same poll may succeed later."""


class TerminalProviderError(ProviderError):
    """The provider reported a failure that will not change on retry."""


class StaleExecution(WorkflowError):
    """External task has been processing longer than the stale threshold."""

    MESSAGE = (
        "Task is stale: started more than 1 hour ago and never completed. "
        "External task ID may be invalid."
    )

    def __init__(self, node_task_id: int):
        self.node_task_id = node_task_id
        super().__init__(self.MESSAGE)


class PollBudgetExhausted(WorkflowError):
    """External task did not finish within the poll budget."""

    def __init__(self, max_polls: int, interval: int):
        self.max_polls = max_polls
        super().__init__(
            f"Polling timeout: Task did not complete within {max_polls * interval} seconds"
        )
