"""Node Executor - Single node execution with source-chain dispatch.

Node types are resolved through an ordered chain of sources: installed
plugins first, then the built-in handler registry. A source that does not know
a type raises UnknownNodeType and the next source is tried; any other
failure is returned as-is.
"""

from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from core.logging import get_logger
from constants import (
    CONDITION_NODE_TYPE,
    DELAY_NODE_TYPE,
    PASSTHROUGH_NODE_TYPES,
)
from services.exceptions import UnknownNodeType
from services.handlers import handle_condition, handle_delay, handle_passthrough

if TYPE_CHECKING:
    from core.config import Settings
    from services.plugins import NodePlugin

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    """Standardized node execution result."""
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    # Set by delay nodes: run again after this many seconds instead of now
    defer_seconds: Optional[int] = None
    # Poll hints from plugin API nodes
    provider: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def is_async(self) -> bool:
        """External task started but no result yet."""
        return self.success and bool(self.task_id) and not self.result_url

    @classmethod
    def failure(cls, error: str) -> "ExecutionResult":
        return cls(success=False, error=error)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        """Build from the collaborator dict ``{success, output, taskId, resultUrl, error}``."""
        output = data.get('output')
        task_id = data.get('taskId')
        return cls(
            success=bool(data.get('success')),
            output=output if isinstance(output, dict) else ({} if output is None else {'value': output}),
            # Providers return numeric ids too
            task_id=str(task_id) if task_id not in (None, '') else None,
            result_url=data.get('resultUrl') or None,
            error=data.get('error'),
            defer_seconds=data.get('deferSeconds'),
            provider=data.get('provider'),
            api_key=data.get('apiKey'),
        )


class BuiltinNodeSource:
    """Registry of node types implemented in-process."""

    def __init__(self, settings: "Settings"):
        self.settings = settings
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with settings bound via partial."""
        registry = {
            DELAY_NODE_TYPE: partial(
                handle_delay,
                default_seconds=self.settings.delay_default_seconds,
                max_seconds=self.settings.delay_max_seconds,
            ),
            CONDITION_NODE_TYPE: handle_condition,
        }
        for node_type in PASSTHROUGH_NODE_TYPES:
            registry[node_type] = handle_passthrough
        return registry

    def knows(self, node_type: str) -> bool:
        return node_type in self._handlers

    async def execute_node(self, node_type: str, input_data: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeType(node_type)
        return await handler(node_type, input_data)


class NodeExecutor:
    """Executes individual workflow nodes by walking the source chain."""

    def __init__(self, settings: "Settings", plugins: "NodePlugin"):
        self.settings = settings
        self._sources: List[Any] = [plugins, BuiltinNodeSource(settings)]

    def knows(self, node_type: str) -> bool:
        return any(source.knows(node_type) for source in self._sources)

    async def execute(self, node_type: str, input_data: Dict[str, Any]) -> ExecutionResult:
        """Execute a node type against its resolved input.

        Args:
            node_type: The node type to run
            input_data: Node configuration merged with upstream outputs

        Returns:
            ExecutionResult; never raises for node-level failures
        """
        for source in self._sources:
            try:
                raw = await source.execute_node(node_type, input_data)
            except UnknownNodeType:
                continue
            except Exception as e:
                logger.error("Node source raised", node_type=node_type,
                             source=type(source).__name__, error=str(e), exc_info=True)
                return ExecutionResult.failure(f"{node_type} execution error: {e}")

            result = ExecutionResult.from_dict(raw or {})
            # Legacy plugin contract: an "Unknown node type" error means "not mine"
            if not result.success and 'Unknown node type' in (result.error or ''):
                continue
            if not result.success and not result.error:
                result.error = f"{node_type} execution failed"
            logger.debug("Node executed", node_type=node_type, source=type(source).__name__,
                         success=result.success, task_id=result.task_id)
            return result

        return ExecutionResult.failure(f"Unknown node type: {node_type}")
