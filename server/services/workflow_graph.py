"""Workflow DAG resolution.

WorkflowGraph is the pure graph view (topological order, upstream lookup,
ready-set selection). GraphResolver adds persistence: it loads the graph for
an execution (snapshot first, live definition second) and builds a node's
input map from its completed upstream node tasks.
"""

from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from pydantic import ValidationError
from sqlalchemy import select

from core.database import Database
from core.logging import get_logger
from models.database import NodeStatus, NodeTask, Workflow, WorkflowExecution
from models.workflow import Connection, WorkflowDefinition
from services.exceptions import WorkflowCycleError, WorkflowError

logger = get_logger(__name__)


class WorkflowGraph:
    """Read-only view over a workflow definition."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._node_ids = [node.id for node in definition.nodes]
        known = set(self._node_ids)
        self._upstream: Dict[str, List[str]] = {nid: [] for nid in self._node_ids}
        self._downstream: Dict[str, List[str]] = {nid: [] for nid in self._node_ids}
        for conn in definition.connections:
            src, dst = conn.source.node_id, conn.target.node_id
            # Dangling edges are ignored
            if src in known and dst in known:
                if src not in self._upstream[dst]:
                    self._upstream[dst].append(src)
                if dst not in self._downstream[src]:
                    self._downstream[src].append(dst)

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "WorkflowGraph":
        """Parse graph JSON. Raises WorkflowError when the shape is invalid."""
        try:
            return cls(WorkflowDefinition.model_validate(data or {}))
        except ValidationError as e:
            raise WorkflowError(f"Invalid workflow definition: {e.errors(include_url=False)}") from e

    @property
    def node_ids(self) -> List[str]:
        return list(self._node_ids)

    def upstream(self, node_id: str) -> List[str]:
        return list(self._upstream.get(node_id, []))

    def incoming(self, node_id: str) -> List[Connection]:
        return [c for c in self.definition.connections if c.target.node_id == node_id]

    def topological_order(self) -> List[str]:
        """Kahn's algorithm, stable by declaration order.

        Raises:
            WorkflowCycleError: if some nodes can never reach in-degree zero
        """
        in_degree = {nid: len(self._upstream[nid]) for nid in self._node_ids}
        queue = deque(nid for nid in self._node_ids if in_degree[nid] == 0)
        order: List[str] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for child in self._downstream[nid]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self._node_ids):
            raise WorkflowCycleError(nid for nid, deg in in_degree.items() if deg > 0)
        return order

    def next_ready(self, tasks: Sequence[NodeTask]) -> Optional[NodeTask]:
        """First pending task, in topological order, whose upstreams all completed.

        Upstream nodes without a task in this iteration do not block.
        """
        by_node = {t.node_id: t for t in tasks}
        try:
            order = self.topological_order()
        except WorkflowCycleError:
            order = self._node_ids
        rank = {nid: i for i, nid in enumerate(order)}

        pending = sorted(
            (t for t in tasks if t.status == NodeStatus.PENDING.value),
            key=lambda t: (rank.get(t.node_id, len(rank)), t.id or 0),
        )
        for task in pending:
            blockers = [
                up for up in self.upstream(task.node_id)
                if up in by_node and by_node[up].status != NodeStatus.COMPLETED.value
            ]
            if not blockers:
                return task
        return None

    def blocked_by_failure(self, tasks: Sequence[NodeTask]) -> List[NodeTask]:
        """Pending tasks that can never run because an ancestor failed."""
        by_node = {t.node_id: t for t in tasks}
        failed: Set[str] = {t.node_id for t in tasks if t.status == NodeStatus.FAILED.value}
        doomed: List[NodeTask] = []
        for nid in self._reachable_from(failed):
            task = by_node.get(nid)
            if task is not None and task.status == NodeStatus.PENDING.value:
                doomed.append(task)
        return doomed

    def _reachable_from(self, roots: Iterable[str]) -> List[str]:
        seen: Set[str] = set()
        stack = list(roots)
        out: List[str] = []
        while stack:
            nid = stack.pop()
            for child in self._downstream.get(nid, []):
                if child not in seen:
                    seen.add(child)
                    out.append(child)
                    stack.append(child)
        return out


class GraphResolver:
    """Loads execution graphs and resolves node inputs from upstream results."""

    def __init__(self, database: Database):
        self.database = database

    async def load_graph(self, execution_id: int, session=None) -> Optional[WorkflowGraph]:
        """Graph for an execution: its snapshot, else the live workflow definition."""
        if session is None:
            async with self.database.get_session() as own:
                return await self._load_graph(own, execution_id)
        return await self._load_graph(session, execution_id)

    async def _load_graph(self, session, execution_id: int) -> Optional[WorkflowGraph]:
        execution = await session.get(WorkflowExecution, execution_id)
        if execution is None:
            return None
        data = execution.workflow_snapshot
        if not data and execution.workflow_id is not None:
            workflow = await session.get(Workflow, execution.workflow_id)
            data = workflow.json_data if workflow else None
        if not data:
            return None
        try:
            return WorkflowGraph.from_json(data)
        except WorkflowError as e:
            logger.warning("Unreadable workflow graph", execution_id=execution_id, error=str(e))
            return None

    async def resolve_inputs(self, execution_id: int, node_id: str) -> Dict[str, Any]:
        """Map ``to.portId`` -> upstream value for every edge into ``node_id``.

        A completed source contributes its ``result_url`` when set, else
        ``output_data[from.portId]``. Sources that have not completed
        contribute nothing.
        """
        async with self.database.get_session() as session:
            graph = await self._load_graph(session, execution_id)
            if graph is None:
                return {}
            incoming = graph.incoming(node_id)
            if not incoming:
                return {}

            source_ids = {c.source.node_id for c in incoming}
            result = await session.execute(
                select(NodeTask)
                .where(NodeTask.execution_id == execution_id,
                       NodeTask.node_id.in_(source_ids),
                       NodeTask.status == NodeStatus.COMPLETED.value)
                .order_by(NodeTask.id.asc())
            )
            completed = {t.node_id: t for t in result.scalars().all()}

        inputs: Dict[str, Any] = {}
        for conn in incoming:
            source = completed.get(conn.source.node_id)
            if source is None:
                continue
            if source.result_url:
                inputs[conn.target.port_id] = source.result_url
            elif source.output_data:
                inputs[conn.target.port_id] = source.output_data.get(conn.source.port_id)
        logger.debug("Resolved node inputs", execution_id=execution_id, node_id=node_id,
                     ports=sorted(inputs))
        return inputs
