"""Node pricing backed by the ``node_costs`` table.

Every node type has a flat per-call credit cost. Types without a row are free.
Costs are looked up per call (no caching) so admin edits apply to the next
node that runs.
"""

from typing import Dict, Iterable, Optional

from sqlalchemy import select

from core.database import Database
from core.logging import get_logger
from models.database import NodeCost

logger = get_logger(__name__)


class PricingService:
    """Looks up and estimates node credit costs."""

    def __init__(self, database: Database):
        self.database = database

    async def get_node_cost(self, node_type: str) -> float:
        """Per-call cost of ``node_type`` (0 when unpriced)."""
        async with self.database.get_session() as session:
            result = await session.execute(
                select(NodeCost.cost_per_call).where(NodeCost.node_type == node_type)
            )
            cost = result.scalar_one_or_none()
        return float(cost) if cost else 0.0

    async def get_costs(self, node_types: Iterable[str]) -> Dict[str, float]:
        types = set(node_types)
        if not types:
            return {}
        async with self.database.get_session() as session:
            result = await session.execute(
                select(NodeCost.node_type, NodeCost.cost_per_call)
                .where(NodeCost.node_type.in_(types))
            )
            priced = {node_type: float(cost or 0) for node_type, cost in result.all()}
        return {t: priced.get(t, 0.0) for t in types}

    async def estimate_workflow_cost(self, node_types: Iterable[str], repeat_count: int = 1) -> float:
        """Total cost of running each listed node once per iteration.

        Args:
            node_types: Node type of every node in the graph (duplicates count)
            repeat_count: Number of iterations

        Returns:
            Credits needed for the whole execution
        """
        node_types = list(node_types)
        costs = await self.get_costs(node_types)
        per_iteration = sum(costs[t] for t in node_types)
        total = per_iteration * max(1, repeat_count)
        logger.debug("[Pricing] Workflow estimate", nodes=len(node_types),
                     per_iteration=per_iteration, repeat_count=repeat_count, total=total)
        return total

    async def set_node_cost(self, node_type: str, cost_per_call: float,
                            description: Optional[str] = None) -> NodeCost:
        """Create or update a node type's price."""
        if cost_per_call < 0:
            raise ValueError("cost_per_call must be >= 0")
        async with self.database.get_session() as session:
            result = await session.execute(select(NodeCost).where(NodeCost.node_type == node_type))
            row = result.scalar_one_or_none()
            if row is None:
                row = NodeCost(node_type=node_type, cost_per_call=cost_per_call, description=description)
                session.add(row)
            else:
                row.cost_per_call = cost_per_call
                if description is not None:
                    row.description = description
            await session.commit()
            await session.refresh(row)
        logger.info("[Pricing] Node cost set", node_type=node_type, cost_per_call=cost_per_call)
        return row
