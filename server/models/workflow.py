"""Pydantic models for the workflow graph JSON.

Graph shape::

    {
        "nodes": [{"id": "n1", "type": "image-gen", "data": {...}}],
        "connections": [
            {"from": {"nodeId": "n1", "portId": "image"},
             "to": {"nodeId": "n2", "portId": "source"}}
        ]
    }
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GraphNode(BaseModel):
    """A node in the workflow graph."""
    model_config = {"extra": "allow"}

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class PortRef(BaseModel):
    """One end of a connection."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    node_id: str = Field(alias="nodeId")
    port_id: str = Field(default="output", alias="portId")


class Connection(BaseModel):
    """Directed edge from an output port to an input port."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    source: PortRef = Field(alias="from")
    target: PortRef = Field(alias="to")


class WorkflowDefinition(BaseModel):
    """Full graph as stored in ``workflows.json_data`` or an execution snapshot."""
    model_config = {"extra": "allow"}

    nodes: List[GraphNode] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    def node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
