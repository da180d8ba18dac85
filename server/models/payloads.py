"""Tagged queue payloads.

Every ``task_queue`` row carries a JSON payload whose shape is selected by
``task_type``. Payloads are validated when enqueued and again when decoded by
the worker, so a malformed row fails fast instead of half-executing.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from services.exceptions import InvalidPayload


class NodeExecutionPayload(BaseModel):
    """Run one node task."""

    model_config = ConfigDict(extra="ignore")

    task_type: Literal["node_execution"] = "node_execution"
    execution_id: int
    task_id: int
    node_id: str
    node_type: str
    # Set when a delay node is resumed after its deferral
    delay_elapsed: bool = False


class PollApiStatusPayload(BaseModel):
    """Poll an external provider for an async node's result."""

    model_config = ConfigDict(extra="ignore")

    task_type: Literal["poll_api_status"] = "poll_api_status"
    node_task_id: int
    execution_id: int
    external_task_id: str
    provider: str = "rhub"
    api_key: Optional[str] = None
    poll_count: int = Field(default=0, ge=0)
    max_polls: int = Field(default=60, ge=1)

    def next_poll(self) -> "PollApiStatusPayload":
        return self.model_copy(update={"poll_count": self.poll_count + 1})


QueuePayload = Annotated[
    Union[NodeExecutionPayload, PollApiStatusPayload],
    Field(discriminator="task_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(QueuePayload)


def decode_payload(task_type: str, payload: Dict[str, Any]):
    """Decode a stored payload into its tagged variant.

    The row's ``task_type`` column wins over any tag inside the JSON.
    """
    data = dict(payload or {})
    data["task_type"] = task_type
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid {task_type} payload: {e.errors(include_url=False)}") from e


def encode_payload(payload: Union[NodeExecutionPayload, PollApiStatusPayload]) -> Dict[str, Any]:
    return payload.model_dump(mode="json", exclude={"task_type"})
