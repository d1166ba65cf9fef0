"""Normalized events relayed to clients, one NDJSON frame each."""

from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic.alias_generators import to_camel

from app.models.pipeline_models import PipelineResult


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_frame(self) -> dict[str, Any]:
        """Wire shape: ``{type, ...fields}`` with camelCase keys and unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StartEvent(_Event):
    type: Literal["start"] = "start"
    label: str
    run_id: str | None = None
    file_name: str | None = None


class ProgressEvent(_Event):
    type: Literal["progress"] = "progress"
    percent: int = Field(ge=0, le=100)
    label: str
    stage: str | None = None


class ChunkEvent(_Event):
    type: Literal["chunk"] = "chunk"
    text: str
    accumulated_text: str
    stage: str | None = None


class SectionEvent(_Event):
    type: Literal["section"] = "section"
    title: str
    stage: str | None = None


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    summary: str
    result: PipelineResult | None = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    stage: str | None = None
    code: str | None = None


class MetadataEvent(_Event):
    type: Literal["metadata"] = "metadata"
    data: dict[str, Any]


class StatusEvent(_Event):
    type: Literal["status"] = "status"
    message: str
    stage: str | None = None


StreamEvent = Annotated[
    Union[StartEvent, ProgressEvent, ChunkEvent, SectionEvent, CompleteEvent, ErrorEvent, MetadataEvent, StatusEvent],
    Field(discriminator="type"),
]

# Events a relay (and therefore a streaming generation call) may produce
RelayEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_frame(frame: str | bytes) -> StreamEvent:
    """Parse one NDJSON frame back into its event model."""
    return stream_event_adapter.validate_json(frame)
