from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic.alias_generators import to_camel

from app.core.exceptions import PipelineError

if TYPE_CHECKING:
    from app.core.cancellation import CancellationToken


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractedDocument(_CamelModel):
    """What the extraction collaborator returns for one uploaded file."""

    text: str
    page_count: int = Field(ge=0)
    file_size: int = Field(ge=0)
    file_name: str


class UploadedDocument(BaseModel):
    """A validated upload, not yet extracted."""

    file_name: str
    content: bytes
    content_type: str | None = None


class ResultMetadata(_CamelModel):
    file_name: str
    page_count: int
    file_size: int
    generated_at: datetime


class PipelineResult(_CamelModel):
    """Aggregate of all stage outputs plus input metadata."""

    key_points: str
    test_cases: str
    test_report: str
    summary: str
    stage_outputs: dict[str, str]
    metadata: ResultMetadata


class HistoryMessage(BaseModel):
    role: str
    content: str = ""
    images: list[str] = Field(default_factory=list)


@dataclass
class GenerationRequest:
    """Parameters for one upstream generation call."""

    model: str
    prompt: str
    temperature: float = 0.0
    history: list[HistoryMessage] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    stream: bool = False
    token: CancellationToken | None = None


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STAGE_COMPLETE = "stage-complete"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({RunStatus.STAGE_COMPLETE, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.STAGE_COMPLETE: frozenset({RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


@dataclass
class PipelineRun:
    """One execution of the stage sequence for one input document.

    Stage outputs are append-only and recorded by the stage sequencer; status
    changes go through ``transition``. Stages may set ``document``,
    ``input_text`` and ``result``.
    """

    total_stages: int
    token: CancellationToken | None = None
    run_id: str = field(default_factory=lambda: uuid4().hex)
    input_text: str = ""
    document: ExtractedDocument | None = None
    current_stage_index: int = 0
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    result: PipelineResult | None = None
    _outputs: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def stage_outputs(self) -> Mapping[str, str]:
        return MappingProxyType(self._outputs)

    @property
    def completed_stages(self) -> int:
        return len(self._outputs)

    def record_output(self, stage: str, text: str) -> None:
        if stage in self._outputs:
            raise PipelineError(f"Output for stage '{stage}' is already recorded")
        if self.completed_stages >= self.total_stages:
            raise PipelineError("All stages already have outputs")
        self._outputs[stage] = text

    def transition(self, status: RunStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise PipelineError(f"Invalid run status transition {self.status.value} -> {status.value}")
        if status is RunStatus.COMPLETED and self.completed_stages != self.total_stages:
            raise PipelineError(f"Run cannot complete with {self.completed_stages}/{self.total_stages} stages done")
        self.status = status
