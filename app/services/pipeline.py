from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from app.core.config import Settings
from app.core.exceptions import Cancelled
from app.core.exceptions import ConfigurationError
from app.core.exceptions import ExtractionError
from app.core.exceptions import PipelineError
from app.core.exceptions import StageFailure
from app.core.exceptions import TransportError
from app.core.exceptions import UpstreamError
from app.core.exceptions import ValidationError
from app.models.pipeline_models import PipelineResult
from app.models.pipeline_models import PipelineRun
from app.models.pipeline_models import RunStatus
from app.models.pipeline_models import UploadedDocument
from app.models.stream_events import CompleteEvent
from app.models.stream_events import ErrorEvent
from app.models.stream_events import ProgressEvent
from app.models.stream_events import StartEvent
from app.models.stream_events import StatusEvent
from app.services.llm import GenerationClient
from app.services.stages import Stage
from app.services.stages import build_testcase_stages

if TYPE_CHECKING:
    from app.core.cancellation import CancellationToken
    from app.generation_logic.stream_orchestrator import EventSink

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_LABEL = "Test case generation"

_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (ValidationError, "validation_error"),
    (ExtractionError, "extraction_error"),
    (UpstreamError, "upstream_error"),
    (TransportError, "transport_error"),
    (ConfigurationError, "configuration_error"),
)


def error_code(exc: BaseException) -> str:
    """Machine-readable code sent with the ``error`` event for ``exc``."""
    if isinstance(exc, Cancelled):
        return "cancelled"
    for exc_type, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return "stage_error"


def progress_percent(completed: int, total: int) -> int:
    """``100 * completed / total`` rounded half up."""
    if total <= 0:
        return 100
    return (200 * completed + total) // (2 * total)


class StageSequencer:
    """Runs an ordered stage list against one run, reporting to a sink.

    Stages run strictly one after another; stage *i* starts only after stage
    *i-1* recorded non-empty output. The sequencer does not look at chunk or
    section events, it passes the sink through to the stages unchanged.
    """

    def __init__(self, stages: Sequence[Stage], label: str = DEFAULT_LABEL) -> None:
        if not stages:
            raise PipelineError("A pipeline needs at least one stage")
        self.stages = list(stages)
        self.label = label

    async def run(self, run: PipelineRun, sink: EventSink, file_name: str | None = None) -> PipelineResult:
        total = len(self.stages)
        if run.total_stages != total:
            raise PipelineError(f"Run expects {run.total_stages} stages, sequencer has {total}")

        logger.info("[%s] Starting pipeline run with %d stages", run.run_id, total)
        await sink.accept(StartEvent(label=self.label, run_id=run.run_id, file_name=file_name))

        last_output = ""
        for index, stage in enumerate(self.stages):
            run.current_stage_index = index
            try:
                if run.token is not None:
                    run.token.raise_if_cancelled()
                run.transition(RunStatus.RUNNING)
                await sink.accept(StatusEvent(stage=stage.name, message=stage.status_message))

                output = await stage(run, sink)
                if not output or not output.strip():
                    raise PipelineError(f"Stage '{stage.name}' produced no output")

                run.record_output(stage.name, output)
                run.transition(RunStatus.STAGE_COMPLETE)
                last_output = output
            except Cancelled as e:
                logger.info("[%s] Run cancelled during stage %s: %s", run.run_id, stage.name, e)
                run.transition(RunStatus.CANCELLED)
                await sink.accept(ErrorEvent(message=str(e), stage=stage.name, code="cancelled"))
                raise
            except asyncio.CancelledError:
                logger.info("[%s] Run task cancelled during stage %s", run.run_id, stage.name)
                run.transition(RunStatus.CANCELLED)
                raise
            except Exception as e:
                logger.error("[%s] Stage %s failed: %s", run.run_id, stage.name, e, exc_info=not isinstance(e, PipelineError))
                run.transition(RunStatus.FAILED)
                await sink.accept(ErrorEvent(message=str(e), stage=stage.name, code=error_code(e)))
                raise StageFailure(stage.name, str(e)) from e

            logger.info("[%s] Stage %s complete (%d/%d)", run.run_id, stage.name, run.completed_stages, total)
            await sink.accept(
                ProgressEvent(
                    percent=progress_percent(run.completed_stages, total),
                    label=f"{stage.title} complete",
                    stage=stage.name,
                )
            )

        result = run.result
        if result is None:
            run.transition(RunStatus.FAILED)
            last_stage = self.stages[-1].name
            message = "Pipeline finished without producing a result"
            await sink.accept(ErrorEvent(message=message, stage=last_stage, code="stage_error"))
            raise StageFailure(last_stage, message)

        run.transition(RunStatus.COMPLETED)
        await sink.accept(CompleteEvent(summary=last_output, result=result))
        logger.info("[%s] Pipeline completed successfully", run.run_id)
        return result


class PipelineService:
    """Builds the test-case stage list for a document and runs it."""

    def __init__(self, settings: Settings, client: GenerationClient) -> None:
        self.settings = settings
        self.client = client

    async def run(
        self,
        document: UploadedDocument,
        sink: EventSink,
        token: CancellationToken | None = None,
        run_id: str | None = None,
        model: str | None = None,
    ) -> PipelineResult:
        stages = build_testcase_stages(document, self.client, self.settings, model=model)
        run = PipelineRun(total_stages=len(stages), token=token)
        if run_id:
            run.run_id = run_id
        logger.info(
            "[%s] Pipeline requested for %s (model=%s)",
            run.run_id,
            document.file_name,
            model or self.settings.default_model,
        )
        return await StageSequencer(stages).run(run, sink, file_name=document.file_name)
