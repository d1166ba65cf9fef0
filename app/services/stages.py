"""The stages of the test-case generation workflow.

Each stage is an awaitable ``stage(run, sink) -> str``: it reads what earlier
stages left on the run, may emit events to the sink, and returns its output
text. The sequencer records the output; stages never record it themselves.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from typing import TYPE_CHECKING
from typing import Any
from typing import Protocol

from app.core.cancellation import run_cancellable
from app.core.config import Settings
from app.core.exceptions import PipelineError
from app.generation_logic.text_replay import replay_text
from app.models.pipeline_models import GenerationRequest
from app.models.pipeline_models import PipelineResult
from app.models.pipeline_models import PipelineRun
from app.models.pipeline_models import ResultMetadata
from app.models.pipeline_models import UploadedDocument
from app.models.stream_events import ChunkEvent
from app.models.stream_events import CompleteEvent
from app.models.stream_events import MetadataEvent
from app.models.stream_events import RelayEvent
from app.models.stream_events import SectionEvent
from app.services.extractor import extract
from app.services.llm import GenerationClient
from app.services.llm import render_prompt

if TYPE_CHECKING:
    from app.generation_logic.stream_orchestrator import EventSink

logger = logging.getLogger(__name__)

PARSE_DOCUMENT = "ParseDocument"
EXTRACT_KEY_POINTS = "ExtractKeyPoints"
GENERATE_TEST_CASES = "GenerateTestCases"
GENERATE_TEST_REPORT = "GenerateTestReport"
FINALIZE = "Finalize"

STAGE_NAMES = (PARSE_DOCUMENT, EXTRACT_KEY_POINTS, GENERATE_TEST_CASES, GENERATE_TEST_REPORT, FINALIZE)

WORKFLOW_NAME = "TestcaseWorkflow"
WORKFLOW_VERSION = "1.0.0"


def workflow_info() -> dict[str, Any]:
    return {
        "name": WORKFLOW_NAME,
        "version": WORKFLOW_VERSION,
        "steps": list(STAGE_NAMES),
        "description": "Generates test points, test cases and a test report from a requirements document",
    }


class Stage(Protocol):
    name: str
    title: str
    status_message: str

    async def __call__(self, run: PipelineRun, sink: EventSink) -> str: ...


class ExtractionStage:
    """Reads the uploaded document. Makes no generation call."""

    name = PARSE_DOCUMENT
    title = "Parse document"
    status_message = "Parsing the document..."

    def __init__(self, document: UploadedDocument, max_prompt_chars: int) -> None:
        self.document = document
        self.max_prompt_chars = max_prompt_chars

    async def __call__(self, run: PipelineRun, sink: EventSink) -> str:
        # A cancelled PDF read is abandoned, its worker thread still runs to the end
        extracted = await run_cancellable(extract(self.document, run.run_id, self.max_prompt_chars), run.token)
        run.document = extracted
        run.input_text = extracted.text
        return extracted.text


ContextBuilder = Callable[[PipelineRun], dict[str, Any]]


class GenerationStage:
    """Renders a prompt from earlier outputs and runs one generation call.

    With ``stream_generation`` enabled the upstream output is relayed chunk by
    chunk; otherwise the full text is fetched and replayed progressively.
    """

    def __init__(
        self,
        name: str,
        title: str,
        status_message: str,
        template_name: str,
        build_context: ContextBuilder,
        client: GenerationClient,
        settings: Settings,
        model: str,
    ) -> None:
        self.name = name
        self.title = title
        self.status_message = status_message
        self.template_name = template_name
        self.build_context = build_context
        self.client = client
        self.settings = settings
        self.model = model

    async def __call__(self, run: PipelineRun, sink: EventSink) -> str:
        prompt = render_prompt(self.template_name, self.build_context(run))
        await sink.accept(SectionEvent(title=self.title, stage=self.name))

        request = GenerationRequest(
            model=self.model,
            prompt=prompt,
            temperature=self.settings.temperature,
            stream=self.settings.stream_generation,
            token=run.token,
        )
        logger.info("[%s] Stage %s: prompt of %d chars", run.run_id, self.name, len(prompt))

        if not self.settings.stream_generation:
            text = await self.client.generate(request, request_id=run.run_id)
            if text:
                await replay_text(
                    text,
                    sink,
                    chunk_size=self.settings.replay_chunk_size,
                    delay=self.settings.replay_chunk_delay,
                    token=run.token,
                    stage=self.name,
                )
            return text

        text = ""

        async def forward(event: RelayEvent) -> None:
            # Terminal relay events are reported by the sequencer, not here
            nonlocal text
            if isinstance(event, ChunkEvent):
                text = event.accumulated_text
                await sink.accept(event)
            elif isinstance(event, CompleteEvent):
                text = event.summary

        await self.client.generate_streaming(request, forward, request_id=run.run_id, stage=self.name)
        return text


class FinalizeStage:
    """Assembles the run result and emits its metadata."""

    name = FINALIZE
    title = "Finalize"
    status_message = "Finalizing the workflow..."

    async def __call__(self, run: PipelineRun, sink: EventSink) -> str:
        if run.document is None:
            raise PipelineError("Finalize reached without an extracted document")
        outputs = run.stage_outputs
        metadata = ResultMetadata(
            file_name=run.document.file_name,
            page_count=run.document.page_count,
            file_size=run.document.file_size,
            generated_at=datetime.now(timezone.utc),
        )
        await sink.accept(MetadataEvent(data=metadata.model_dump(mode="json", by_alias=True)))

        summary = (
            f"Generated test points, test cases and a test report for '{run.document.file_name}' "
            f"({run.document.page_count} pages)"
        )
        run.result = PipelineResult(
            key_points=outputs[EXTRACT_KEY_POINTS],
            test_cases=outputs[GENERATE_TEST_CASES],
            test_report=outputs[GENERATE_TEST_REPORT],
            summary=summary,
            stage_outputs={**outputs, FINALIZE: summary},
            metadata=metadata,
        )
        return summary


def _key_points_context(run: PipelineRun) -> dict[str, Any]:
    file_name = run.document.file_name if run.document else ""
    return {"document": run.input_text, "file_name": file_name}


def _test_cases_context(run: PipelineRun) -> dict[str, Any]:
    return {"key_points": run.stage_outputs[EXTRACT_KEY_POINTS], "document": run.input_text}


def _test_report_context(run: PipelineRun) -> dict[str, Any]:
    return {
        "key_points": run.stage_outputs[EXTRACT_KEY_POINTS],
        "test_cases": run.stage_outputs[GENERATE_TEST_CASES],
    }


def build_testcase_stages(
    document: UploadedDocument,
    client: GenerationClient,
    settings: Settings,
    model: str | None = None,
) -> list[Stage]:
    """Build the ordered stage list for one document."""
    model = model or settings.default_model
    return [
        ExtractionStage(document, settings.max_prompt_chars),
        GenerationStage(
            EXTRACT_KEY_POINTS,
            "Test Points",
            "Extracting test points...",
            "extract_key_points.jinja2",
            _key_points_context,
            client,
            settings,
            model,
        ),
        GenerationStage(
            GENERATE_TEST_CASES,
            "Test Cases",
            "Generating test cases...",
            "generate_test_cases.jinja2",
            _test_cases_context,
            client,
            settings,
            model,
        ),
        GenerationStage(
            GENERATE_TEST_REPORT,
            "Test Report",
            "Generating the test report...",
            "generate_test_report.jinja2",
            _test_report_context,
            client,
            settings,
            model,
        ),
        FinalizeStage(),
    ]
