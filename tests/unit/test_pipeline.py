import asyncio
import json
import time
from datetime import datetime
from datetime import timezone

import httpx
import pytest

from app.core.cancellation import CancellationToken
from app.core.exceptions import Cancelled
from app.core.exceptions import StageFailure
from app.core.exceptions import UpstreamError
from app.models.pipeline_models import PipelineResult
from app.models.pipeline_models import PipelineRun
from app.models.pipeline_models import ResultMetadata
from app.models.pipeline_models import RunStatus
from app.models.pipeline_models import UploadedDocument
from app.services import extractor
from app.services.llm import GenerationClient
from app.services.pipeline import PipelineService
from app.services.pipeline import StageSequencer
from app.services.pipeline import error_code
from app.services.pipeline import progress_percent
from app.services.stages import build_testcase_stages

LOGIN_TEXT = "Login requires username and password"
KEY_POINTS = "KP-1: username and password are both mandatory"
TEST_CASES = "TC-1: valid username and password logs in"
TEST_REPORT = "Report: login covered by 1 test case"


# ---------------------------------------------------------------------------
# Stage doubles for the sequencer
# ---------------------------------------------------------------------------


class FakeStage:
    def __init__(self, name, output="out", error=None, finalize=False):
        self.name = name
        self.title = name.title()
        self.status_message = f"Running {name}"
        self.output = output
        self.error = error
        self.finalize = finalize
        self.calls = 0
        self.seen_completed = None

    async def __call__(self, run, sink):
        self.calls += 1
        self.seen_completed = run.completed_stages
        assert run.completed_stages <= run.total_stages
        if self.error is not None:
            raise self.error
        if self.finalize:
            run.result = _result(dict(run.stage_outputs))
        return self.output


def _result(outputs):
    return PipelineResult(
        key_points="k",
        test_cases="t",
        test_report="r",
        summary="s",
        stage_outputs=outputs,
        metadata=ResultMetadata(file_name="f.txt", page_count=1, file_size=1, generated_at=datetime.now(timezone.utc)),
    )


@pytest.mark.parametrize(
    "completed, total, expected",
    [(0, 5, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (3, 8, 38), (5, 5, 100)],
)
def test_progress_percent_rounds_half_up(completed, total, expected):
    assert progress_percent(completed, total) == expected


def test_error_code_mapping():
    assert error_code(UpstreamError("x", 500)) == "upstream_error"
    assert error_code(Cancelled()) == "cancelled"
    assert error_code(RuntimeError("x")) == "stage_error"


@pytest.mark.asyncio
async def test_sequencer_success_event_order(event_sink):
    stages = [FakeStage("a"), FakeStage("b"), FakeStage("c", finalize=True)]
    run = PipelineRun(total_stages=3)

    result = await StageSequencer(stages).run(run, event_sink, file_name="f.txt")

    assert event_sink.types == [
        "start",
        "status",
        "progress",
        "status",
        "progress",
        "status",
        "progress",
        "complete",
    ]
    assert [p.percent for p in event_sink.of_type("progress")] == [33, 67, 100]
    assert event_sink.events[0].run_id == run.run_id
    assert event_sink.events[-1].result == result
    assert run.status is RunStatus.COMPLETED
    assert run.completed_stages == run.total_stages
    assert [s.seen_completed for s in stages] == [0, 1, 2]


@pytest.mark.asyncio
async def test_sequencer_failure_stops_later_stages(event_sink):
    cause = UpstreamError("Request failed with status code: 500", status_code=500)
    stages = [FakeStage("a"), FakeStage("b", error=cause), FakeStage("c", finalize=True)]
    run = PipelineRun(total_stages=3)

    with pytest.raises(StageFailure) as exc:
        await StageSequencer(stages).run(run, event_sink)

    assert exc.value.stage == "b"
    assert exc.value.__cause__ is cause
    assert run.status is RunStatus.FAILED
    assert stages[2].calls == 0
    errors = event_sink.of_type("error")
    assert len(errors) == 1
    assert errors[0].stage == "b"
    assert errors[0].code == "upstream_error"
    assert "complete" not in event_sink.types


@pytest.mark.asyncio
async def test_sequencer_empty_output_is_failure(event_sink):
    stages = [FakeStage("a", output="   "), FakeStage("b", finalize=True)]
    run = PipelineRun(total_stages=2)

    with pytest.raises(StageFailure):
        await StageSequencer(stages).run(run, event_sink)

    assert run.completed_stages == 0
    assert event_sink.of_type("error")[0].code == "stage_error"


@pytest.mark.asyncio
async def test_sequencer_cancelled_stage(event_sink):
    stages = [FakeStage("a", error=Cancelled("Client disconnected")), FakeStage("b", finalize=True)]
    run = PipelineRun(total_stages=2)

    with pytest.raises(Cancelled):
        await StageSequencer(stages).run(run, event_sink)

    assert run.status is RunStatus.CANCELLED
    errors = event_sink.of_type("error")
    assert len(errors) == 1
    assert errors[0].code == "cancelled"


@pytest.mark.asyncio
async def test_sequencer_checks_token_between_stages(event_sink):
    token = CancellationToken()

    class CancellingStage(FakeStage):
        async def __call__(self, run, sink):
            token.cancel("stop")
            return await super().__call__(run, sink)

    stages = [CancellingStage("a"), FakeStage("b", finalize=True)]
    run = PipelineRun(total_stages=2, token=token)

    with pytest.raises(Cancelled):
        await StageSequencer(stages).run(run, event_sink)

    assert stages[1].calls == 0
    assert run.completed_stages == 1
    assert run.status is RunStatus.CANCELLED


# ---------------------------------------------------------------------------
# Full test-case workflow against a fake upstream
# ---------------------------------------------------------------------------


def _stage_reply(query: str) -> str:
    if "Extract the key test points" in query:
        return KEY_POINTS
    if "write detailed test cases" in query:
        return TEST_CASES
    return TEST_REPORT


class FakeUpstream:
    def __init__(self, fail_on=None, stream=True):
        self.fail_on = fail_on
        self.stream = stream
        self.queries = []

    def __call__(self, request):
        query = json.loads(request.content)["query"]
        self.queries.append(query)
        if self.fail_on and self.fail_on in query:
            return httpx.Response(500, text="internal error")
        reply = _stage_reply(query)
        if not self.stream:
            return httpx.Response(200, json={"text": reply})
        half = len(reply) // 2
        body = "".join(
            f"data: {json.dumps({'text': part})}\n" for part in (reply[:half], reply[half:])
        ) + "data: [DONE]\n"
        return httpx.Response(200, content=body.encode())


def _document():
    return UploadedDocument(file_name="login.txt", content=LOGIN_TEXT.encode(), content_type="text/plain")


@pytest.mark.asyncio
async def test_login_scenario_threads_outputs(settings, make_upstream_client, event_sink):
    upstream = FakeUpstream()
    client = GenerationClient(settings, http_client=make_upstream_client(upstream))

    result = await PipelineService(settings, client).run(_document(), event_sink)

    assert len(upstream.queries) == 3
    assert LOGIN_TEXT in upstream.queries[0]
    assert KEY_POINTS in upstream.queries[1]
    assert TEST_CASES in upstream.queries[2]
    assert KEY_POINTS in upstream.queries[2]

    assert result.key_points == KEY_POINTS
    assert result.test_cases == TEST_CASES
    assert result.test_report == TEST_REPORT
    assert result.metadata.page_count >= 1
    assert result.metadata.file_name == "login.txt"
    assert list(result.stage_outputs) == [
        "ParseDocument",
        "ExtractKeyPoints",
        "GenerateTestCases",
        "GenerateTestReport",
        "Finalize",
    ]

    assert event_sink.types[0] == "start"
    assert event_sink.types[-1] == "complete"
    assert event_sink.events[-1].result == result
    assert [s.title for s in event_sink.of_type("section")] == ["Test Points", "Test Cases", "Test Report"]
    assert len(event_sink.of_type("metadata")) == 1
    assert [p.percent for p in event_sink.of_type("progress")] == [20, 40, 60, 80, 100]

    # Relay complete events are not forwarded; only the run's own terminal event is
    assert event_sink.types.count("complete") == 1

    for stage in ("ExtractKeyPoints", "GenerateTestCases", "GenerateTestReport"):
        chunks = [c for c in event_sink.of_type("chunk") if c.stage == stage]
        assert chunks
        assert chunks[-1].accumulated_text == result.stage_outputs[stage]


@pytest.mark.asyncio
async def test_login_scenario_with_replayed_output(settings, make_upstream_client, event_sink):
    replay_settings = settings.model_copy(update={"stream_generation": False, "replay_chunk_size": 8})
    upstream = FakeUpstream(stream=False)
    client = GenerationClient(replay_settings, http_client=make_upstream_client(upstream))

    result = await PipelineService(replay_settings, client).run(_document(), event_sink)

    assert result.test_cases == TEST_CASES
    chunks = [c for c in event_sink.of_type("chunk") if c.stage == "GenerateTestCases"]
    assert all(len(c.text) <= 8 for c in chunks)
    assert chunks[-1].accumulated_text == TEST_CASES


@pytest.mark.asyncio
async def test_upstream_500_on_second_generation_stage(settings, make_upstream_client, event_sink):
    upstream = FakeUpstream(fail_on="write detailed test cases")
    client = GenerationClient(settings, http_client=make_upstream_client(upstream))
    stages = build_testcase_stages(_document(), client, settings)
    run = PipelineRun(total_stages=len(stages))

    with pytest.raises(StageFailure) as exc:
        await StageSequencer(stages).run(run, event_sink)

    assert exc.value.stage == "GenerateTestCases"
    assert isinstance(exc.value.__cause__, UpstreamError)
    assert exc.value.__cause__.status_code == 500
    assert run.status is RunStatus.FAILED
    assert "GenerateTestReport" not in run.stage_outputs
    # Stage 3 never reached the upstream
    assert len(upstream.queries) == 2

    errors = event_sink.of_type("error")
    assert len(errors) == 1
    assert errors[0].stage == "GenerateTestCases"
    assert errors[0].code == "upstream_error"


@pytest.mark.asyncio
async def test_cancel_mid_stream_settles_as_cancelled(settings, make_upstream_client):
    token = CancellationToken()

    async def slow_body():
        yield b'data: {"text": "first"}\n'
        await asyncio.sleep(5)
        yield b'data: {"text": "second"}\n'

    client = GenerationClient(
        settings,
        http_client=make_upstream_client(lambda _r: httpx.Response(200, content=slow_body())),
    )

    class CancelOnFirstChunk:
        def __init__(self):
            self.events = []
            self.cancelled_at = None

        async def accept(self, event):
            self.events.append(event)
            if event.type == "chunk" and self.cancelled_at is None:
                self.cancelled_at = len(self.events)
                token.cancel("Client disconnected")

    sink = CancelOnFirstChunk()

    with pytest.raises(Cancelled):
        await asyncio.wait_for(PipelineService(settings, client).run(_document(), sink, token=token), timeout=2)

    after_cancel = sink.events[sink.cancelled_at :]
    assert [e.type for e in after_cancel] == ["error"]
    assert after_cancel[0].code == "cancelled"


@pytest.mark.asyncio
async def test_transport_error_mid_stream_reports_one_error(settings, make_upstream_client, event_sink):
    async def broken_body():
        yield b'data: {"text": "KP-1 partial"}\n'
        raise httpx.ReadError("connection reset by peer")

    client = GenerationClient(
        settings,
        http_client=make_upstream_client(lambda _r: httpx.Response(200, content=broken_body())),
    )
    stages = build_testcase_stages(_document(), client, settings)
    run = PipelineRun(total_stages=len(stages))

    with pytest.raises(StageFailure) as exc:
        await StageSequencer(stages).run(run, event_sink)

    assert exc.value.stage == "ExtractKeyPoints"
    assert run.status is RunStatus.FAILED
    errors = event_sink.of_type("error")
    assert [(e.stage, e.code) for e in errors] == [("ExtractKeyPoints", "transport_error")]
    assert event_sink.types[-2:] == ["chunk", "error"]


@pytest.mark.asyncio
async def test_cancel_during_pdf_extraction_settles_promptly(settings, make_upstream_client, event_sink, monkeypatch):
    def slow_pdf(file_bytes, fname, request_id):
        time.sleep(1.5)
        return "late text", 1

    monkeypatch.setattr(extractor, "_sync_pdf_extraction", slow_pdf)
    upstream = FakeUpstream()
    client = GenerationClient(settings, http_client=make_upstream_client(upstream))
    document = UploadedDocument(file_name="spec.pdf", content=b"%PDF-1.4", content_type="application/pdf")
    token = CancellationToken()
    token.cancel_after(0.05)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(Cancelled):
        await PipelineService(settings, client).run(document, event_sink, token=token)

    assert loop.time() - started < 0.5
    assert upstream.queries == []
    errors = event_sink.of_type("error")
    assert [(e.stage, e.code) for e in errors] == [("ParseDocument", "cancelled")]
