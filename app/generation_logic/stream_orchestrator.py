import asyncio
import json
import logging
from collections.abc import AsyncIterator
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Protocol
from uuid import uuid4

from app.core.cancellation import CancellationToken
from app.core.exceptions import PipelineError
from app.models.pipeline_models import GenerationRequest
from app.models.pipeline_models import UploadedDocument
from app.models.stream_events import ErrorEvent
from app.models.stream_events import StreamEvent
from app.services.llm import GenerationClient
from app.services.pipeline import PipelineService
from app.services.socket_hub import SocketHub

__all__ = [
    "EventSink",
    "FanOutSink",
    "QueueEventSink",
    "TopicEventSink",
    "_create_stream_event",
    "stream_generation_events",
    "stream_pipeline_events",
]

logger = logging.getLogger(__name__)

# Marks the end of a producer task on the event queue
_END_OF_STREAM = object()


# ---------------------------------------------------------------------------
# Event sinks
# ---------------------------------------------------------------------------


class EventSink(Protocol):
    async def accept(self, event: StreamEvent) -> None: ...


class QueueEventSink:
    """Feeds events to the HTTP response through an asyncio queue."""

    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    async def accept(self, event: StreamEvent) -> None:
        await self.queue.put(event)


class TopicEventSink:
    """Publishes events to the socket subscribers of one topic."""

    def __init__(self, hub: SocketHub, topic: str) -> None:
        self.hub = hub
        self.topic = topic

    async def accept(self, event: StreamEvent) -> None:
        await self.hub.send_to_subscribers(self.topic, event.to_frame())


class FanOutSink:
    """Forwards each event to several sinks, in order."""

    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = sinks

    async def accept(self, event: StreamEvent) -> None:
        for sink in self.sinks:
            await sink.accept(event)


# ---------------------------------------------------------------------------
# NDJSON event helper
# ---------------------------------------------------------------------------


def _create_stream_event(event: StreamEvent) -> str:
    """Serialize an event to one NDJSON line."""
    return json.dumps(event.to_frame(), ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# HTTP attach
# ---------------------------------------------------------------------------


async def _drain(
    producer: Callable[[EventSink], Awaitable[None]],
    token: CancellationToken,
    request_id: str,
    extra_sinks: tuple[EventSink, ...] = (),
) -> AsyncIterator[str]:
    """Run ``producer`` in a task and yield its events as NDJSON lines.

    Frames are yielded in arrival order until the producer settles. If the
    consumer goes away first, the token is cancelled and the task awaited.
    """
    queue_sink = QueueEventSink()
    sink: EventSink = FanOutSink(queue_sink, *extra_sinks) if extra_sinks else queue_sink

    async def _produce() -> None:
        try:
            await producer(sink)
        except PipelineError as e:
            # Already reported to the client as an error event
            logger.info("[%s] Stream ended with %s: %s", request_id, type(e).__name__, e)
        except Exception as e:
            logger.exception("[%s] Unexpected error during streaming: %s", request_id, e)
            await sink.accept(ErrorEvent(message=f"An unexpected server error occurred: {e}", code="internal_error"))
        finally:
            await queue_sink.queue.put(_END_OF_STREAM)

    task = asyncio.create_task(_produce())
    try:
        while True:
            item = await queue_sink.queue.get()
            if item is _END_OF_STREAM:
                break
            yield _create_stream_event(item)
        await task
    finally:
        if not task.done():
            logger.info("[%s] Client went away, cancelling run", request_id)
            token.cancel("Client disconnected")
            await asyncio.gather(task, return_exceptions=True)
        logger.info("[%s] Stream generation logic finished.", request_id)


def stream_pipeline_events(
    pipeline: PipelineService,
    document: UploadedDocument,
    run_id: str | None = None,
    model: str | None = None,
    hub: SocketHub | None = None,
    topic: str | None = None,
    token: CancellationToken | None = None,
) -> AsyncIterator[str]:
    """Run the workflow for ``document``, yielding NDJSON frames for the HTTP response.

    With ``hub`` and ``topic`` set, every event is also published to the
    topic's socket subscribers.
    """
    request_id = run_id or uuid4().hex
    token = token or CancellationToken()
    logger.info("[%s] Initiating streaming workflow for %s", request_id, document.file_name)

    async def _run(sink: EventSink) -> None:
        await pipeline.run(document, sink, token=token, run_id=request_id, model=model)

    extra_sinks: tuple[EventSink, ...] = (TopicEventSink(hub, topic),) if hub is not None and topic else ()
    return _drain(_run, token, request_id, extra_sinks)


def stream_generation_events(
    client: GenerationClient,
    request: GenerationRequest,
    request_id: str | None = None,
) -> AsyncIterator[str]:
    """Run one streaming generation call, yielding its chunk/complete/error frames."""
    request_id = request_id or uuid4().hex
    if request.token is None:
        request.token = CancellationToken()
    token = request.token

    async def _run(sink: EventSink) -> None:
        await client.generate_streaming(request, sink.accept, request_id=request_id)  # type: ignore[arg-type]

    return _drain(_run, token, request_id)
