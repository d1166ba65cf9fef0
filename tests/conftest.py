import io

import httpx
import pytest
from starlette.datastructures import Headers
from starlette.datastructures import UploadFile

from app.core.config import Settings

UPSTREAM_BASE_URL = "http://upstream.test"


class ListEventSink:
    """Collects every event it is given, in order."""

    def __init__(self):
        self.events = []

    async def accept(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [event.type for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def event_sink():
    return ListEventSink()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        upstream_base_url=UPSTREAM_BASE_URL,
        upstream_api_key="sk-test",
        default_model="qwen2.5-32b",
        replay_chunk_delay=0.0,
    )


# Fixture factory: an httpx client whose requests are answered by `handler`
@pytest.fixture
def make_upstream_client():
    def _make(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=UPSTREAM_BASE_URL)

    return _make


def _sse_body(*payloads: str, done: bool = True) -> bytes:
    lines = [f"data: {payload}\n" for payload in payloads]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines).encode()


async def _byte_stream(*pieces: bytes):
    for piece in pieces:
        yield piece


# Builds an SSE body from JSON payload strings, terminated by [DONE] unless done=False
@pytest.fixture
def sse_body():
    return _sse_body


# Async iterator over raw body pieces, for responses delivered in several reads
@pytest.fixture
def byte_stream():
    return _byte_stream


# Fixture factory to create upload files with filename, content and declared type
@pytest.fixture
def make_dummy_upload():
    def _make_dummy_upload(filename, content: bytes, content_type: str = "text/plain"):
        return UploadFile(
            file=io.BytesIO(content),
            filename=filename,
            headers=Headers({"content-type": content_type}),
        )

    return _make_dummy_upload
