"""Consumes an incrementally arriving upstream body and re-emits normalized events.

The upstream services stream Server-Sent-Event style lines::

    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"text": "lo"}
    data: [DONE]

Two payload shapes are understood, each handled by its own parser strategy.
Lines that cannot be parsed are skipped; a transport failure ends the relay
with a single ``error`` event.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from typing import Protocol

import httpx

from app.core.cancellation import CancellationToken
from app.core.exceptions import ParseError
from app.models.stream_events import ChunkEvent
from app.models.stream_events import CompleteEvent
from app.models.stream_events import ErrorEvent
from app.models.stream_events import RelayEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

OnRelayEvent = Callable[[RelayEvent], Awaitable[None]]

# Read failures that terminate a relay
READ_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError, httpx.StreamError, OSError)


# ---------------------------------------------------------------------------
# Payload parser strategies
# ---------------------------------------------------------------------------


class PayloadParser(Protocol):
    def matches(self, payload: dict[str, Any]) -> bool: ...

    def extract(self, payload: dict[str, Any]) -> str: ...


class DeltaContentParser:
    """``{"choices": [{"delta": {"content": ...}}]}`` as sent by both chat protocols."""

    def matches(self, payload: dict[str, Any]) -> bool:
        return isinstance(payload.get("choices"), list)

    def extract(self, payload: dict[str, Any]) -> str:
        choices = payload["choices"]
        if not choices or not isinstance(choices[0], dict):
            return ""
        first = choices[0]
        # Some gateways send the final frame with a full message instead of a delta
        delta = first.get("delta") or first.get("message") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""


class FlatTextParser:
    """``{"text": ...}`` (or ``{"content": ...}``) simplified frames."""

    FIELDS = ("text", "content")

    def matches(self, payload: dict[str, Any]) -> bool:
        return any(isinstance(payload.get(name), str) for name in self.FIELDS)

    def extract(self, payload: dict[str, Any]) -> str:
        for name in self.FIELDS:
            value = payload.get(name)
            if isinstance(value, str):
                return value
        return ""


PAYLOAD_PARSERS: tuple[PayloadParser, ...] = (DeltaContentParser(), FlatTextParser())


def parse_payload(data: str) -> str:
    """Return the content fragment carried by one ``data:`` payload.

    Raises:
        ParseError: The payload is not JSON or matches no known shape.
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise ParseError(f"Payload is not valid JSON: {data[:80]!r}") from e
    if not isinstance(payload, dict):
        raise ParseError(f"Payload is not an object: {data[:80]!r}")

    for parser in PAYLOAD_PARSERS:
        if parser.matches(payload):
            return parser.extract(payload)
    raise ParseError(f"Unrecognized payload shape with keys {sorted(payload)}")


def strip_data_prefix(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :]
    if data.startswith(" "):
        data = data[1:]
    return data


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


@dataclass
class RelayOutcome:
    text: str = ""
    completed: bool = False
    error: str | None = None


class ChunkRelay:
    """Relays one upstream streaming body. Not reusable across calls."""

    def __init__(self, request_id: str = "-", stage: str | None = None) -> None:
        self.request_id = request_id
        self.stage = stage
        self._outcome = RelayOutcome()
        self._finished = False

    async def relay(
        self,
        chunks: AsyncIterator[str],
        on_event: OnRelayEvent,
        token: CancellationToken | None = None,
    ) -> RelayOutcome:
        if self._finished:
            raise RuntimeError("ChunkRelay instances relay a single response")

        buffer = ""
        iterator = chunks.__aiter__()
        while not self._finished:
            try:
                piece = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except READ_ERRORS as e:
                logger.error("[%s] Stream read failed after %d chars: %s", self.request_id, len(self._outcome.text), e)
                await self._fail(str(e) or type(e).__name__, on_event)
                return self._outcome

            buffer += piece
            *lines, buffer = buffer.split("\n")
            for line in lines:
                await self._handle_line(line.rstrip("\r"), on_event, token)
                if self._finished:
                    # Anything after the sentinel is left unread
                    return self._outcome

        if not self._finished and buffer.strip():
            await self._handle_line(buffer.rstrip("\r"), on_event, token)

        if not self._finished:
            logger.info("[%s] Upstream stream ended without a terminator", self.request_id)
            await self._complete(on_event, token)
        return self._outcome

    async def _handle_line(self, line: str, on_event: OnRelayEvent, token: CancellationToken | None) -> None:
        data = strip_data_prefix(line)
        if data is None:
            return
        if data.strip() == DONE_SENTINEL:
            await self._complete(on_event, token)
            return

        try:
            fragment = parse_payload(data)
        except ParseError as e:
            logger.debug("[%s] Skipping unparseable line: %s", self.request_id, e)
            return
        if not fragment:
            return

        if token is not None:
            token.raise_if_cancelled()
        self._outcome.text += fragment
        await on_event(ChunkEvent(text=fragment, accumulated_text=self._outcome.text, stage=self.stage))

    async def _complete(self, on_event: OnRelayEvent, token: CancellationToken | None) -> None:
        if token is not None:
            token.raise_if_cancelled()
        self._finished = True
        self._outcome.completed = True
        await on_event(CompleteEvent(summary=self._outcome.text))

    async def _fail(self, message: str, on_event: OnRelayEvent) -> None:
        self._finished = True
        self._outcome.error = message
        await on_event(ErrorEvent(message=message, stage=self.stage, code="transport_error"))
