import json
import logging
import pathlib
from typing import Any
from uuid import uuid4

import httpx
import jinja2
from tenacity import RetryCallState
from tenacity import retry
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from app.core.cancellation import run_cancellable
from app.core.config import Settings
from app.core.exceptions import Cancelled
from app.core.exceptions import ConfigurationError
from app.core.exceptions import TransportError
from app.core.exceptions import UpstreamError
from app.models.pipeline_models import GenerationRequest
from app.models.pipeline_models import HistoryMessage
from app.models.stream_events import ErrorEvent
from app.services.model_registry import ModelCapability
from app.services.model_registry import UpstreamProtocol
from app.services.model_registry import lookup_model
from app.services.model_registry import resolve_model
from app.services.stream_relay import DONE_SENTINEL
from app.services.stream_relay import ChunkRelay
from app.services.stream_relay import OnRelayEvent
from app.services.stream_relay import strip_data_prefix

# Configure module logger
logger = logging.getLogger(__name__)


# --- Reusable Jinja2 Environment ---
PROMPT_DIR = pathlib.Path(__file__).parent / "prompt_templates"
env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(PROMPT_DIR),
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render a stage prompt from ``prompt_templates``."""
    try:
        template = env.get_template(template_name)
    except jinja2.TemplateNotFound:
        logger.error("Template not found: %s", template_name)
        raise ConfigurationError(f"Prompt template '{template_name}' not found.") from None
    try:
        return template.render(**context)
    except jinja2.UndefinedError as e:
        raise ConfigurationError(f"Prompt template '{template_name}' is missing a variable: {e}") from e


# ---------------------------------------------------------------
# Helper predicate for tenacity retry
# ---------------------------------------------------------------


def _should_retry_connect(retry_state: RetryCallState) -> bool:
    """Retry only when the connection could not be established.

    Nothing has reached the upstream in that case; any response with a status
    code, or a failure after the request was sent, is never retried.
    """
    if not retry_state.outcome:
        return False
    exc = retry_state.outcome.exception()
    if isinstance(exc, httpx.ConnectError | httpx.ConnectTimeout):
        logger.debug("Upstream connection failed (%s), attempt %d. Retrying...", exc, retry_state.attempt_number)
        return True
    return False


# ---------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------


def unwrap_sse_body(raw: str) -> str:
    """Return the JSON text of a body that is a single ``data: {...}`` frame.

    Bodies that are not SSE framed are returned unchanged.
    """
    text = raw.strip()
    if not text.startswith("data:"):
        return text
    for line in text.splitlines():
        data = strip_data_prefix(line.strip())
        if data is not None and data.strip() and data.strip() != DONE_SENTINEL:
            return data.strip()
    return ""


def extract_completion_text(payload: Any) -> str:
    """Pick the generated text out of a non-streaming response payload.

    Checked in order: ``choices[0].message.content``, ``content``, ``text``.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str) and message["content"]:
            return message["content"]
    for field_name in ("content", "text"):
        value = payload.get(field_name)
        if isinstance(value, str) and value:
            return value
    return ""


def decode_completion_body(raw: str) -> str:
    body = unwrap_sse_body(raw)
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise UpstreamError(f"Malformed upstream response body: {body[:200]!r}", status_code=200) from e
    return extract_completion_text(payload)


# ---------------------------------------------------------------
# Generation client
# ---------------------------------------------------------------


class GenerationClient:
    """Talks to the two upstream generation services.

    One instance is created at startup and shared by every request; it holds no
    per-request state.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        if lookup_model(settings.default_model) is None:
            raise ConfigurationError(f"Default model '{settings.default_model}' is not in the model registry")
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.upstream_base_url,
            timeout=httpx.Timeout(settings.llm_connect_timeout, read=settings.llm_read_timeout),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- request building -------------------------------------------------

    def resolve(self, request: GenerationRequest) -> ModelCapability:
        return resolve_model(
            request.model,
            self.settings.default_model,
            strict=self.settings.strict_model_lookup,
        )

    @staticmethod
    def _content_parts(text: str, images: list[str]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        if text:
            parts.append({"type": "text", "text": text})
        for url in images:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return parts

    def build_history(self, capability: ModelCapability, history: list[HistoryMessage]) -> list[dict[str, Any]]:
        entries = [item for item in history if item.content]
        if capability.supports_media:
            return [{"role": item.role, "content": self._content_parts(item.content, item.images)} for item in entries]
        return [{"role": item.role, "content": item.content} for item in entries]

    def build_user_message(self, capability: ModelCapability, prompt: str, images: list[str]) -> dict[str, Any]:
        if capability.supports_media:
            return {"role": "user", "content": self._content_parts(prompt, images)}
        return {"role": "user", "content": prompt}

    def build_payload(self, request: GenerationRequest, capability: ModelCapability) -> tuple[str, dict[str, Any], dict[str, str]]:
        """Return ``(path, json_body, headers)`` for the capability's protocol."""
        history = self.build_history(capability, request.history)

        if capability.protocol is UpstreamProtocol.CONVERSATION:
            body = {
                "stream": request.stream,
                "query": request.prompt,
                "model_name": request.model,
                "temperature": request.temperature,
                "score_threshold": self.settings.score_threshold,
                "max_tokens": self.settings.max_tokens,
                "history": history,
            }
            return self.settings.conversation_path, body, {}

        if capability.protocol is UpstreamProtocol.MESSAGES:
            messages = history or [self.build_user_message(capability, request.prompt, request.images)]
            body = {
                "stream": request.stream,
                "model": request.model,
                "messages": messages,
                "temperature": request.temperature,
            }
            headers = {"Authorization": self.settings.upstream_api_key} if self.settings.upstream_api_key else {}
            return self.settings.messages_path, body, headers

        raise ConfigurationError(f"Unsupported upstream protocol: {capability.protocol}")

    # --- transport ---------------------------------------------------------

    @retry(
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        stop=stop_after_attempt(3),
        retry=_should_retry_connect,
        reraise=True,
    )  # type: ignore
    async def _open(self, path: str, body: dict[str, Any], headers: dict[str, str], stream: bool) -> httpx.Response:
        upstream_request = self._client.build_request("POST", path, json=body, headers=headers)
        return await self._client.send(upstream_request, stream=stream)

    async def _open_checked(self, request_id: str, path: str, body: dict[str, Any], headers: dict[str, str], stream: bool) -> httpx.Response:
        try:
            response = await self._open(path, body, headers, stream)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error("[%s] Upstream unreachable at %s: %s", request_id, path, e)
            raise UpstreamError(f"Upstream unreachable: {e}") from e
        except httpx.HTTPError as e:
            logger.error("[%s] Upstream request to %s failed: %s", request_id, path, e)
            raise UpstreamError(f"Upstream request failed: {e}") from e

        if response.status_code != 200:
            if stream:
                await response.aread()
                await response.aclose()
            logger.error(
                "[%s] Upstream returned status %d: %s",
                request_id,
                response.status_code,
                response.text[:200],
            )
            raise UpstreamError(
                f"Request failed with status code: {response.status_code}",
                status_code=response.status_code,
            )
        return response

    # --- public API --------------------------------------------------------

    async def generate(self, request: GenerationRequest, request_id: str | None = None) -> str:
        """Issue a non-streaming call and return the generated text."""
        request_id = request_id or str(uuid4())
        capability = self.resolve(request)
        logger.info(
            "[%s] Generation call: model=%s protocol=%s",
            request_id,
            request.model,
            capability.protocol.value,
        )
        return await run_cancellable(self._generate(request_id, request, capability), request.token)

    async def _generate(self, request_id: str, request: GenerationRequest, capability: ModelCapability) -> str:
        path, body, headers = self.build_payload(request, capability)
        body["stream"] = False
        response = await self._open_checked(request_id, path, body, headers, stream=False)
        content = decode_completion_body(response.text)
        logger.debug("[%s] Generation response received, length: %d chars", request_id, len(content))
        return content

    async def generate_streaming(
        self,
        request: GenerationRequest,
        on_event: OnRelayEvent,
        request_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        """Issue a streaming call, relaying chunk/complete/error events to ``on_event``.

        Every failure other than cancellation reaches ``on_event`` as exactly one
        ``error`` event before it is raised.
        """
        request_id = request_id or str(uuid4())
        try:
            capability = self.resolve(request)
        except ConfigurationError as e:
            await on_event(ErrorEvent(message=str(e), stage=stage, code="configuration_error"))
            raise
        logger.info(
            "[%s] Streaming generation call: model=%s protocol=%s",
            request_id,
            request.model,
            capability.protocol.value,
        )
        try:
            await run_cancellable(self._stream(request_id, request, capability, on_event, stage), request.token)
        except UpstreamError as e:
            await on_event(ErrorEvent(message=str(e), stage=stage, code="upstream_error"))
            raise
        except Cancelled:
            logger.info("[%s] Streaming generation call cancelled", request_id)
            raise

    async def _stream(
        self,
        request_id: str,
        request: GenerationRequest,
        capability: ModelCapability,
        on_event: OnRelayEvent,
        stage: str | None,
    ) -> None:
        path, body, headers = self.build_payload(request, capability)
        body["stream"] = True
        response = await self._open_checked(request_id, path, body, headers, stream=True)
        try:
            relay = ChunkRelay(request_id=request_id, stage=stage)
            outcome = await relay.relay(response.aiter_text(), on_event, request.token)
        finally:
            await response.aclose()

        if outcome.error is not None:
            raise TransportError(f"Upstream stream interrupted: {outcome.error}")
        logger.debug("[%s] Stream relayed, %d chars", request_id, len(outcome.text))
