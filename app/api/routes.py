import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter
from fastapi import Depends
from fastapi import File
from fastapi import Form
from fastapi import Request
from fastapi import UploadFile
from fastapi import WebSocket
from fastapi import WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from pydantic import Field as PydanticField

from app.core.config import Settings
from app.generation_logic.file_processing import _read_and_validate_upload
from app.generation_logic.stream_orchestrator import stream_generation_events
from app.generation_logic.stream_orchestrator import stream_pipeline_events
from app.models.pipeline_models import GenerationRequest
from app.models.pipeline_models import HistoryMessage
from app.services.llm import GenerationClient
from app.services.model_registry import MODEL_REGISTRY
from app.services.pipeline import PipelineService
from app.services.socket_hub import SocketHub
from app.services.stages import workflow_info

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

NDJSON_MEDIA_TYPE = "application/x-ndjson"
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# --- Dependencies: services live on app.state, created at startup ---
def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_generation_client(request: Request) -> GenerationClient:
    return request.app.state.generation_client


def get_socket_hub(request: Request) -> SocketHub:
    return request.app.state.socket_hub


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("/workflow/start", tags=["Workflow"])
async def start_workflow(
    file: UploadFile | None = File(default=None),
    workflow_id: str | None = Form(default=None),
    model: str | None = Form(default=None),
    stream: bool | None = Form(default=None),
    settings: Settings = Depends(get_app_settings),
    client: GenerationClient = Depends(get_generation_client),
    hub: SocketHub = Depends(get_socket_hub),
) -> StreamingResponse:
    """
    Runs the test-case workflow on an uploaded document.

    The upload is validated before the response starts: a rejected file gets a
    400 JSON error. Afterwards the response is an NDJSON stream of events
    (`start`, `status`, `section`, `chunk`, `progress`, `metadata`, and a final
    `complete` or `error`). When `workflow_id` is given, every event is also
    published to WebSocket subscribers of that topic.

    `stream` overrides the configured upstream streaming mode for this run.
    """
    request_id = workflow_id or uuid4().hex
    logger.info("[%s] Workflow start requested (model=%s)", request_id, model or settings.default_model)

    document = await _read_and_validate_upload(file, request_id, settings.max_file_size)

    run_settings = settings if stream is None else settings.model_copy(update={"stream_generation": stream})
    pipeline = PipelineService(run_settings, client)
    return StreamingResponse(
        stream_pipeline_events(
            pipeline,
            document,
            run_id=request_id,
            model=model,
            hub=hub if workflow_id else None,
            topic=workflow_id,
        ),
        media_type=NDJSON_MEDIA_TYPE,
        headers=STREAM_HEADERS,
    )


@router.get("/workflow/info", tags=["Workflow"])
async def get_workflow_info() -> dict[str, Any]:
    return workflow_info()


class ChatPayload(BaseModel):
    prompt: str = PydanticField(..., min_length=1, description="User prompt for this turn.")
    model: str | None = PydanticField(default=None, description="Model identifier; defaults to the configured model.")
    temperature: float | None = PydanticField(default=None, ge=0.0, le=2.0)
    history: list[HistoryMessage] = PydanticField(default_factory=list)
    images: list[str] = PydanticField(default_factory=list, description="Image URLs for media-capable models.")
    stream: bool = False


@router.post("/chat", tags=["Generation"], response_model=None)
async def chat(
    payload: ChatPayload,
    settings: Settings = Depends(get_app_settings),
    client: GenerationClient = Depends(get_generation_client),
) -> StreamingResponse | dict[str, str]:
    """Single generation call against either upstream protocol."""
    request_id = uuid4().hex
    model = payload.model or settings.default_model
    request = GenerationRequest(
        model=model,
        prompt=payload.prompt,
        temperature=settings.temperature if payload.temperature is None else payload.temperature,
        history=payload.history,
        images=payload.images,
        stream=payload.stream,
    )

    if payload.stream:
        return StreamingResponse(
            stream_generation_events(client, request, request_id=request_id),
            media_type=NDJSON_MEDIA_TYPE,
            headers=STREAM_HEADERS,
        )

    content = await client.generate(request, request_id=request_id)
    return {"content": content, "model": model}


@router.get("/models", tags=["Generation"])
async def list_models() -> list[dict[str, Any]]:
    return [
        {
            "name": capability.name,
            "label": capability.label,
            "protocol": capability.protocol.value,
            "supportsMedia": capability.supports_media,
            "supportsReasoning": capability.supports_reasoning,
        }
        for capability in MODEL_REGISTRY.values()
    ]


@router.get("/health", tags=["Health"])
async def api_health(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": _timestamp(),
        "services": {
            "conversation": f"{settings.upstream_base_url}{settings.conversation_path}",
            "messages": f"{settings.upstream_base_url}{settings.messages_path}",
        },
    }


@router.get("/websocket/status", tags=["WebSocket"])
async def websocket_status(hub: SocketHub = Depends(get_socket_hub)) -> dict[str, Any]:
    return hub.status()


@router.get("/websocket/info", tags=["WebSocket"])
async def websocket_info(settings: Settings = Depends(get_app_settings)) -> dict[str, str]:
    return {
        "wsPath": settings.ws_path,
        "wsUrl": settings.ws_public_url,
        "timestamp": _timestamp(),
    }


async def websocket_endpoint(websocket: WebSocket) -> None:
    """Side channel: ping/pong and topic subscriptions. Mounted at ``settings.ws_path``."""
    hub: SocketHub = websocket.app.state.socket_hub
    client_id = await hub.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_message(client_id, raw)
    except WebSocketDisconnect:
        logger.debug("WebSocket client %s closed the connection", client_id)
    finally:
        hub.disconnect(client_id)
