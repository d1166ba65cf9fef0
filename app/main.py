import logging

from fastapi import FastAPI
from fastapi import Request
from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import router
from app.api.routes import websocket_endpoint
from app.core.config import get_settings
from app.core.exceptions import ConfigurationError
from app.core.exceptions import PipelineError
from app.core.exceptions import UpstreamError
from app.core.exceptions import ValidationError
from app.core.logging import setup_logging
from app.services.llm import GenerationClient
from app.services.socket_hub import SocketHub

settings = get_settings()
setup_logging(settings.log_level)

app = FastAPI(title="Test Case Workflow Service")

logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup_event() -> None:
    app.state.settings = settings
    app.state.generation_client = GenerationClient(settings)
    app.state.socket_hub = SocketHub()
    logger.info(
        "Application started: upstream=%s default_model=%s streaming=%s",
        settings.upstream_base_url,
        settings.default_model,
        settings.stream_generation,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await app.state.generation_client.aclose()
    logger.info("Application shutdown complete")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.error("HTTP exception: %s (status: %d)", exc.detail, exc.status_code)
    return JSONResponse({"error": "HTTP error", "message": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    # Log the detailed Pydantic validation errors to the server console
    logger.error("Request validation failed: %s", exc.errors(), exc_info=False)
    return JSONResponse(
        {"error": "Input validation failed", "message": "Request body is invalid", "details": jsonable_encoder(exc.errors())},
        status_code=422,
    )


@app.exception_handler(ValidationError)
async def upload_validation_exception_handler(_request: Request, exc: ValidationError) -> JSONResponse:
    logger.warning("Upload rejected: %s", exc)
    return JSONResponse({"error": "File validation failed", "message": str(exc)}, status_code=400)


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(_request: Request, exc: UpstreamError) -> JSONResponse:
    logger.error("Upstream error (status %s): %s", exc.status_code, exc)
    return JSONResponse({"error": "Upstream request failed", "message": str(exc)}, status_code=502)


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(_request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Configuration error: %s", exc)
    return JSONResponse({"error": "Configuration error", "message": str(exc)}, status_code=500)


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(_request: Request, exc: PipelineError) -> JSONResponse:
    logger.error("Pipeline error: %s", exc)
    return JSONResponse({"error": "Workflow execution failed", "message": str(exc)}, status_code=500)


@app.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    logger.info("Health check endpoint called")
    return {"status": "ok"}


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)
app.include_router(router)
app.add_api_websocket_route(settings.ws_path, websocket_endpoint)
