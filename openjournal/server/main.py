"""
Backend proxy application.

Holds the OpenRouter and ElevenLabs credentials and exposes the /api routes
the voice client calls. Every error response is ``{"error": "<message>"}``.
"""

import os
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from openjournal.config.models import AppConfig, load_config, validate_config
from openjournal.errors import ConfigurationError, InvalidRequestError, OpenJournalError
from openjournal.server.api import interviewer, reformat, scribe_token, transcribe, voice, voices
from openjournal.server.dependencies import INVALID_JSON_MESSAGE
from openjournal.server.upstream import UpstreamClient

logger = structlog.get_logger(__name__)


def _parse_cors_origins() -> List[str]:
    raw = (os.getenv("OPENJOURNAL_CORS_ORIGINS", "") or "").strip()
    if not raw:
        return ["http://localhost:5173", "http://127.0.0.1:5173"]
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _status_for(exc: OpenJournalError) -> int:
    if isinstance(exc, InvalidRequestError):
        return 400
    return 500


def create_app(config: Optional[AppConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the proxy app. ``transport`` replaces the upstream network (tests)."""
    config = config or load_config()
    upstream = UpstreamClient(config.server, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Backend proxy starting",
            openrouter_configured=bool(config.server.openrouter_api_key),
            elevenlabs_configured=bool(config.server.elevenlabs_api_key),
        )
        try:
            yield
        finally:
            await upstream.aclose()
            logger.info("Backend proxy stopped")

    app = FastAPI(title="OpenJournal API", lifespan=lifespan)
    app.state.config = config
    app.state.upstream = upstream

    cors_origins = _parse_cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OpenJournalError)
    async def openjournal_error_handler(request: Request, exc: OpenJournalError):
        status = _status_for(exc)
        if isinstance(exc, ConfigurationError):
            logger.error("Backend proxy misconfigured", path=request.url.path, error=exc.message)
        elif status >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse({"error": exc.message}, status_code=status)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": INVALID_JSON_MESSAGE}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse({"error": message}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse({"error": str(exc) or "Unknown error"}, status_code=500)

    app.include_router(interviewer.router, prefix="/api/interviewer", tags=["interviewer"])
    app.include_router(voice.router, prefix="/api/voice", tags=["voice"])
    app.include_router(transcribe.router, prefix="/api/transcribe", tags=["transcribe"])
    app.include_router(voices.router, prefix="/api/voices", tags=["voices"])
    app.include_router(scribe_token.router, prefix="/api/scribe-token", tags=["scribe-token"])
    app.include_router(reformat.router, prefix="/api/reformat", tags=["reformat"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def run_server(config: AppConfig) -> None:
    errors, warnings = validate_config(config)
    for warning in warnings:
        logger.warning("Configuration warning", detail=warning)
    if errors:
        for error in errors:
            logger.error("Configuration error", detail=error)
        raise ConfigurationError("; ".join(errors))

    app = create_app(config)
    logger.info("Backend proxy listening", host=config.server.host, port=config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
