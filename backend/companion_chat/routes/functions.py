"""Stream producer endpoint, served as a separately mounted app with open CORS."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from ..config import AppSettings, get_settings
from ..errors import RelayError
from ..handlers import register_exception_handlers
from ..schemas import TurnPayload
from ..services.auth import bearer_token
from ..services.sse import SSE_HEADERS
from ..services.streaming import PreparedTurn, StreamProducer, get_stream_producer

logger = logging.getLogger(__name__)

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _json_error(message: str, status_code: int, **extra: object) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code, headers=CORS_HEADERS)


def _authorized(request: Request, settings: AppSettings) -> bool:
    accepted = {key for key in (settings.platform.anon_key, settings.platform.service_role_key) if key}
    if not accepted:
        return True
    presented = {request.headers.get("apikey"), bearer_token(request.headers.get("authorization"))}
    return bool(accepted & presented)


async def _sse(producer: StreamProducer, prepared: PreparedTurn) -> AsyncIterator[str]:
    async with aclosing(producer.stream(prepared)) as chunks:
        async for chunk in chunks:
            yield chunk.to_frame()


async def chat_stream(
    request: Request,
    producer: StreamProducer = Depends(get_stream_producer),
    settings: AppSettings = Depends(get_settings),
) -> Response:
    """Persist the turn, call the provider and stream ``content_delta`` / ``done`` / ``error`` frames."""

    if not _authorized(request, settings):
        return _json_error("Invalid API key", 401)

    body_text = (await request.body()).decode("utf-8", errors="replace")
    if not body_text.strip():
        return _json_error("Request body is empty. Expected JSON payload.", 400)
    try:
        raw = json.loads(body_text)
    except json.JSONDecodeError as exc:
        logger.warning("Invalid JSON body received: %s", body_text[:200])
        return _json_error("Invalid JSON in request body", 400, details=str(exc))
    try:
        payload = TurnPayload.model_validate(raw)
    except ValidationError as exc:
        return _json_error("Invalid request payload", 400, details=exc.errors(include_url=False))

    try:
        if not payload.stream:
            return JSONResponse(await producer.complete(payload), headers=CORS_HEADERS)
        prepared = await producer.prepare(payload)
    except RelayError as exc:
        if exc.status_code >= 500:
            logger.error("Stream producer rejected turn: %s", exc.message)
        return _json_error(exc.message, exc.status_code)

    return StreamingResponse(
        _sse(producer, prepared),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **CORS_HEADERS},
        background=BackgroundTask(producer.settle, prepared),
    )


def create_functions_app() -> FastAPI:
    functions_app = FastAPI(title="Companion Chat Functions", version="0.1.0")
    functions_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )
    register_exception_handlers(functions_app)
    functions_app.add_api_route("/chat-stream", chat_stream, methods=["POST"], response_model=None)
    return functions_app
