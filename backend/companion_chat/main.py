"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .config import get_settings
from .handlers import register_exception_handlers
from .routes import chat, conversations, media, websocket
from .routes.functions import create_functions_app
from .services.llm import get_llm_client, shutdown_llm_client
from .services.realtime import shutdown_realtime
from .services.relay import shutdown_producer_client
from .services.streaming import reset_stream_producer
from .storage.database import get_db_manager, shutdown_database


logger = logging.getLogger(__name__)

_logging_configured = False


def configure_logging(level: str) -> None:
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _logging_configured = True


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan hooks for opening and closing shared clients."""

    app_settings = get_settings()
    logger.info(
        "Starting companion-chat backend with LLM host=%s model=%s",
        app_settings.llm.host,
        app_settings.llm.model,
    )
    missing = app_settings.missing_configuration()
    if missing:
        logger.warning("Missing configuration: %s; affected requests will fail with 500", ", ".join(missing))

    await get_db_manager()
    await get_llm_client()
    logger.info("Database initialized at %s", app_settings.database_path)
    yield

    await shutdown_producer_client()
    await shutdown_realtime()
    reset_stream_producer()
    await shutdown_llm_client()
    await shutdown_database()
    logger.info("Stopping companion-chat backend")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app_settings = get_settings()
    configure_logging(app_settings.log_level)
    app = FastAPI(title="Companion Chat", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(conversations.router)
    app.include_router(media.router)
    app.include_router(websocket.router)

    functions_app = create_functions_app()
    # Overrides registered on the main app apply to the mounted producer too.
    functions_app.dependency_overrides = app.dependency_overrides
    app.mount("/functions/v1", functions_app)

    media_root = app_settings.media_root
    media_root.mkdir(parents=True, exist_ok=True)
    app.mount(app_settings.media_url_prefix, StaticFiles(directory=media_root), name="media")

    return app
