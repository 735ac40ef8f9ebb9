"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .avatars import AvatarStore
from .config import Settings, get_settings
from .llm import LanguageModel
from .routers.speech import router as speech_router
from .speech import Dispatcher, IdleNarrator, VoicevoxSynthesizer


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("streamer").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)

    # Quiet down per-request noise unless debugging
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    model: Optional[LanguageModel] = None,
    synthesizer: Optional[VoicevoxSynthesizer] = None,
    configure_logging: bool = True,
) -> FastAPI:
    if configure_logging:
        _configure_logging()

    settings = settings or get_settings()
    avatar_store = AvatarStore(settings.avatar_dir, enabled=settings.avatar_enabled)
    dispatcher = Dispatcher.from_settings(
        settings,
        model=model,
        synthesizer=synthesizer,
        avatars=avatar_store,
    )
    idle_narrator = (
        IdleNarrator(
            dispatcher,
            timeout=settings.idle_timeout,
            prompt=settings.idle_prompt,
        )
        if settings.idle_timeout
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await dispatcher.start()
        if idle_narrator is not None:
            idle_narrator.start()
        try:
            yield
        finally:
            if idle_narrator is not None:
                await idle_narrator.stop()
            try:
                await asyncio.wait_for(dispatcher.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Dispatcher shutdown timed out after 10s")
            session = dispatcher.session
            closers = [dispatcher.synthesizer.aclose()]
            if session is not None and hasattr(session.model, "aclose"):
                closers.append(session.model.aclose())
            for closer in closers:
                try:
                    await closer
                except Exception as exc:
                    logging.warning("Error closing HTTP client: %s", exc)

    app = FastAPI(
        title="AI Streamer",
        version="0.1.0",
        description="Narrated speech and display commands for an on-screen avatar.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.avatar_store = avatar_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(speech_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "model": settings.openai_model,
            "dispatcher_running": dispatcher.running,
            "pending": dispatcher.pending,
        }

    return app


__all__ = ["create_app"]
