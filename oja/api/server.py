from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from core.config import ConfigManager


def create_app(config_manager: ConfigManager, assistant=None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config_manager: Application configuration.
        assistant: A ready VoiceAssistant. When omitted one is built from the
            configuration at startup, without a local speech engine; the host
            app then sends typed or externally recognised utterances.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Optional[object] = None
        if app.state.assistant is None:
            from core.main import build_assistant
            owned = await build_assistant(config_manager)
            app.state.assistant = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.shutdown()
                logger.info("Control API stopped.")

    app = FastAPI(title="Oja Voice Assistant", version="1.0.0", lifespan=lifespan)

    # CORS for the companion app on the local network
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store references for route handlers
    app.state.config_manager = config_manager
    app.state.assistant = assistant

    from api.routes.session import router as session_router
    from api.routes.settings import router as settings_router

    app.include_router(session_router, prefix="/api/session", tags=["session"])
    app.include_router(settings_router, prefix="/api/settings", tags=["settings"])

    @app.get("/api/health")
    async def health():
        current = app.state.assistant
        session = current.active_session if current is not None else None
        return {
            "status": "ok",
            "session_open": session is not None,
            "state": session.state.value if session is not None else "closed",
            "primary_provider": config_manager.config.providers.primary,
            "tts_enabled": config_manager.tts_enabled,
            "continuous": config_manager.continuous_enabled,
        }

    return app
