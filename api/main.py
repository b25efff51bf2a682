"""
FastAPI Application — voice session WebSocket + REST diagnostics.

Provides:
- WebSocket endpoint for real-time voice sessions (/ws/voice)
- Conversation history lookup
- Health and latency metrics
"""
from __future__ import annotations

import structlog
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from api.connection import ClientConnection
from config.settings import Settings, get_settings
from database.store_base import BaseConversationStore
from database.store_factory import create_store
from models.events import ErrorEvent
from voice.generation import GenerationClient
from voice.latency import AggregateLatencyTracker
from voice.pipeline import PipelineCoordinator
from voice.sessions import SessionManager
from voice.synthesis import SynthesisClient
from voice.transcription import TranscriptionClient

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseConversationStore] = None,
    transcriber: Optional[TranscriptionClient] = None,
    generator: Optional[GenerationClient] = None,
    synthesizer: Optional[SynthesisClient] = None,
) -> FastAPI:
    """Build the app. Collaborators can be injected; defaults come from settings."""

    # ──────────────────────────────────────────────────────────────
    #  Bootstrap
    # ──────────────────────────────────────────────────────────────

    settings = settings or get_settings()
    store = store or create_store()
    transcriber = transcriber or TranscriptionClient(settings.transcription)
    generator = generator or GenerationClient(store, settings.generation)
    synthesizer = synthesizer or SynthesisClient(settings.synthesis)

    latency = AggregateLatencyTracker()
    sessions = SessionManager(
        latency=latency,
        default_language=settings.session.default_language,
        destroy_timeout_s=settings.session.destroy_timeout_s,
    )
    coordinator = PipelineCoordinator(
        transcriber=transcriber,
        generator=generator,
        synthesizer=synthesizer,
        store=store,
        system_prompt=settings.generation.system_prompt,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("voicerelay_started",
                    provider=settings.generation.provider,
                    voice_id=settings.synthesis.voice_id)
        yield
        await sessions.shutdown()
        await transcriber.close()
        logger.info("voicerelay_stopped")

    # ──────────────────────────────────────────────────────────────
    #  App
    # ──────────────────────────────────────────────────────────────

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Real-time voice conversation relay",
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions
    app.state.coordinator = coordinator
    app.state.latency = latency

    # ══════════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "active_sessions": sessions.active_count,
        }

    @app.get("/api/v1/metrics")
    async def metrics():
        return {
            "active_sessions": sessions.active_count,
            "sessions": sessions.list_sessions(),
            "latency": latency.get_all_stats(),
        }

    # ══════════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════════

    @app.get("/api/v1/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        messages = await store.read(conversation_id)
        if not messages:
            raise HTTPException(404, "Conversation not found")
        return {
            "conversation_id": conversation_id,
            "messages": [m.model_dump(mode="json") for m in messages],
        }

    # ══════════════════════════════════════════════════════════════
    #  WEBSOCKET — Voice Sessions
    # ══════════════════════════════════════════════════════════════

    @app.websocket("/ws/voice")
    async def websocket_voice(websocket: WebSocket):
        """
        One session per connection. Events are JSON text frames; see
        api/connection.py for the protocol.
        """
        await websocket.accept()
        connection = ClientConnection(websocket, sessions, coordinator)
        logger.info("voice_ws_connected", connection=connection.connection_key)
        max_bytes = settings.session.max_message_bytes

        try:
            while True:
                raw = await websocket.receive_text()
                if len(raw.encode("utf-8")) > max_bytes:
                    logger.warning("voice_ws_message_too_large",
                                   connection=connection.connection_key, size=len(raw))
                    await connection.send_event(
                        ErrorEvent(message="Message too large.", stage="session")
                    )
                    continue
                await connection.handle_message(raw)
        except WebSocketDisconnect:
            logger.info("voice_ws_disconnected", connection=connection.connection_key)
        finally:
            await connection.close()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
