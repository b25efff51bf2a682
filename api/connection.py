"""
Client Connection — session protocol for one websocket.

Client sends JSON events:
  {"type": "join", "conversation_id": "conv-1"}     → session_started
  {"type": "upload_audio", "audio": "<base64>"}     → one utterance
  {"type": "interrupt"}                             → cancel running utterance
  {"type": "ping"}                                  → pong

All outbound events for the connection go through send_event(), which
serializes writes so concurrent producers never interleave on the socket.
"""
from __future__ import annotations

import json
import uuid
import asyncio
import structlog
from typing import Any, Optional

from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from models.events import (
    ClientEvent, ClientEventType, ErrorEvent, Pong, ServerEvent, SessionStarted,
)
from voice.errors import UsageError
from voice.pipeline import PipelineCoordinator
from voice.sessions import SessionManager

logger = structlog.get_logger()


class ClientConnection:

    def __init__(
        self,
        ws: Any,
        sessions: SessionManager,
        coordinator: PipelineCoordinator,
        connection_key: Optional[str] = None,
    ):
        self.ws = ws
        self.sessions = sessions
        self.coordinator = coordinator
        self.connection_key = connection_key or uuid.uuid4().hex
        self.events_sent = 0
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Send ──────────────────────────────────────────────────

    async def send_event(self, event: ServerEvent) -> None:
        if self._closed:
            return
        payload = json.dumps(event.to_wire())
        async with self._send_lock:
            if self._closed:
                return
            try:
                await self.ws.send_text(payload)
                self.events_sent += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Socket is gone; the receive loop will tear the session down
                self._closed = True
                logger.warning("client_send_failed", connection=self.connection_key,
                               event_type=event.type.value, error=str(e))

    # ── Receive ───────────────────────────────────────────────

    async def handle_message(self, raw: str) -> None:
        try:
            event = ClientEvent.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.info("client_event_malformed", connection=self.connection_key, error=str(e))
            await self.send_event(ErrorEvent(message="Malformed event.", stage="session"))
            return

        try:
            await self._dispatch(event)
        except UsageError as e:
            logger.info("client_usage_error", connection=self.connection_key,
                        event_type=event.type.value, error=str(e))
            await self.send_event(ErrorEvent(message=str(e), stage=e.stage))

    async def _dispatch(self, event: ClientEvent) -> None:
        if event.type == ClientEventType.JOIN:
            session = await self.sessions.create(self.connection_key, event.conversation_id)
            await self.send_event(SessionStarted(
                session_id=session.session_id,
                conversation_id=session.conversation_id,
            ))

        elif event.type == ClientEventType.UPLOAD_AUDIO:
            session = self.sessions.lookup(self.connection_key)
            audio = event.audio
            session.start_utterance(
                lambda scope: self.coordinator.run_utterance(session, audio, self.send_event, scope)
            )

        elif event.type == ClientEventType.INTERRUPT:
            session = self.sessions.lookup(self.connection_key)
            await session.interrupt()

        elif event.type == ClientEventType.PING:
            await self.send_event(Pong())

    async def close(self) -> None:
        """Stop sending and destroy the session. Safe to call more than once."""
        self._closed = True
        await self.sessions.destroy(self.connection_key)
