"""
Core data models for the VoiceRelay service.

Conversation messages kept by the store, and the events exchanged with a
client over its session connection.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ClientEventType(str, Enum):
    JOIN = "join"
    UPLOAD_AUDIO = "upload_audio"
    INTERRUPT = "interrupt"
    PING = "ping"


class ServerEventType(str, Enum):
    SESSION_STARTED = "session_started"
    FINAL_TRANSCRIPT = "final_transcript"
    GENERATION_DELTA = "generation_delta"
    GENERATION_COMPLETE = "generation_complete"
    AUDIO_CHUNK = "audio_chunk"
    PLAYBACK_COMPLETE = "playback_complete"
    ERROR = "error"
    PONG = "pong"


# ──────────────────────────────────────────────────────────────
#  Conversation history
# ──────────────────────────────────────────────────────────────

class ConversationMessage(BaseModel):
    """A single role-tagged turn. Immutable once appended."""
    model_config = ConfigDict(frozen=True)

    role: str
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Server → client events
# ──────────────────────────────────────────────────────────────

class ServerEvent(BaseModel):
    type: ServerEventType

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class SessionStarted(ServerEvent):
    type: ServerEventType = ServerEventType.SESSION_STARTED
    session_id: str
    conversation_id: Optional[str] = None


class FinalTranscript(ServerEvent):
    type: ServerEventType = ServerEventType.FINAL_TRANSCRIPT
    segment_id: str
    text: str
    is_final: bool = True


class GenerationDelta(ServerEvent):
    type: ServerEventType = ServerEventType.GENERATION_DELTA
    segment_id: str
    text: str
    index: int


class GenerationComplete(ServerEvent):
    type: ServerEventType = ServerEventType.GENERATION_COMPLETE
    segment_id: str


class AudioChunk(ServerEvent):
    type: ServerEventType = ServerEventType.AUDIO_CHUNK
    segment_id: str
    seq: int
    data: str                                   # base64 audio as produced by the synthesizer


class PlaybackComplete(ServerEvent):
    type: ServerEventType = ServerEventType.PLAYBACK_COMPLETE
    segment_id: str


class ErrorEvent(ServerEvent):
    type: ServerEventType = ServerEventType.ERROR
    message: str
    stage: str = ""
    segment_id: Optional[str] = None


class Pong(ServerEvent):
    type: ServerEventType = ServerEventType.PONG


# ──────────────────────────────────────────────────────────────
#  Client → server events
# ──────────────────────────────────────────────────────────────

class ClientEvent(BaseModel):
    """Inbound event; unknown fields are ignored."""
    type: ClientEventType
    conversation_id: Optional[str] = None
    audio: str = ""
