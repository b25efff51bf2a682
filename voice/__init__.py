"""
Voice Subsystem — streaming speech-in / speech-out conversation pipeline.

Modules:
- cancellation: Hierarchical cancellation scopes for sessions and utterances
- sessions: Per-connection session registry
- transcription: Batch speech-to-text over HTTP
- generation: Streaming chat completion with conversation history
- synthesis: Duplex streaming text-to-speech over a websocket
- pipeline: Utterance coordinator with generation fan-out
- latency: Per-stage latency tracking and budgets
"""
from voice.errors import (
    VoiceRelayError, UsageError, SessionNotInitializedError,
    SessionAlreadyActiveError, UtteranceInProgressError, InvalidAudioError,
    TranscriptionError, GenerationError, SynthesisError,
)
from voice.cancellation import CancellationScope
from voice.latency import (
    PipelineStage, LatencyBudget, SessionLatencyTracker,
    AggregateLatencyTracker, StageTracker,
)
from voice.sessions import Session, SessionManager
from voice.transcription import TranscriptionClient
from voice.generation import (
    GenerationClient, ChatBackend, OpenAIChatBackend, AnthropicChatBackend,
    create_chat_backend,
)
from voice.synthesis import SynthesisClient, SynthesizedAudio
from voice.pipeline import PipelineCoordinator, PipelineRun, UtteranceState

__all__ = [
    "VoiceRelayError", "UsageError", "SessionNotInitializedError",
    "SessionAlreadyActiveError", "UtteranceInProgressError", "InvalidAudioError",
    "TranscriptionError", "GenerationError", "SynthesisError",
    "CancellationScope",
    "PipelineStage", "LatencyBudget", "SessionLatencyTracker",
    "AggregateLatencyTracker", "StageTracker",
    "Session", "SessionManager",
    "TranscriptionClient",
    "GenerationClient", "ChatBackend", "OpenAIChatBackend", "AnthropicChatBackend",
    "create_chat_backend",
    "SynthesisClient", "SynthesizedAudio",
    "PipelineCoordinator", "PipelineRun", "UtteranceState",
]
