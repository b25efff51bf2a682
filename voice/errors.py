"""
Error hierarchy for the voice pipeline.

Usage errors are caller mistakes (operating on a session that does not
exist, or asking it to do two things at once). Backend errors abort the
current utterance only; the session stays usable. Cancellation is not an
error and is signalled with asyncio.CancelledError.
"""
from __future__ import annotations


class VoiceRelayError(Exception):
    """Base exception for all pipeline operations."""

    def __init__(self, message: str, stage: str = ""):
        self.stage = stage
        super().__init__(message)


# ── Usage errors ───────────────────────────────────────────────

class UsageError(VoiceRelayError):
    def __init__(self, message: str):
        super().__init__(message, stage="session")


class SessionNotInitializedError(UsageError):
    def __init__(self, connection_key: str = ""):
        self.connection_key = connection_key
        super().__init__("Session not initialized. Call join first.")


class SessionAlreadyActiveError(UsageError):
    def __init__(self, connection_key: str = ""):
        self.connection_key = connection_key
        super().__init__("Session already active for this connection.")


class UtteranceInProgressError(UsageError):
    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__("An utterance is already being processed for this session.")


class InvalidAudioError(VoiceRelayError):
    def __init__(self, message: str = "Audio payload is not valid base64."):
        super().__init__(message, stage="input")


# ── Upstream backend errors ────────────────────────────────────

class TranscriptionError(VoiceRelayError):
    def __init__(self, message: str):
        super().__init__(message, stage="transcription")


class GenerationError(VoiceRelayError):
    def __init__(self, message: str):
        super().__init__(message, stage="generation")


class SynthesisError(VoiceRelayError):
    def __init__(self, message: str):
        super().__init__(message, stage="synthesis")
