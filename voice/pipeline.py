"""
Pipeline Coordinator — runs one utterance end to end.

    audio ─▶ transcription ─▶ generation ─┬─▶ client (generation_delta)
                                          └─▶ synthesis ─▶ client (audio_chunk)

Generation output is fanned out by a single pull-driven tee: each fragment
is emitted to the client and then handed to the synthesis sender, so both
consumers see the same fragments in the same order, exactly once, and the
generation stream only advances as fast as both of them accept data.

Every event goes through the utterance scope; once it is cancelled nothing
more is emitted for that utterance.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import uuid
import structlog
from contextlib import aclosing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from config.settings import get_settings
from database.store_base import BaseConversationStore
from models.events import (
    AudioChunk, ConversationMessage, ErrorEvent, FinalTranscript,
    GenerationComplete, GenerationDelta, PlaybackComplete, ServerEvent,
)
from voice.cancellation import CancellationScope
from voice.errors import InvalidAudioError, VoiceRelayError
from voice.generation import GenerationClient
from voice.latency import PipelineStage
from voice.sessions import Session
from voice.synthesis import SynthesisClient
from voice.transcription import TranscriptionClient

logger = structlog.get_logger()

Emit = Callable[[ServerEvent], Awaitable[None]]


class UtteranceState(str, Enum):
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineRun:
    """Ephemeral per-utterance state: segment id and the two output counters."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.segment_id = uuid.uuid4().hex
        self.state = UtteranceState.IDLE
        self.state_history: list[dict[str, Any]] = []
        self._delta_index = 0
        self._sequence = 0

    def next_delta_index(self) -> int:
        index = self._delta_index
        self._delta_index += 1
        return index

    def next_sequence(self) -> int:
        seq = self._sequence
        self._sequence += 1
        return seq

    @property
    def deltas_emitted(self) -> int:
        return self._delta_index

    @property
    def chunks_emitted(self) -> int:
        return self._sequence

    def transition(self, new_state: UtteranceState) -> None:
        self.state_history.append({
            "from": self.state.value,
            "to": new_state.value,
            "at": datetime.now(timezone.utc).isoformat(),
        })
        self.state = new_state


def decode_audio(audio_base64: str) -> bytes:
    try:
        return base64.b64decode(audio_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidAudioError() from e


class PipelineCoordinator:
    """
    Usage:
        coordinator = PipelineCoordinator(transcriber, generator, synthesizer, store)
        session.start_utterance(
            lambda scope: coordinator.run_utterance(session, audio_b64, emit, scope)
        )
    """

    def __init__(
        self,
        transcriber: TranscriptionClient,
        generator: GenerationClient,
        synthesizer: SynthesisClient,
        store: BaseConversationStore,
        system_prompt: Optional[str] = None,
    ):
        self.transcriber = transcriber
        self.generator = generator
        self.synthesizer = synthesizer
        self.store = store
        self.system_prompt = (
            system_prompt if system_prompt is not None
            else get_settings().generation.system_prompt
        )

    async def run_utterance(
        self,
        session: Session,
        audio_base64: str,
        emit: Emit,
        scope: CancellationScope,
    ) -> PipelineRun:
        """
        Process one uploaded segment. Backend failures are reported to the
        client as a single error event; cancellation propagates silently.
        """
        run = PipelineRun(session.session_id)

        async def send(event: ServerEvent) -> None:
            scope.raise_if_cancelled()
            await emit(event)

        try:
            await self._run(session, run, audio_base64, send, scope)
        except asyncio.CancelledError:
            run.transition(UtteranceState.CANCELLED)
            session.latency.discard(run.segment_id)
            logger.info("utterance_cancelled", session_id=session.session_id,
                        segment_id=run.segment_id, deltas=run.deltas_emitted,
                        chunks=run.chunks_emitted)
            raise
        except VoiceRelayError as e:
            run.transition(UtteranceState.FAILED)
            session.latency.discard(run.segment_id)
            logger.warning("utterance_failed", session_id=session.session_id,
                           segment_id=run.segment_id, stage=e.stage, error=str(e))
            segment_id = run.segment_id if e.stage not in ("input", "transcription") else None
            await send(ErrorEvent(message=str(e), stage=e.stage, segment_id=segment_id))
        return run

    async def _run(
        self,
        session: Session,
        run: PipelineRun,
        audio_base64: str,
        send: Emit,
        scope: CancellationScope,
    ) -> None:
        audio = decode_audio(audio_base64)
        if not audio:
            return

        latency = session.latency
        segment_id = run.segment_id

        run.transition(UtteranceState.TRANSCRIBING)
        latency.start(segment_id, PipelineStage.TOTAL)
        latency.start(segment_id, PipelineStage.TRANSCRIPTION)
        text = await self.transcriber.transcribe(audio, session.language, scope)
        latency.end(segment_id, PipelineStage.TRANSCRIPTION)

        if not text or not text.strip():
            run.transition(UtteranceState.IDLE)
            latency.discard(segment_id)
            logger.info("utterance_silent", session_id=session.session_id)
            return

        history: Optional[tuple[ConversationMessage, ...]] = None
        if session.conversation_id:
            history = await self.store.read(session.conversation_id)
            await self.store.append_user_message(session.conversation_id, text)

        await send(FinalTranscript(segment_id=segment_id, text=text))

        run.transition(UtteranceState.GENERATING)
        deltas = self._fan_out(session, run, text, history, send, scope)

        latency.start(segment_id, PipelineStage.SYNTHESIS_TTFB)
        latency.start(segment_id, PipelineStage.SYNTHESIS_FULL)
        async with aclosing(self.synthesizer.synthesize(deltas, scope)) as audio_stream:
            async for chunk in audio_stream:
                if run.chunks_emitted == 0:
                    latency.end(segment_id, PipelineStage.SYNTHESIS_TTFB)
                    latency.end(segment_id, PipelineStage.TOTAL)
                await send(AudioChunk(
                    segment_id=segment_id,
                    seq=run.next_sequence(),
                    data=chunk.audio,
                ))
        latency.end(segment_id, PipelineStage.SYNTHESIS_FULL)

        await send(PlaybackComplete(segment_id=segment_id))
        run.transition(UtteranceState.COMPLETED)
        latency.record_turn()
        logger.info("utterance_completed", session_id=session.session_id,
                    segment_id=segment_id, deltas=run.deltas_emitted,
                    chunks=run.chunks_emitted)

    async def _fan_out(
        self,
        session: Session,
        run: PipelineRun,
        user_text: str,
        history: Optional[tuple[ConversationMessage, ...]],
        send: Emit,
        scope: CancellationScope,
    ) -> AsyncIterator[str]:
        """Emit each delta to the client, then yield it to synthesis."""
        latency = session.latency
        segment_id = run.segment_id
        conversation_id = session.conversation_id
        parts: list[str] = []

        latency.start(segment_id, PipelineStage.GENERATION_TTFB)
        latency.start(segment_id, PipelineStage.GENERATION_FULL)
        stream = self.generator.stream(
            conversation_id, self.system_prompt, user_text, scope, history=history,
        )
        async with aclosing(stream) as fragments:
            async for fragment in fragments:
                if not fragment:
                    continue
                if not parts:
                    latency.end(segment_id, PipelineStage.GENERATION_TTFB)
                parts.append(fragment)
                await send(GenerationDelta(
                    segment_id=segment_id,
                    text=fragment,
                    index=run.next_delta_index(),
                ))
                yield fragment
        latency.end(segment_id, PipelineStage.GENERATION_FULL)

        run.transition(UtteranceState.PERSISTING)
        if conversation_id:
            await self.store.append_assistant_message(conversation_id, "".join(parts))

        await send(GenerationComplete(segment_id=segment_id))
