"""
Synthesis Client — duplex streaming text-to-speech over one websocket.

Text goes in while audio comes out, on the same connection:

    ┌──────────────┐  {"text": " ", "voice_settings": …}   ┌───────────┐
    │              │───────────────────────────────────────▶│           │
    │ sender task  │  {"text": fragment} …                  │  TTS      │
    │              │───────────────────────────────────────▶│  backend  │
    │              │  {"text": ""}  (end of input)          │           │
    │              │───────────────────────────────────────▶│           │
    └──────────────┘                                        │           │
    ┌──────────────┐  {"audio": "<b64>", "isFinal": …}      │           │
    │ receiver     │◀───────────────────────────────────────│           │
    └──────────────┘                                        └───────────┘

The control message is always sent before the sender starts. The receiver
backs the returned async iterator; the sender runs independently and is
awaited once the receiver is exhausted, so no client text is left unsent.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import (
    ConnectionClosed, ConnectionClosedError, ConnectionClosedOK,
    InvalidHandshake, InvalidURI,
)

from config.settings import SynthesisConfig, get_settings
from voice.cancellation import CancellationScope
from voice.errors import SynthesisError

logger = structlog.get_logger()

END_OF_INPUT = {"text": ""}


@dataclass(frozen=True)
class SynthesizedAudio:
    audio: str          # base64, passed through untouched
    sequence: int


class SynthesisClient:
    """
    Usage:
        client = SynthesisClient()
        async for chunk in client.synthesize(text_fragments, scope):
            play(chunk.audio, chunk.sequence)

    `connector` opens the duplex connection; it defaults to the websockets
    asyncio client and is replaced in tests.
    """

    def __init__(
        self,
        config: SynthesisConfig = None,
        connector: Callable[..., Any] = None,
    ):
        self.config = config or get_settings().synthesis
        self._connector = connector or connect

    @property
    def url(self) -> str:
        return (
            f"{self.config.base_url.rstrip('/')}/{self.config.voice_id}/stream-input"
            f"?model_id={self.config.model_id}&output_format={self.config.output_format}"
        )

    def initial_message(self) -> dict[str, Any]:
        return {
            "text": " ",
            "voice_settings": {
                "stability": self.config.stability,
                "similarity_boost": self.config.similarity_boost,
                "style": self.config.style,
                "speed": self.config.speed,
            },
        }

    async def synthesize(
        self,
        fragments: AsyncIterator[str],
        scope: CancellationScope,
    ) -> AsyncIterator[SynthesizedAudio]:
        scope.raise_if_cancelled()
        connection = await self._open()
        sender: Optional[asyncio.Task] = None
        closers: set[asyncio.Task] = set()

        def on_sender_done(task: asyncio.Task) -> None:
            # A failed sender would leave the receiver waiting forever.
            if task.cancelled() or task.exception() is None:
                return
            closer = asyncio.ensure_future(connection.close())
            closers.add(closer)
            closer.add_done_callback(closers.discard)

        sequence = 0
        try:
            try:
                await connection.send(json.dumps(self.initial_message()))
            except ConnectionClosed as e:
                raise SynthesisError(f"Synthesis connection closed during setup: {e}") from e

            sender = scope.spawn(
                self._send_fragments(connection, fragments, scope),
                name="synthesis_sender",
            )
            sender.add_done_callback(on_sender_done)

            async for audio in self._receive_audio(connection, scope):
                yield SynthesizedAudio(audio=audio, sequence=sequence)
                sequence += 1

            await sender
            logger.info("synthesis_completed", chunks=sequence)
        finally:
            if sender is not None and not sender.done():
                sender.cancel()
                await asyncio.wait({sender})
            if sender is not None and sender.done() and not sender.cancelled():
                sender.exception()
            await connection.close()

    async def _open(self):
        headers = {"xi-api-key": self.config.api_key}
        try:
            connection = await self._connector(
                self.url,
                additional_headers=headers,
                ping_interval=self.config.keepalive_s,
            )
        except (InvalidHandshake, InvalidURI, OSError, asyncio.TimeoutError) as e:
            logger.error("synthesis_connect_failed", voice_id=self.config.voice_id, error=str(e))
            raise SynthesisError(f"Synthesis handshake failed: {e}") from e
        logger.debug("synthesis_connected", voice_id=self.config.voice_id)
        return connection

    async def _send_fragments(
        self,
        connection,
        fragments: AsyncIterator[str],
        scope: CancellationScope,
    ) -> int:
        """
        Forward each fragment as its own message, then the end-of-input
        sentinel. Once the peer has closed, the input is still drained so
        that whoever produces it runs to completion.
        """
        sent = 0
        open_ = True
        try:
            async for fragment in fragments:
                scope.raise_if_cancelled()
                if not fragment or not open_:
                    continue
                try:
                    await connection.send(json.dumps({"text": fragment}))
                    sent += 1
                except ConnectionClosed:
                    open_ = False
                    logger.warning("synthesis_peer_closed_before_end_of_input", sent=sent)
            if open_:
                try:
                    await connection.send(json.dumps(END_OF_INPUT))
                except ConnectionClosed:
                    logger.warning("synthesis_peer_closed_before_end_of_input", sent=sent)
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
        return sent

    async def _receive_audio(self, connection, scope: CancellationScope) -> AsyncIterator[str]:
        while True:
            scope.raise_if_cancelled()
            try:
                message = await self._receive_message(connection)
            except ConnectionClosedOK:
                logger.debug("synthesis_connection_closed")
                return
            except ConnectionClosedError as e:
                logger.error("synthesis_connection_lost", error=str(e))
                raise SynthesisError(f"Synthesis connection lost: {e}") from e

            if message is None:
                continue
            try:
                data = json.loads(message)
            except ValueError:
                logger.warning("synthesis_message_unparseable", chars=len(message))
                continue
            if not isinstance(data, dict):
                logger.warning("synthesis_message_unexpected", kind=type(data).__name__)
                continue

            audio = data.get("audio")
            if isinstance(audio, str) and audio:
                yield audio
            if data.get("isFinal") is True:
                return

    @staticmethod
    async def _receive_message(connection) -> Optional[str]:
        """Reassemble one (possibly fragmented) message. Binary messages yield None."""
        parts = []
        async for frame in connection.recv_streaming():
            parts.append(frame)
        if any(isinstance(p, (bytes, bytearray)) for p in parts):
            return None
        return "".join(parts)
