"""Shared test fixtures for VoiceRelay."""
import asyncio
import base64
import json
from typing import Any, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from config.settings import GenerationConfig, SynthesisConfig, TranscriptionConfig
from database.store_memory import InMemoryConversationStore
from voice.cancellation import CancellationScope
from voice.generation import ChatBackend


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeChatBackend(ChatBackend):
    """
    Streams scripted fragments, one script per call. An Exception instance
    inside a script is raised at that point; an asyncio.Event is awaited.
    """

    def __init__(self, *scripts: list[Any]):
        self.scripts = list(scripts) or [["Hello", " there", "!"]]
        self.calls: list[list[dict[str, str]]] = []

    async def stream_completion(self, messages):
        self.calls.append(messages)
        script = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        for item in script:
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


class FakeTranscriber:
    def __init__(self, *results: Any):
        self.results = list(results) or ["hello"]
        self.calls: list[tuple[bytes, Optional[str]]] = []

    async def transcribe(self, audio: bytes, language_hint: Optional[str], scope: CancellationScope) -> str:
        scope.raise_if_cancelled()
        self.calls.append((audio, language_hint))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        pass


_CLOSED = object()


class FakeDuplexConnection:
    """
    In-process stand-in for a websockets client connection.

    With echo on, every text fragment sent is answered with one audio
    message carrying the base64 of that text, and the end-of-input
    sentinel is answered with isFinal.
    """

    def __init__(self, script: Optional[list[Any]] = None, echo: bool = True):
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.echo = echo
        self._inbox: asyncio.Queue = asyncio.Queue()
        for item in script or []:
            self.push(item)

    def push(self, item: Any) -> None:
        self._inbox.put_nowait(item)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        data = json.loads(message)
        self.sent.append(data)
        if not self.echo:
            return
        text = data.get("text")
        if text == "":
            self.push(json.dumps({"isFinal": True}))
        elif text and text != " ":
            audio = base64.b64encode(text.encode()).decode()
            self.push(json.dumps({"audio": audio, "isFinal": False}))

    async def recv_streaming(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            self._inbox.put_nowait(_CLOSED)
            raise ConnectionClosedOK(None, None)
        if isinstance(item, Exception):
            raise item
        frames = item if isinstance(item, list) else [item]
        for frame in frames:
            yield frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.push(_CLOSED)


class FakeConnector:
    """Replaces websockets.connect; hands out a fresh FakeDuplexConnection per call."""

    def __init__(self, error: Optional[Exception] = None, **connection_options):
        self.error = error
        self.connection_options = connection_options
        self.connections: list[FakeDuplexConnection] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        connection = FakeDuplexConnection(**self.connection_options)
        self.connections.append(connection)
        return connection


class EventSink:
    """Collects emitted server events in order."""

    def __init__(self):
        self.events: list[Any] = []
        self._arrived = asyncio.Condition()

    async def __call__(self, event) -> None:
        self.events.append(event)
        async with self._arrived:
            self._arrived.notify_all()

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]

    def of_type(self, event_type: str) -> list[Any]:
        return [e for e in self.events if e.type.value == event_type]

    async def wait_for(self, event_type: str, timeout: float = 2.0) -> Any:
        async def _wait():
            async with self._arrived:
                await self._arrived.wait_for(lambda: bool(self.of_type(event_type)))
            return self.of_type(event_type)[0]
        return await asyncio.wait_for(_wait(), timeout)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def scope():
    return CancellationScope("test")


@pytest.fixture
def sink():
    return EventSink()


@pytest.fixture
def transcription_config():
    return TranscriptionConfig(region="westus", api_key="test-speech-key", retry_attempts=1)


@pytest.fixture
def generation_config():
    return GenerationConfig(provider="openai", model="gpt-4o-mini", api_key="test-llm-key")


@pytest.fixture
def synthesis_config():
    return SynthesisConfig(api_key="test-tts-key", voice_id="voice-123", keepalive_s=5.0)

