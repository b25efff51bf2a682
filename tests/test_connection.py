"""
Tests for the client session protocol and the HTTP surface.
"""
import asyncio
import json
import pytest
from fastapi.testclient import TestClient

from conftest import FakeChatBackend, FakeConnector, FakeTranscriber, b64
from api.connection import ClientConnection
from api.main import create_app
from config.settings import Settings
from voice.generation import GenerationClient
from voice.pipeline import PipelineCoordinator
from voice.sessions import SessionManager
from voice.synthesis import SynthesisClient


AUDIO = b64(b"\x00\x01" * 160)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("websocket is not connected")
        self.sent.append(json.loads(text))

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


@pytest.fixture
def coordinator(store, synthesis_config, generation_config):
    return PipelineCoordinator(
        transcriber=FakeTranscriber("hello"),
        generator=GenerationClient(store, generation_config, backend=FakeChatBackend(["Hi", "!"])),
        synthesizer=SynthesisClient(synthesis_config, connector=FakeConnector()),
        store=store,
        system_prompt="Be brief.",
    )


@pytest.fixture
def manager():
    return SessionManager(destroy_timeout_s=1.0)


async def wait_for_type(ws: FakeWebSocket, event_type: str, timeout: float = 2.0):
    async def _poll():
        while event_type not in ws.types():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


class TestClientConnection:
    @pytest.mark.asyncio
    async def test_upload_before_join_is_usage_error(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)

        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))

        assert ws.sent == [{
            "type": "error",
            "message": "Session not initialized. Call join first.",
            "stage": "session",
            "segment_id": None,
        }]

    @pytest.mark.asyncio
    async def test_join_then_upload_runs_utterance(self, manager, coordinator, store):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)

        await connection.handle_message(json.dumps({"type": "join", "conversation_id": "conv-1"}))
        assert ws.sent[0]["type"] == "session_started"
        assert ws.sent[0]["conversation_id"] == "conv-1"

        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))
        await wait_for_type(ws, "playback_complete")

        types = ws.types()
        assert types[1] == "final_transcript"
        assert [m["index"] for m in ws.sent if m["type"] == "generation_delta"] == [0, 1]
        assert [m["seq"] for m in ws.sent if m["type"] == "audio_chunk"] == [0, 1]
        assert len(await store.read("conv-1")) == 2
        await connection.close()

    @pytest.mark.asyncio
    async def test_join_without_conversation(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "join", "conversation_id": None}))
        assert ws.sent[0]["conversation_id"] is None
        await connection.close()

    @pytest.mark.asyncio
    async def test_second_join_rejected(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "join"}))
        await connection.handle_message(json.dumps({"type": "join"}))
        assert ws.types() == ["session_started", "error"]
        assert ws.sent[1]["stage"] == "session"
        await connection.close()

    @pytest.mark.asyncio
    async def test_upload_while_busy_rejected(self, manager, store, synthesis_config, generation_config):
        never = asyncio.Event()
        coordinator = PipelineCoordinator(
            transcriber=FakeTranscriber("hello"),
            generator=GenerationClient(store, generation_config, backend=FakeChatBackend(["Hi", never])),
            synthesizer=SynthesisClient(synthesis_config, connector=FakeConnector()),
            store=store,
            system_prompt="",
        )
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "join"}))
        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))
        await wait_for_type(ws, "generation_delta")

        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))
        errors = [m for m in ws.sent if m["type"] == "error"]
        assert len(errors) == 1
        assert errors[0]["stage"] == "session"

        await connection.handle_message(json.dumps({"type": "interrupt"}))
        assert not manager.lookup(connection.connection_key).is_busy
        await connection.close()

    @pytest.mark.asyncio
    async def test_upload_right_after_interrupt_accepted(self, manager, store, synthesis_config,
                                                         generation_config):
        never = asyncio.Event()
        coordinator = PipelineCoordinator(
            transcriber=FakeTranscriber("hello"),
            generator=GenerationClient(
                store, generation_config, backend=FakeChatBackend(["Hi", never], ["Again", "."]),
            ),
            synthesizer=SynthesisClient(synthesis_config, connector=FakeConnector()),
            store=store,
            system_prompt="",
        )
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "join"}))
        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))
        await wait_for_type(ws, "generation_delta")

        await connection.handle_message(json.dumps({"type": "interrupt"}))
        await connection.handle_message(json.dumps({"type": "upload_audio", "audio": AUDIO}))
        await wait_for_type(ws, "playback_complete")

        assert "error" not in ws.types()
        second = [m for m in ws.sent if m["type"] == "generation_delta"][-2:]
        assert [m["text"] for m in second] == ["Again", "."]
        await connection.close()

    @pytest.mark.asyncio
    async def test_malformed_events(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message("not json")
        await connection.handle_message(json.dumps({"type": "dance"}))
        await connection.handle_message(json.dumps(["join"]))
        assert ws.types() == ["error", "error", "error"]
        assert all(m["stage"] == "session" for m in ws.sent)

    @pytest.mark.asyncio
    async def test_ping(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "ping"}))
        assert ws.sent == [{"type": "pong"}]

    @pytest.mark.asyncio
    async def test_close_destroys_session_and_is_idempotent(self, manager, coordinator):
        ws = FakeWebSocket()
        connection = ClientConnection(ws, manager, coordinator)
        await connection.handle_message(json.dumps({"type": "join"}))
        await connection.close()
        await connection.close()
        assert manager.active_count == 0
        await connection.handle_message(json.dumps({"type": "ping"}))
        assert ws.types() == ["session_started"]

    @pytest.mark.asyncio
    async def test_send_failure_marks_closed(self, manager, coordinator):
        connection = ClientConnection(FakeWebSocket(fail=True), manager, coordinator)
        await connection.handle_message(json.dumps({"type": "ping"}))
        assert connection.closed


# ──────────────────────────────────────────────────────────────
#  HTTP + WebSocket surface
# ──────────────────────────────────────────────────────────────

class TestApp:
    @pytest.fixture
    def client(self, store, synthesis_config, generation_config):
        app = create_app(
            settings=Settings(),
            store=store,
            transcriber=FakeTranscriber("hello"),
            generator=GenerationClient(store, generation_config, backend=FakeChatBackend(["Hi", "!"])),
            synthesizer=SynthesisClient(synthesis_config, connector=FakeConnector()),
        )
        with TestClient(app) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["active_sessions"] == 0

    def test_unknown_conversation_404(self, client):
        assert client.get("/api/v1/conversations/missing").status_code == 404

    def test_voice_session_over_websocket(self, client):
        with client.websocket_connect("/ws/voice") as ws:
            ws.send_text(json.dumps({"type": "join", "conversation_id": "conv-ws"}))
            assert ws.receive_json()["type"] == "session_started"

            ws.send_text(json.dumps({"type": "upload_audio", "audio": AUDIO}))
            received = []
            while not received or received[-1]["type"] != "playback_complete":
                received.append(ws.receive_json())

        assert received[0] == {
            "type": "final_transcript",
            "segment_id": received[0]["segment_id"],
            "text": "hello",
            "is_final": True,
        }

        history = client.get("/api/v1/conversations/conv-ws").json()["messages"]
        assert [(m["role"], m["text"]) for m in history] == [("user", "hello"), ("assistant", "Hi!")]

        metrics = client.get("/api/v1/metrics").json()
        assert metrics["latency"]["transcription"]["count"] == 1
