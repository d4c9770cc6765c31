import asyncio
import json
import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from voice_relay.application.api.api_server import create_app
from voice_relay.application.websocket.connection_manager import ConnectionManager
from voice_relay.application.websocket.ws_server import parse_event, relay_websocket
from voice_relay.application.websocket.schema.events import SetupEvent, PromptEvent, InterruptEvent
from voice_relay.domain.errors import ProtocolError

from conftest import Engine


def receive_turn(ws):
    """Collect events up to and including the terminal one"""
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == "text" and event["last"]:
            return events


@pytest.fixture
def client():
    engines = []

    def factory(connection_manager):
        engine = Engine(sender=connection_manager)
        engines.append(engine)
        return engine.orchestrator

    with TestClient(create_app(engine_factory=factory)) as test_client:
        test_client.engines = engines
        yield test_client


def test_parse_event_accepts_relay_field_names():
    setup = parse_event('{"type": "setup", "callSid": "CA1", "from": "+1555", "customParameters": {"agentId": "a"}}')
    assert isinstance(setup, SetupEvent)
    assert setup.session_id == "CA1"
    assert setup.from_number == "+1555"
    assert setup.agent_id == "a"

    prompt = parse_event('{"type": "prompt", "voicePrompt": "hello", "lang": "en-US", "last": true}')
    assert isinstance(prompt, PromptEvent)
    assert prompt.text == "hello"

    interrupt = parse_event('{"type": "interrupt", "utteranceUntilInterrupt": "Hi", "durationUntilInterruptMs": 420}')
    assert isinstance(interrupt, InterruptEvent)
    assert interrupt.duration_until_interrupt_ms == 420


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"type": "teleport"}', '{"type": "prompt"}'])
def test_parse_event_rejects_malformed_frames(raw):
    with pytest.raises(ProtocolError):
        parse_event(raw)


def test_setup_then_prompt_streams_tokens_and_one_terminal(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "setup", "callSid": "CA1", "customParameters": {}})
        assert ws.receive_json() == {"type": "ready", "sessionId": "CA1", "nodeId": "A"}

        ws.send_json({"type": "prompt", "voicePrompt": "Hi", "last": True})
        events = receive_turn(ws)

    assert events == [
        {"type": "text", "token": "Hello", "last": False},
        {"type": "text", "token": " there", "last": False},
        {"type": "text", "token": "!", "last": False},
        {"type": "text", "token": "", "last": True},
    ]


def test_malformed_frames_are_ignored(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "setup", "callSid": "CA2"})
        ws.receive_json()

        ws.send_text("garbage")
        ws.send_json({"type": "dtmf", "digit": "1"})
        ws.send_json({"type": "prompt", "voicePrompt": "Hi"})
        events = receive_turn(ws)

    assert events[-1] == {"type": "text", "token": "", "last": True}


def test_prompt_before_setup_gets_error_and_terminal(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "prompt", "voicePrompt": "Hello?"})
        assert ws.receive_json()["type"] == "error"
        assert ws.receive_json() == {"type": "text", "token": "", "last": True}


def test_setup_for_unknown_agent_reports_error(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "setup", "callSid": "CA3", "customParameters": {"agentId": "nobody"}})
        error = ws.receive_json()

    assert error["type"] == "error"
    assert "nobody" in error["message"]


def test_disconnect_releases_session(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "setup", "callSid": "CA4"})
        ws.receive_json()

    orchestrator = client.engines[0].orchestrator
    for _ in range(100):
        if orchestrator.get_session("CA4") is None:
            break
        time.sleep(0.01)
    assert orchestrator.get_session("CA4") is None


class QueuedSocket:
    """Minimal WebSocket stand-in fed from a queue"""

    def __init__(self, app, frames):
        self.app = app
        self.frames = asyncio.Queue()
        for frame in frames:
            self.frames.put_nowait(frame)
        self.sent = []

    async def accept(self):
        pass

    async def receive_text(self):
        return await self.frames.get()

    async def send_json(self, data):
        self.sent.append(data)


@pytest.mark.asyncio
async def test_cancelled_handler_still_releases_session():
    connection_manager = ConnectionManager()
    engine = Engine(sender=connection_manager)
    app = SimpleNamespace(state=SimpleNamespace(
        orchestrator=engine.orchestrator, connection_manager=connection_manager
    ))
    socket = QueuedSocket(app, [json.dumps({"type": "setup", "callSid": "CA5"})])

    handler = asyncio.create_task(relay_websocket(socket))
    for _ in range(100):
        if engine.orchestrator.get_session("CA5") is not None:
            break
        await asyncio.sleep(0.01)
    assert connection_manager.is_connected("CA5")

    handler.cancel()
    with pytest.raises(asyncio.CancelledError):
        await handler

    assert engine.orchestrator.get_session("CA5") is None
    assert not connection_manager.is_connected("CA5")


def test_twiml_points_relay_at_websocket(client):
    response = client.get("/twiml", params={"agent_id": "sales"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    body = response.text
    assert "<ConversationRelay" in body
    assert "/ws" in body
    assert 'name="agentId"' in body and 'value="sales"' in body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_end_unknown_call_is_404(client):
    response = client.post("/calls/CA-missing/end")
    assert response.status_code == 404
