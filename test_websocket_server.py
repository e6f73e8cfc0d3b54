import pytest
from fastapi.testclient import TestClient

from cara.chat.models import CompletionResult
from cara.config import Configuration
from cara.errors import AuthenticationFailure
from cara.websocket_server import WebSocketServer
from conftest import FakeGateway, content, make_orchestrator, tool_call


def _server(gateway, registry, **overrides) -> WebSocketServer:
    configuration = Configuration.from_dict({"chat": {"service": {"retry": {"delay_seconds": 0}}}, **overrides})
    return WebSocketServer(make_orchestrator(gateway), registry, configuration)


def _receive_until_done(ws):
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["status"] in ("completed", "error"):
            return messages


def test_health_endpoint(empty_registry):
    client = TestClient(_server(FakeGateway(), empty_registry).app)

    assert client.get("/health").json() == {"status": "healthy"}


def test_chat_round_trip(empty_registry):
    gateway = FakeGateway(streams=[[content("Hello"), content(" there"), content("!")]])
    server = _server(gateway, empty_registry)

    with TestClient(server.app) as client, client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"action": "chat", "request_id": "r1", "payload": {"text": "Hi"}})
        messages = _receive_until_done(ws)

    assert [m["status"] for m in messages] == ["processing", "chunk", "chunk", "chunk", "completed"]
    assert all(m["request_id"] == "r1" for m in messages)
    assert "".join(m["chunk"]["data"] for m in messages if m["status"] == "chunk") == "Hello there!"


def test_tool_execution_is_reported_as_processing(calculator_registry):
    gateway = FakeGateway(
        completions=[
            CompletionResult(tool_calls=[tool_call("c1", "calculator", {"expression": "2+2"})]),
            CompletionResult(),
        ],
        streams=[[content("4")]],
    )

    with TestClient(_server(gateway, calculator_registry).app) as client, client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"action": "chat", "request_id": "r1", "payload": {"text": "2+2?"}})
        messages = _receive_until_done(ws)

    assert messages[1]["status"] == "processing"
    assert messages[1]["chunk"]["type"] == "tool_execution"
    assert messages[-1]["status"] == "completed"


def test_conversation_continues_and_clear_session_resets(empty_registry):
    gateway = FakeGateway(streams=[[content("first")], [content("second")], [content("third")]])
    server = _server(gateway, empty_registry)

    with TestClient(server.app) as client, client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"action": "chat", "request_id": "r1", "payload": {"text": "one"}})
        _receive_until_done(ws)
        ws.send_json({"action": "chat", "request_id": "r2", "payload": {"text": "two"}})
        _receive_until_done(ws)
        ws.send_json({"action": "clear_session", "request_id": "r3"})
        cleared = ws.receive_json()
        ws.send_json({"action": "chat", "request_id": "r4", "payload": {"text": "three"}})
        _receive_until_done(ws)

    assert cleared == {"request_id": "r3", "status": "completed", "chunk": {"type": "session_cleared"}}
    assert [m.content for m in gateway.stream_calls[1].history()[1:]] == ["one", "first", "two"]
    assert [m.content for m in gateway.stream_calls[2].history()[1:]] == ["three"]


def test_round_error_is_sent_as_error_status(empty_registry):
    gateway = FakeGateway(streams=[AuthenticationFailure("401")])

    with TestClient(_server(gateway, empty_registry).app) as client, client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"action": "chat", "request_id": "r1", "payload": {"text": "Hi"}})
        messages = _receive_until_done(ws)

    assert messages[-1]["status"] == "error"
    assert "credentials" in messages[-1]["chunk"]["error"]


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        ({"action": "dance", "request_id": "r1"}, "Unknown message format"),
        ({"action": "chat", "request_id": "r1"}, "Invalid message format"),
        ({"action": "chat", "request_id": "r1", "payload": {"text": "  "}}, "must not be blank"),
    ],
)
def test_bad_requests_get_error_responses(empty_registry, payload, error):
    with TestClient(_server(FakeGateway(), empty_registry).app) as client, client.websocket_connect("/ws/chat") as ws:
        ws.send_json(payload)
        response = ws.receive_json()

    assert response["status"] == "error"
    assert response["request_id"] == "r1"
    assert error in response["chunk"]["error"]
