"""HTTP gateway: payload building, SSE parsing and error mapping over httpx.MockTransport."""

import json

import httpx
import pytest

from cara.chat.models import ConversationContext, Message
from cara.clients.llm_client import LLMClient, find_retry_delay, strip_provider_prefix
from cara.config import Configuration
from cara.errors import AuthenticationFailure, MalformedResponse, NetworkFailure, RateLimited
from cara.tools.calculator import calculator_tool


def _client(handler, **overrides) -> LLMClient:
    configuration = Configuration.from_dict(overrides)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://llm.test/api/v1")
    return LLMClient(configuration, http_client=http_client)


def _sse(*events: str) -> str:
    return "".join(f"data: {event}\n\n" for event in events)


def _delta(text=None, reasoning=None, finish=None) -> str:
    delta = {}
    if text is not None:
        delta["content"] = text
    if reasoning is not None:
        delta["reasoning"] = reasoning
    return json.dumps({"choices": [{"index": 0, "delta": delta, "finish_reason": finish}]})


@pytest.fixture
def context():
    return ConversationContext.new("sys").append(Message.user("What is 2+2?"))


def test_strip_provider_prefix():
    assert strip_provider_prefix("openrouter:mistralai/mistral-7b-instruct-v0.2") == "mistralai/mistral-7b-instruct-v0.2"
    assert strip_provider_prefix("mistralai/mistral-7b") == "mistralai/mistral-7b"
    assert strip_provider_prefix("ollama:llama3") == "ollama:llama3"


def test_find_retry_delay():
    body = {"details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "30s"}]}

    assert find_retry_delay(body) == "30s"
    assert find_retry_delay([{"error": body}]) == "30s"
    assert find_retry_delay({"details": []}) is None
    assert find_retry_delay("nope") is None


@pytest.mark.asyncio
async def test_request_completion_builds_payload_and_parses_tool_calls(context):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["payload"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "mistralai/mistral-7b-instruct-v0.2",
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call-1",
                                    "type": "function",
                                    "function": {"name": "calculator", "arguments": '{"expression": "2+2"}'},
                                }
                            ],
                        },
                    }
                ],
            },
        )

    client = _client(handler)
    result = await client.request_completion(None, context, [calculator_tool().to_definition()])

    assert captured["path"] == "/api/v1/chat/completions"
    payload = captured["payload"]
    assert payload["model"] == "mistralai/mistral-7b-instruct-v0.2"
    assert payload["temperature"] == 0.7
    assert "stream" not in payload
    assert "base_url" not in payload
    assert payload["messages"][1] == {"role": "user", "content": "What is 2+2?"}
    assert payload["tools"][0]["function"]["name"] == "calculator"

    assert result.text == ""
    assert result.finish_reason == "tool_calls"
    assert result.tool_calls[0].id == "call-1"
    assert result.tool_calls[0].arguments == {"expression": "2+2"}


@pytest.mark.asyncio
async def test_request_completion_uses_explicit_model(context):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["model"])
        return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

    result = await _client(handler).request_completion("openrouter:openai/gpt-4o", context, [])

    assert seen == ["openai/gpt-4o"]
    assert result.text == "hi"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        (401, AuthenticationFailure),
        (403, AuthenticationFailure),
        (429, RateLimited),
        (500, NetworkFailure),
        (503, NetworkFailure),
        (400, MalformedResponse),
        (404, MalformedResponse),
    ],
)
async def test_status_codes_map_to_gateway_errors(context, status, error_type):
    client = _client(lambda request: httpx.Response(status, json={"error": {"message": "nope"}}))

    with pytest.raises(error_type):
        await client.request_completion(None, context, [])
    with pytest.raises(error_type):
        await client.request_stream(None, context, [])


@pytest.mark.asyncio
async def test_rate_limit_retry_hints(context):
    header_client = _client(lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={}))
    body_client = _client(
        lambda request: httpx.Response(
            429,
            json={"error": {"details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "30s"}]}},
        )
    )

    with pytest.raises(RateLimited) as header_error:
        await header_client.request_completion(None, context, [])
    with pytest.raises(RateLimited) as body_error:
        await body_client.request_stream(None, context, [])

    assert header_error.value.retry_after == "7s"
    assert body_error.value.retry_after == "30s"
    assert header_error.value.transient


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["not json", json.dumps({"id": "x"}), json.dumps({"choices": []})])
async def test_unusable_completion_is_malformed(context, body):
    client = _client(lambda request: httpx.Response(200, text=body))

    with pytest.raises(MalformedResponse):
        await client.request_completion(None, context, [])


@pytest.mark.asyncio
async def test_transport_errors_are_network_failures(context):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(NetworkFailure):
        await client.request_completion(None, context, [])
    with pytest.raises(NetworkFailure):
        await client.request_stream(None, context, [])


@pytest.mark.asyncio
async def test_stream_parses_sse_events(context):
    captured = {}
    body = (
        ": keep-alive\n\n"
        + _sse(
            _delta(reasoning="hmm"),
            _delta(text="Hello"),
            _delta(text=""),
            _delta(text=" there"),
            _delta(text="!", finish="stop"),
            "[DONE]",
        )
        + _sse(_delta(text="after done"))
    )

    def handler(request):
        captured["payload"] = json.loads(request.content)
        captured["accept"] = request.headers["accept"]
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    handle = await _client(handler).request_stream(None, context, [])
    chunks = [chunk async for chunk in handle]

    assert captured["payload"]["stream"] is True
    assert captured["accept"] == "text/event-stream"
    assert [(c.type, c.text) for c in chunks] == [
        ("reasoning", "hmm"),
        ("content", "Hello"),
        ("content", ""),
        ("content", " there"),
        ("content", "!"),
        ("finish", "stop"),
    ]
    await handle.aclose()
    await handle.aclose()
    assert handle.closed


@pytest.mark.asyncio
async def test_stream_error_payload_raises(context):
    body = _sse(_delta(text="Hel"), json.dumps({"error": {"code": 502, "message": "upstream died"}}))
    handle = await _client(lambda request: httpx.Response(200, text=body)).request_stream(None, context, [])

    received = []
    with pytest.raises(NetworkFailure):
        async for chunk in handle:
            received.append(chunk.text)

    assert received == ["Hel"]


@pytest.mark.asyncio
async def test_stream_invalid_json_is_malformed(context):
    handle = await _client(lambda request: httpx.Response(200, text="data: {oops\n\n")).request_stream(None, context, [])

    with pytest.raises(MalformedResponse):
        async for _ in handle:
            pass


@pytest.mark.asyncio
async def test_stream_closed_before_iteration_yields_nothing(context):
    handle = await _client(lambda request: httpx.Response(200, text=_sse(_delta(text="x")))).request_stream(
        None, context, []
    )

    await handle.aclose()

    assert [chunk async for chunk in handle] == []
