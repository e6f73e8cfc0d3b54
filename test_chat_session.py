"""Round delivery: retries, busy rejection, errors and cancellation."""

import asyncio

import pytest

from cara.chat.chat_session import ChatSession
from cara.chat.models import ConversationContext, Message
from cara.errors import (
    BUSY_MESSAGE,
    AuthenticationFailure,
    NetworkFailure,
    RateLimited,
    SessionBusyError,
)
from conftest import FakeGateway, content, make_orchestrator


def _session(gateway, registry, context, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return ChatSession(make_orchestrator(gateway), registry, context=context, **kwargs)


@pytest.mark.asyncio
async def test_successful_round_replaces_context(context, empty_registry):
    gateway = FakeGateway(streams=[[content("Hello"), content(" there"), content("!")]])
    session = _session(gateway, empty_registry, context)

    events = await session.submit("Hi").collect()

    assert [e.type for e in events] == ["text", "text", "text", "end"]
    assert session.context.last == Message.assistant("Hello there!")
    assert session.context.history()[-2] == Message.user("Hi")
    assert not session.busy


@pytest.mark.asyncio
async def test_transient_failures_are_retried(context, empty_registry):
    gateway = FakeGateway(streams=[NetworkFailure("reset"), RateLimited(), [content("ok")]])
    session = _session(gateway, empty_registry, context, retry_attempts=5)

    events = await session.submit("Hi").collect()

    assert [e.type for e in events] == ["retry", "retry", "text", "end"]
    assert len(gateway.stream_calls) == 3
    assert all(call == gateway.stream_calls[0] for call in gateway.stream_calls)
    assert session.context.last.content == "ok"


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts(context, empty_registry):
    gateway = FakeGateway(streams=[NetworkFailure("down")])
    session = _session(gateway, empty_registry, context, retry_attempts=3)

    events = await session.submit("Hi").collect()

    assert len(gateway.stream_calls) == 3
    assert [e.type for e in events] == ["retry", "retry", "error"]
    assert session.context == context


@pytest.mark.asyncio
async def test_mid_stream_failure_emits_retry_before_restart(context, empty_registry):
    gateway = FakeGateway(streams=[[content("par"), NetworkFailure("cut")], [content("full answer")]])
    session = _session(gateway, empty_registry, context)

    events = await session.submit("Hi").collect()

    assert [(e.type, e.content) for e in events[:3]] == [("text", "par"), ("retry", "Retrying..."), ("text", "full answer")]
    assert session.context.last.content == "full answer"


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried(context, empty_registry):
    gateway = FakeGateway(streams=[AuthenticationFailure("bad key")])
    session = _session(gateway, empty_registry, context)

    events = await session.submit("Hi").collect()

    assert len(gateway.stream_calls) == 1
    assert len(events) == 1
    assert events[0].type == "error"
    assert "credentials" in events[0].content


@pytest.mark.asyncio
async def test_empty_response_reports_busy_and_keeps_context(context, empty_registry):
    gateway = FakeGateway(streams=[[]])
    session = _session(gateway, empty_registry, context)

    events = await session.submit("Hi").collect()

    assert [(e.type, e.content) for e in events] == [("error", BUSY_MESSAGE)]
    assert len(gateway.stream_calls) == 1
    assert session.context == context


@pytest.mark.asyncio
async def test_rate_limit_hint_is_shown(context, empty_registry):
    gateway = FakeGateway(streams=[RateLimited(retry_after="30s")])
    session = _session(gateway, empty_registry, context, retry_attempts=1)

    events = await session.submit("Hi").collect()

    assert events[-1].content == f"{BUSY_MESSAGE} Please retry in 30s."


@pytest.mark.asyncio
async def test_second_submit_while_running_is_rejected(context, empty_registry):
    gateway = FakeGateway(streams=[[content(str(i)) for i in range(10)]])
    session = _session(gateway, empty_registry, context, queue_size=1)

    stream = session.submit("first")
    await asyncio.sleep(0)
    with pytest.raises(SessionBusyError):
        session.submit("second")

    await stream.collect()
    await session.submit("third").collect()
    assert session.context.history()[-2] == Message.user("third")


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_blank_input_is_rejected(context, empty_registry, text):
    session = _session(FakeGateway(), empty_registry, context)

    with pytest.raises(ValueError):
        session.submit(text)
    assert not session.busy


@pytest.mark.asyncio
async def test_close_cancels_round_and_closes_stream(context, empty_registry):
    gateway = FakeGateway(streams=[[content(str(i)) for i in range(50)]])
    session = _session(gateway, empty_registry, context, queue_size=1)

    stream = session.submit("Hi")
    first = await stream.__anext__()
    await session.close()

    assert first.content == "0"
    assert gateway.handles[0].closed
    assert gateway.handles[0].yielded < 50
    assert session.context == context
    assert [e async for e in stream] == []


@pytest.mark.asyncio
async def test_cancel_right_after_submit_ends_stream(context, empty_registry):
    gateway = FakeGateway(streams=[[content("Hello")]])
    session = _session(gateway, empty_registry, context)

    stream = session.submit("Hi")
    stream.cancel()

    assert await asyncio.wait_for(stream.collect(), 2) == []
    assert session.context == context
    assert not session.busy


@pytest.mark.asyncio
async def test_close_right_after_submit_ends_stream(context, empty_registry):
    gateway = FakeGateway(streams=[[content("Hello")]])
    session = _session(gateway, empty_registry, context)

    stream = session.submit("Hi")
    await session.close()

    assert await asyncio.wait_for(stream.collect(), 2) == []
    assert gateway.stream_calls == []


@pytest.mark.asyncio
async def test_reset_keeps_system_prompt(context, empty_registry):
    session = _session(FakeGateway(), empty_registry, context)
    await session.submit("Hi").collect()

    session.reset()

    assert session.context == ConversationContext.new("You are a test assistant.")
