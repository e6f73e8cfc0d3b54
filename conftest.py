from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from cara.chat.chat_orchestrator import ChatOrchestrator
from cara.chat.models import CompletionResult, ConversationContext, StreamChunk, ToolCallRequest
from cara.chat.tool_executor import ToolExecutor
from cara.clients.base import IterableStreamHandle
from cara.tools.calculator import calculator_tool
from cara.tools.registry import ToolRegistry


def tool_call(call_id: str, name: str, arguments: dict[str, Any] | None = None) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments or {})


class RecordingStreamHandle(IterableStreamHandle):
    """Stream handle that remembers how often it was closed."""

    def __init__(self, chunks: list[StreamChunk | Exception]):
        self.chunks = chunks
        self.close_calls = 0
        self.yielded = 0
        super().__init__(self._produce())

    async def _produce(self) -> AsyncIterator[StreamChunk]:
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            self.yielded += 1
            yield chunk

    async def aclose(self) -> None:
        self.close_calls += 1
        await super().aclose()


class FakeGateway:
    """
    Scripted model gateway.

    ``completions`` and ``streams`` are consumed in order; an Exception entry
    is raised instead of returned. The last entry repeats once the script runs
    out.
    """

    def __init__(
        self,
        completions: list[CompletionResult | Exception] | None = None,
        streams: list[list[StreamChunk | Exception] | Exception] | None = None,
    ):
        self.completions = completions or [CompletionResult()]
        self.streams = streams or [[content("Hello there!")]]
        self.completion_calls: list[ConversationContext] = []
        self.stream_calls: list[ConversationContext] = []
        self.models: list[str | None] = []
        self.handles: list[RecordingStreamHandle] = []

    async def request_completion(self, model, context, tools) -> CompletionResult:
        self.models.append(model)
        self.completion_calls.append(context)
        step = self.completions[min(len(self.completion_calls) - 1, len(self.completions) - 1)]
        if isinstance(step, Exception):
            raise step
        return step

    async def request_stream(self, model, context, tools) -> RecordingStreamHandle:
        self.models.append(model)
        self.stream_calls.append(context)
        step = self.streams[min(len(self.stream_calls) - 1, len(self.streams) - 1)]
        if isinstance(step, Exception):
            raise step
        handle = RecordingStreamHandle(step)
        self.handles.append(handle)
        return handle


def content(text: str) -> StreamChunk:
    return StreamChunk(type="content", text=text)


@pytest.fixture
def context() -> ConversationContext:
    return ConversationContext.new("You are a test assistant.")


@pytest.fixture
def calculator_registry() -> ToolRegistry:
    return ToolRegistry([calculator_tool()])


@pytest.fixture
def empty_registry() -> ToolRegistry:
    return ToolRegistry()


def make_orchestrator(gateway: FakeGateway, max_tool_rounds: int = 5, tool_timeout: float = 5.0) -> ChatOrchestrator:
    return ChatOrchestrator(gateway, ToolExecutor(tool_timeout), max_tool_rounds=max_tool_rounds)
