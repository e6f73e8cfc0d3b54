"""
Model Gateway contract.

The orchestrator talks to the model only through ``ModelGateway``. A gateway
never retries; transient failures are reported with a transient
``GatewayError`` and the delivery channel decides what to do about them.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import Protocol, runtime_checkable

from cara.chat.models import CompletionResult, ConversationContext, StreamChunk, ToolDefinition


@runtime_checkable
class StreamHandle(Protocol):
    """
    Lazy, finite, forward-only sequence of stream chunks.

    Iteration pulls from the provider as the consumer asks. A handle can be
    iterated once; ``aclose`` releases the underlying connection and may be
    called any number of times, including after the stream has finished.
    """

    def __aiter__(self) -> AsyncIterator[StreamChunk]: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class ModelGateway(Protocol):
    async def request_completion(
        self,
        model: str | None,
        context: ConversationContext,
        tools: list[ToolDefinition],
    ) -> CompletionResult:
        """Single non-streaming completion; used to probe for tool calls."""
        ...

    async def request_stream(
        self,
        model: str | None,
        context: ConversationContext,
        tools: list[ToolDefinition],
    ) -> StreamHandle:
        """Open a streaming completion. Chunks are produced as the handle is iterated."""
        ...


class IterableStreamHandle:
    """Adapts any async iterable of chunks into a ``StreamHandle``."""

    def __init__(self, source: AsyncIterable[StreamChunk]):
        self._source = source
        self._iterator: AsyncIterator[StreamChunk] | None = None
        self.closed = False

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self

    async def __anext__(self) -> StreamChunk:
        if self.closed:
            raise StopAsyncIteration
        if self._iterator is None:
            self._iterator = aiter(self._source)
        return await anext(self._iterator)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        aclose = getattr(self._iterator or self._source, "aclose", None)
        if aclose is not None:
            await aclose()
