"""
Chat Orchestrator

Runs one turn of the Reason-Act-Answer loop:

1. Reasoning: a non-streaming probe asks the model whether it wants tools
2. Acting: requested tools run and their results are folded into the context
3. Answering: a streaming request produces the final answer

The probe's text is never shown; once the model stops asking for tools the
answer is regenerated as a stream over the same context. Every operation
works on an immutable ``ConversationContext`` and hands the new one back, so
a failed turn leaves the caller's context untouched.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing
from typing import TYPE_CHECKING

from cara.chat.logging_utils import log_llm_reply
from cara.chat.models import ChatMessage, ConversationContext, Message
from cara.chat.streaming_handler import StreamingHandler
from cara.chat.tool_executor import ToolExecutor
from cara.errors import RoundLimitExceededError

if TYPE_CHECKING:
    from cara.clients.base import ModelGateway
    from cara.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ContextBuilder = Callable[[str], ConversationContext]


class ChatOrchestrator:
    """
    Conversation orchestrator - coordinates the gateway, the tool executor
    and the streaming handler for one turn at a time.

    Holds no per-conversation state; one instance can serve every session.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        tool_executor: ToolExecutor | None = None,
        streaming_handler: StreamingHandler | None = None,
        model: str | None = None,
        max_tool_rounds: int = 5,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be a positive integer")

        self.gateway = gateway
        self.tool_executor = tool_executor or ToolExecutor()
        self.streaming_handler = streaming_handler or StreamingHandler()
        self.model = model
        self.max_tool_rounds = max_tool_rounds

    async def _reason_and_act(
        self,
        context: ConversationContext,
        registry: ToolRegistry,
        model: str | None,
    ) -> AsyncGenerator[ChatMessage | ConversationContext]:
        """
        Probe for tool calls and execute them until the model stops asking.

        Yields ``tool_execution`` notices as rounds start and, last, the
        context to answer from.
        """
        rounds = 0

        while registry:
            tools = registry.to_definitions()
            logger.info("→ LLM: probing for tool calls (round %d)", rounds + 1)
            result = await self.gateway.request_completion(model, context, tools)
            log_llm_reply(result.text, result.tool_calls, result.model, f"tool probe {rounds + 1}")

            if not result.tool_calls:
                logger.info("← LLM: no tool calls requested, moving to answer")
                break

            if rounds >= self.max_tool_rounds:
                logger.warning("Maximum tool rounds (%d) reached, stopping recursion", self.max_tool_rounds)
                raise RoundLimitExceededError(self.max_tool_rounds)

            tool_count = len(result.tool_calls)
            logger.info("→ Frontend: tool execution notification (%d tools)", tool_count)
            yield ChatMessage(
                type="tool_execution",
                content=f"Executing {tool_count} tool(s)...",
                metadata={
                    "tool_count": tool_count,
                    "tools": [call.name for call in result.tool_calls],
                    "hop": rounds + 1,
                },
            )

            context = context.append(Message.assistant("", result.tool_calls))
            context = await self.tool_executor.handle_tool_calls(result.tool_calls, context, registry)

            rounds += 1
            logger.info("Completed tool call iteration %d", rounds)

        yield context

    async def _prepare_answer(
        self,
        user_msg: str,
        context: ConversationContext,
        registry: ToolRegistry,
        model: str | None,
    ) -> AsyncGenerator[ChatMessage | ConversationContext]:
        working = context.append(Message.user(user_msg))
        async with aclosing(self._reason_and_act(working, registry, model)) as steps:
            async for step in steps:
                yield step

    async def process_message(
        self,
        user_msg: str,
        context: ConversationContext,
        registry: ToolRegistry,
        model: str | None = None,
    ) -> AsyncGenerator[ChatMessage]:
        """
        Process a user message with streaming response.

        Yields ``tool_execution`` notices, then the answer as ``text`` chunks,
        then a single ``end`` message whose ``context`` is the finalised
        conversation: ``context`` + user message + tool traffic + answer.

        Raises:
            GatewayError: If the provider fails
            RoundLimitExceededError: If the model keeps requesting tools
            EmptyResponseError: If the answer stream carried no content
        """
        model = model or self.model
        logger.info("→ Orchestrator: processing streaming message")

        working = context
        async with aclosing(self._prepare_answer(user_msg, context, registry, model)) as steps:
            async for step in steps:
                if isinstance(step, ConversationContext):
                    working = step
                else:
                    yield step

        tools = registry.to_definitions()
        handle = await self.gateway.request_stream(model, working, tools)
        full_text: list[str] = []
        try:
            async with aclosing(self.streaming_handler.stream_answer(handle, model or "")) as messages:
                async for message in messages:
                    full_text.append(message.content)
                    yield message
        finally:
            await handle.aclose()

        final_context = working.append(Message.assistant("".join(full_text)))
        logger.info("← Orchestrator: completed streaming message processing")
        yield ChatMessage(type="end", context=final_context, metadata={"messages": len(final_context)})

    async def send_message_stream(
        self,
        user_msg: str,
        context: ConversationContext,
        registry: ToolRegistry,
        model: str | None = None,
    ) -> tuple[AsyncIterator[str], ContextBuilder]:
        """
        Run reasoning and tools now, return the answer stream lazily.

        Returns:
            ``(text_chunks, context_builder)``: an async iterator of answer
            text and a callable turning the accumulated text into the
            finalised context. The iterator closes the provider stream when
            exhausted or closed.
        """
        model = model or self.model

        working = context
        async with aclosing(self._prepare_answer(user_msg, context, registry, model)) as steps:
            async for step in steps:
                if isinstance(step, ConversationContext):
                    working = step

        handle = await self.gateway.request_stream(model, working, registry.to_definitions())

        async def text_chunks() -> AsyncGenerator[str]:
            try:
                async with aclosing(self.streaming_handler.stream_answer(handle, model or "")) as messages:
                    async for message in messages:
                        yield message.content
            finally:
                await handle.aclose()

        def context_builder(full_text: str) -> ConversationContext:
            return working.append(Message.assistant(full_text))

        return text_chunks(), context_builder

    async def send_message(
        self,
        user_msg: str,
        context: ConversationContext,
        registry: ToolRegistry,
        model: str | None = None,
    ) -> tuple[str, ConversationContext]:
        """Non-streaming convenience: the complete answer and the new context."""
        parts: list[str] = []
        final_context = context
        async with aclosing(self.process_message(user_msg, context, registry, model)) as messages:
            async for message in messages:
                if message.type == "text":
                    parts.append(message.content)
                elif message.type == "end" and message.context is not None:
                    final_context = message.context

        return "".join(parts), final_context
