"""
Chat Session

Delivers rounds to a frontend. Each ``submit`` runs the orchestrator in a
background task and hands back a ``RoundStream`` the UI iterates for events.
The session owns the conversation context and replaces it only when a round
ends successfully.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

from cara.chat.logging_utils import log_error_with_context
from cara.chat.models import ChatMessage, ConversationContext
from cara.errors import GatewayError, SessionBusyError, user_message

if TYPE_CHECKING:
    from cara.chat.chat_orchestrator import ChatOrchestrator
    from cara.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_END: Any = object()


def _end_if_cancelled(task: asyncio.Task[None], queue: asyncio.Queue[Any]) -> None:
    # A task cancelled before its first step never reaches _run_round's handler
    if task.cancelled() and queue.empty():
        queue.put_nowait(_END)


class RoundStream:
    """
    Events of one round, in order.

    Iteration ends after the ``end`` or ``error`` event. The queue between the
    round and the consumer is bounded, so the round (and with it the provider
    stream) pauses while the consumer is not reading.
    """

    def __init__(self, queue: asyncio.Queue[Any], task: asyncio.Task[None]):
        self._queue = queue
        self._task = task
        self._finished = False

    def __aiter__(self) -> RoundStream:
        return self

    async def __anext__(self) -> ChatMessage:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def collect(self) -> list[ChatMessage]:
        return [event async for event in self]

    def cancel(self) -> None:
        """Abort the round; the provider stream is closed and the context kept."""
        self._task.cancel()

    @property
    def done(self) -> bool:
        return self._task.done()


class ChatSession:
    """One conversation between a user and the model."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        registry: ToolRegistry,
        context: ConversationContext | None = None,
        retry_attempts: int = 10,
        retry_delay: float = 1.0,
        queue_size: int = 64,
        model: str | None = None,
    ):
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self.orchestrator = orchestrator
        self.registry = registry
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.queue_size = queue_size
        self.model = model
        self._context = context if context is not None else ConversationContext.new()
        self._task: asyncio.Task[None] | None = None

    @property
    def context(self) -> ConversationContext:
        return self._context

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, text: str) -> RoundStream:
        """
        Start a round for ``text``.

        Raises:
            ValueError: If ``text`` is blank
            SessionBusyError: If the previous round is still running
        """
        if not text or not text.strip():
            raise ValueError("Message must not be blank")
        if self.busy:
            raise SessionBusyError()

        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        self._task = asyncio.create_task(self._run_round(text, queue))
        self._task.add_done_callback(lambda task: _end_if_cancelled(task, queue))
        return RoundStream(queue, self._task)

    async def _run_round(self, text: str, queue: asyncio.Queue[Any]) -> None:
        try:
            try:
                await self._run_attempts(text, queue)
            except Exception as e:
                log_error_with_context("processing chat round", e)
                await queue.put(
                    ChatMessage(type="error", content=user_message(e), metadata={"error_type": type(e).__name__})
                )
            await queue.put(_END)
        except asyncio.CancelledError:
            logger.info("Chat round cancelled")
            # Consumer is gone or no longer interested; unblock any reader
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_END)
            raise

    async def _run_attempts(self, text: str, queue: asyncio.Queue[Any]) -> None:
        """Run the round, retrying it from scratch on transient gateway errors."""
        context = self._context
        attempt = 0

        while True:
            attempt += 1
            try:
                async with aclosing(
                    self.orchestrator.process_message(text, context, self.registry, self.model)
                ) as events:
                    async for event in events:
                        if event.type == "end" and event.context is not None:
                            self._context = event.context
                        await queue.put(event)
                return
            except GatewayError as e:
                if not e.transient or attempt >= self.retry_attempts:
                    raise
                logger.warning(
                    "Transient gateway error (attempt %d/%d): %s; retrying in %.1fs",
                    attempt,
                    self.retry_attempts,
                    e,
                    self.retry_delay,
                )
                await queue.put(
                    ChatMessage(
                        type="retry",
                        content="Retrying...",
                        metadata={"attempt": attempt, "max_attempts": self.retry_attempts},
                    )
                )
                await asyncio.sleep(self.retry_delay)

    def reset(self) -> None:
        """Forget the conversation, keeping the system prompt.

        Raises:
            SessionBusyError: If a round is running
        """
        if self.busy:
            raise SessionBusyError()
        self._context = self._context.reset()

    async def close(self) -> None:
        """Cancel the in-flight round, if any, and wait for it to wind down."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
