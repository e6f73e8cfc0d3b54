"""
Streaming Response Handler

Turns a provider stream handle into frontend text events:
- Only content chunks reach the frontend, in provider order
- Empty chunks are dropped and never end the stream
- A stream that finishes without content is an error, not an empty answer

Streaming bugs are hard to debug, so this isolation keeps the logging of what
is sent to the frontend in one place.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING

from cara.chat.logging_utils import log_llm_reply
from cara.chat.models import ChatMessage
from cara.errors import EmptyResponseError

if TYPE_CHECKING:
    from cara.clients.base import StreamHandle

logger = logging.getLogger(__name__)


class StreamingHandler:
    """Forwards the answer stream to the frontend."""

    def __init__(self, llm_reply_truncate_length: int = 500):
        self.llm_reply_truncate_length = llm_reply_truncate_length

    async def stream_answer(
        self,
        handle: StreamHandle,
        model: str = "",
        hop_number: int = 0,
    ) -> AsyncGenerator[ChatMessage]:
        """
        Yield one ``text`` message per non-empty content chunk.

        The caller owns ``handle`` and must close it; this generator only
        reads from it.

        Raises:
            EmptyResponseError: If the stream completes without any content
        """
        logger.info("→ LLM: streaming answer (hop %d)", hop_number)

        message_parts: list[str] = []
        finish_reason: str | None = None

        async for chunk in handle:
            if chunk.type == "finish":
                finish_reason = chunk.text
                continue
            if not chunk.is_content or not chunk.text:
                continue

            message_parts.append(chunk.text)
            logger.debug("→ Frontend: streaming content delta, length=%d", len(chunk.text))
            yield ChatMessage(type="text", content=chunk.text, metadata={"type": "delta", "hop": hop_number})

        logger.info("← LLM: streaming completed (hop %d), finish_reason=%s", hop_number, finish_reason)

        if not message_parts:
            raise EmptyResponseError()

        log_llm_reply("".join(message_parts), [], model, "streaming answer", self.llm_reply_truncate_length)
