"""
Tool Execution Handler

Runs the tool calls requested by the model and folds their results back into
the conversation:
- Tool lookup and argument validation
- Sync/async callback execution with a timeout
- Tool result formatting

Tool failures never escape this module. Each request yields exactly one tool
message (result or error text) so the model can see what went wrong and the
conversation stays well formed.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from cara.chat.logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from cara.chat.models import ConversationContext, Message, ToolCallRequest
from cara.errors import ToolExecutionError, ToolNotFoundError

if TYPE_CHECKING:
    from cara.tools.registry import Tool, ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes tool call requests against a registry."""

    def __init__(self, tool_timeout: float | None = 30.0, arguments_truncate: int = 500):
        self.tool_timeout = tool_timeout
        self.arguments_truncate = arguments_truncate

    async def handle_tool_calls(
        self,
        requests: list[ToolCallRequest],
        context: ConversationContext,
        registry: ToolRegistry,
    ) -> ConversationContext:
        """
        Execute tool calls and append one tool message per request.

        Requests are executed sequentially in the order the model gave them,
        which keeps the appended messages in request order and avoids
        conflicts between tools sharing a resource.

        Args:
            requests: Tool calls from the model's latest reply
            context: Conversation to extend
            registry: Tools available for this round

        Returns:
            ConversationContext: ``context`` plus ``len(requests)`` tool messages
        """
        logger.info("→ Tools: executing %d tool calls", len(requests))

        results: list[Message] = []
        for i, request in enumerate(requests):
            try:
                content = await self._execute(request, registry, i, len(requests))
            except ToolNotFoundError as e:
                log_tool_execution_error(request.name, str(e))
                content = f"Error: {e}"
            except ToolExecutionError as e:
                log_tool_execution_error(request.name, e.reason)
                content = f"Error: {e}"

            results.append(Message.tool(request.id, content))

        logger.info("← Tools: completed all tool executions")
        return context.extend(results)

    async def _execute(self, request: ToolCallRequest, registry: ToolRegistry, index: int, total: int) -> str:
        tool = registry.get(request.name)
        if tool is None:
            raise ToolNotFoundError(request.name)

        log_tool_arguments(request.name, request.arguments, f"call {index + 1}/{total}", self.arguments_truncate)
        log_tool_execution_start(request.name, index, total)

        try:
            tool.validate_arguments(request.arguments)
            result = await self._invoke(tool, request.arguments)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(request.name, f"timed out after {self.tool_timeout}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ToolExecutionError(request.name, str(e) or type(e).__name__) from e

        content = self.format_result(result)
        log_tool_execution_success(request.name, len(content))
        log_tool_results(request.name, content)
        return content

    async def _invoke(self, tool: Tool, arguments: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(tool.callback):
            call = tool.callback(arguments)
        else:
            # Sync callbacks run in a worker thread so the event loop keeps streaming
            call = asyncio.to_thread(tool.callback, arguments)

        result = await asyncio.wait_for(call, timeout=self.tool_timeout)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=self.tool_timeout)
        return result

    @staticmethod
    def format_result(result: Any) -> str:
        """Render a callback's return value as tool message content."""
        if result is None:
            return "✓ done"
        if isinstance(result, str):
            return result
        if isinstance(result, (dict, list)):
            try:
                return json.dumps(result, ensure_ascii=False)
            except (TypeError, ValueError) as e:
                logger.warning("Failed to serialize tool result: %s", e)
        return str(result)
