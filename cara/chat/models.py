"""
Chat Data Models

Conversation state, tool declarations, stream chunks and the events delivered
to the frontend. Conversation types are frozen Pydantic models: every
"mutation" returns a new object, so a context can be handed to a background
round without anyone else observing changes to it.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from cara.chat.logging_utils import log_tool_args_error

Role = Literal["system", "user", "assistant", "tool"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, friendly AI assistant. Engage in natural conversation,\n"
    "answer questions clearly, and be concise unless asked for detailed explanations.\n"
)


# ==============================================================================
# CONVERSATION
# ==============================================================================


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ToolCallRequest:
        """Build from an OpenAI-style ``tool_calls`` entry.

        Arguments arrive as a JSON string; anything that does not decode to an
        object becomes an empty dict and the raw text is kept for replay.
        """
        function = data.get("function") or {}
        name = function.get("name") or ""
        raw = function.get("arguments")

        arguments: dict[str, Any] = {}
        if isinstance(raw, dict):
            arguments = raw
            raw = json.dumps(raw)
        elif raw:
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as e:
                log_tool_args_error(name, e)
            else:
                if isinstance(decoded, dict):
                    arguments = decoded
                else:
                    log_tool_args_error(name, ValueError("arguments are not a JSON object"))

        return cls(id=data.get("id") or "", name=name, arguments=arguments, raw_arguments=raw)

    def to_api(self) -> dict[str, Any]:
        arguments = self.raw_arguments if self.raw_arguments is not None else json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }


class Message(BaseModel):
    """One turn in the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCallRequest] | None = None) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def to_api(self) -> dict[str, Any]:
        """Convert to the chat-completions wire format."""
        result: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            result["content"] = self.content or None
            result["tool_calls"] = [tc.to_api() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        return result


class ConversationContext(BaseModel):
    """Ordered message history sent to the model on every request."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()

    @classmethod
    def new(cls, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> ConversationContext:
        return cls(messages=(Message.system(system_prompt),))

    def append(self, message: Message) -> ConversationContext:
        return ConversationContext(messages=(*self.messages, message))

    def extend(self, messages: list[Message] | tuple[Message, ...]) -> ConversationContext:
        return ConversationContext(messages=(*self.messages, *messages))

    def history(self) -> tuple[Message, ...]:
        return self.messages

    def reset(self) -> ConversationContext:
        """Forget the conversation but keep every system message."""
        return ConversationContext(messages=tuple(m for m in self.messages if m.role == "system"))

    def to_api(self) -> list[dict[str, Any]]:
        return [m.to_api() for m in self.messages]

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None


# ==============================================================================
# TOOL DEFINITIONS (OpenAI function-calling format)
# ==============================================================================


class ToolFunctionParameters(BaseModel):
    """Function parameters schema for tools."""

    type: Literal["object"] = "object"
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    additionalProperties: bool = False


class ToolFunctionDefinition(BaseModel):
    name: str
    description: str
    parameters: ToolFunctionParameters


class ToolDefinition(BaseModel):
    """Complete tool definition for the chat-completions API."""

    type: Literal["function"] = "function"
    function: ToolFunctionDefinition


# ==============================================================================
# GATEWAY RESULTS
# ==============================================================================


class CompletionResult(BaseModel):
    """Outcome of a non-streaming completion."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    model: str = ""
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """One event from a provider stream. Only ``content`` chunks form the answer."""

    type: Literal["content", "reasoning", "finish"] = "content"
    text: str = ""

    @property
    def is_content(self) -> bool:
        return self.type == "content"


# ==============================================================================
# FRONTEND EVENTS
# ==============================================================================


class ChatMessage(BaseModel):
    """
    Event delivered to the UI while a round runs.

    ``text`` chunks are appended to the visible answer, ``tool_execution`` and
    ``retry`` are status notices, ``end`` carries the finalised context and
    ``error`` a user-facing failure message.
    """

    type: Literal["text", "tool_execution", "retry", "end", "error"]
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: ConversationContext | None = None
