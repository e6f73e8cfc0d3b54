"""
Error taxonomy for the chat engine.

Gateway errors carry a ``transient`` flag that drives whole-round retries.
Tool errors never leave the tool executor; they become tool messages the
model can read. Everything else surfaces at the round boundary, where
``user_message`` turns it into text that is safe to show.
"""

from __future__ import annotations

BUSY_MESSAGE = "The AI is busy. Wait a moment and try again later."


class ChatError(Exception):
    """Base class for all chat engine errors."""


# ==============================================================================
# MODEL GATEWAY
# ==============================================================================


class GatewayError(ChatError):
    """The model provider could not produce a usable response."""

    transient: bool = False


class NetworkFailure(GatewayError):
    """Connection, timeout or provider-side (5xx) failure."""

    transient = True


class AuthenticationFailure(GatewayError):
    """The provider rejected our credentials."""


class RateLimited(GatewayError):
    """The provider asked us to slow down."""

    transient = True

    def __init__(self, message: str = "Rate limited", retry_after: str | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponse(GatewayError):
    """The provider rejected the request or answered with something unparseable."""


# ==============================================================================
# TOOLS
# ==============================================================================


class ToolNotFoundError(ChatError):
    def __init__(self, name: str):
        super().__init__(f"Tool {name} not found.")
        self.name = name


class ToolExecutionError(ChatError):
    def __init__(self, name: str, reason: str):
        super().__init__(f"Tool execution failed: {reason}")
        self.name = name
        self.reason = reason


# ==============================================================================
# ROUND
# ==============================================================================


class EmptyResponseError(ChatError):
    """The answer stream completed without a single content chunk."""

    def __init__(self, message: str = "Model returned an empty response"):
        super().__init__(message)


class RoundLimitExceededError(ChatError):
    """The model kept requesting tools past the configured round limit."""

    def __init__(self, limit: int):
        super().__init__(f"Reached maximum tool call limit ({limit})")
        self.limit = limit


class SessionBusyError(ChatError):
    """A round is already in flight for this session."""

    def __init__(self) -> None:
        super().__init__("A response is still being generated")


def user_message(error: BaseException) -> str:
    """Convert any round failure into a message fit for the chat window."""
    if isinstance(error, RateLimited):
        if error.retry_after:
            return f"{BUSY_MESSAGE} Please retry in {error.retry_after}."
        return BUSY_MESSAGE
    if isinstance(error, EmptyResponseError):
        return BUSY_MESSAGE
    if isinstance(error, AuthenticationFailure):
        return "The AI service rejected our credentials. Check the configured API key."
    if isinstance(error, NetworkFailure):
        return "Could not reach the AI service. Please try again."
    if isinstance(error, MalformedResponse):
        return "The AI service returned an unexpected response."
    if isinstance(error, RoundLimitExceededError):
        return (
            f"⚠️ Reached maximum tool call limit ({error.limit}). "
            "Stopping to prevent infinite recursion."
        )
    if isinstance(error, SessionBusyError):
        return "Please wait for the current response to finish."
    return "Something went wrong while generating a response."
