"""
Chat Service Module

Conversation state, the Reason-Act-Answer orchestrator and per-session
stream delivery.
"""

from .chat_orchestrator import ChatOrchestrator
from .chat_session import ChatSession, RoundStream
from .models import ChatMessage, ConversationContext, Message, ToolCallRequest

__all__ = [
    "ChatMessage",
    "ChatOrchestrator",
    "ChatSession",
    "ConversationContext",
    "Message",
    "RoundStream",
    "ToolCallRequest",
]
