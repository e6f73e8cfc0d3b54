"""Model gateway contract and the HTTP client implementing it."""

from __future__ import annotations

from .base import IterableStreamHandle, ModelGateway, StreamHandle
from .llm_client import LLMClient

__all__ = ["IterableStreamHandle", "LLMClient", "ModelGateway", "StreamHandle"]
