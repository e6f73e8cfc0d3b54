"""
Chat Logging Utilities

Shared logging helpers with feature flags and truncation, so the
orchestrator, the tool executor and the HTTP client log in the same format.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Populated from the ``logging.modules.<name>.enable_features`` config section
_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Replace the feature flags of one logging module group."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, length: int) -> str:
    if len(text) > length:
        return text[:length] + "..."
    return text


def log_llm_reply(
    content: str,
    tool_calls: list[Any],
    model: str,
    context: str,
    truncate_length: int = 500,
) -> None:
    """
    Log an LLM reply when the ``chat.llm_replies`` feature is enabled.

    Args:
        content: Text content of the reply
        tool_calls: Tool call requests carried by the reply
        model: Model that produced the reply
        context: Descriptive context for the log entry
        truncate_length: Maximum content length to log
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    log_parts = [f"LLM Reply ({context}):"]
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {getattr(call, 'name', 'unknown')}")
    log_parts.append(f"Model: {model or 'unknown'}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    logger.info("← Tool[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    """Log malformed tool arguments sent by the model."""
    logger.error("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500) -> None:
    """Log the arguments a tool is about to be called with."""
    if not should_log_feature("tools", "tool_arguments"):
        return
    logger.info("→ Tool[%s]: arguments (%s): %s", tool_name, context, _truncate(str(arguments), truncate_length))


def log_tool_results(tool_name: str, results: str, truncate_length: int = 200) -> None:
    if not should_log_feature("tools", "tool_results"):
        return
    logger.info("← Tool[%s]: results: %s", tool_name, _truncate(results, truncate_length))


def log_error_with_context(context: str, error: BaseException) -> None:
    logger.error("Error %s: %s: %s", context, type(error).__name__, error)
