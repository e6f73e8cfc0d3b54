"""Tool contract, registry and the bundled tools."""

from __future__ import annotations

from typing import Any

from cara.tools.calculator import calculator_tool
from cara.tools.registry import DuplicateToolError, Tool, ToolError, ToolParameter, ToolRegistry
from cara.tools.wikipedia import WikipediaClient, wikipedia_get_article_tool, wikipedia_search_tool

__all__ = [
    "DuplicateToolError",
    "Tool",
    "ToolError",
    "ToolParameter",
    "ToolRegistry",
    "WikipediaClient",
    "create_tool_registry",
    "create_wikipedia_client",
]


def create_wikipedia_client(tools_config: dict[str, Any]) -> WikipediaClient:
    wikipedia_config = tools_config.get("wikipedia", {})
    return WikipediaClient(
        language=wikipedia_config.get("language", "en"),
        search_limit=wikipedia_config.get("search_limit", 10),
        timeout=wikipedia_config.get("timeout_seconds", 10.0),
        user_agent=wikipedia_config.get("user_agent", "Cara-Educational-App/1.0"),
    )


def create_tool_registry(tools_config: dict[str, Any], wikipedia_client: WikipediaClient | None = None) -> ToolRegistry:
    """
    Build the registry of bundled tools enabled in the ``tools`` config section.

    Wikipedia tools are only registered when a client is supplied.

    Raises:
        ValueError: If an enabled tool name is unknown
    """
    available: dict[str, Tool] = {"calculator": calculator_tool()}
    if wikipedia_client is not None:
        available["wikipedia_search"] = wikipedia_search_tool(wikipedia_client)
        available["wikipedia_get_article"] = wikipedia_get_article_tool(wikipedia_client)

    enabled = tools_config.get("enabled", list(available))
    tools = []
    for name in enabled:
        if name not in available:
            if name.startswith("wikipedia_") and wikipedia_client is None:
                continue
            raise ValueError(f"Unknown tool '{name}' in tools.enabled")
        tools.append(available[name])

    return ToolRegistry(tools)
