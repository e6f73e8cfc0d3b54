"""
Server entry point: loads configuration, configures logging, builds the tool
registry and gateway, and runs the WebSocket server until a shutdown signal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from cara.chat.chat_orchestrator import ChatOrchestrator
from cara.chat.logging_utils import set_module_features
from cara.chat.streaming_handler import StreamingHandler
from cara.chat.tool_executor import ToolExecutor
from cara.clients.llm_client import LLMClient
from cara.config import Configuration
from cara.tools import create_tool_registry, create_wikipedia_client
from cara.websocket_server import run_websocket_server

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module group -> logger hierarchies it controls
MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "chat": {"loggers": ["cara.chat"], "default_level": "INFO"},
    "connection_pool": {"loggers": ["cara.clients", "httpx", "httpcore"], "default_level": "WARNING"},
    "tools": {"loggers": ["cara.tools", "cara.chat.tool_executor"], "default_level": "INFO"},
}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Hierarchical logger configuration with per-module feature flags.

    Levels are set on parent loggers so children inherit them; feature flags
    are stored for ``logging_utils.should_log_feature``.
    """
    root = logging.getLogger()
    global_level = logging_config.get("level", "WARNING")
    root.setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in root.handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        defaults = MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", defaults.get("default_level", global_level))
        level_value = LEVEL_MAP.get(module_level, logging.WARNING)

        for logger_name in defaults.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        set_module_features(module_name, module_config.get("enable_features", {}))


def build_orchestrator(config: Configuration, gateway: Any) -> ChatOrchestrator:
    chat_logging = config.get_chat_logging_config()
    return ChatOrchestrator(
        gateway,
        tool_executor=ToolExecutor(config.get_tool_timeout(), chat_logging["tool_arguments_truncate"]),
        streaming_handler=StreamingHandler(chat_logging["llm_reply_truncate_length"]),
        model=config.get_default_model(),
        max_tool_rounds=config.get_max_tool_rounds(),
    )


logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Run the chat server until SIGINT/SIGTERM or a server failure."""
    config = Configuration()
    configure_logging(config.get_logging_config())

    tools_config = config.get_tools_config()
    wikipedia_client = create_wikipedia_client(tools_config)
    registry = create_tool_registry(tools_config, wikipedia_client)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(config) as llm_client:
        orchestrator = build_orchestrator(config, llm_client)
        try:
            server_task = asyncio.create_task(run_websocket_server(orchestrator, registry, config))

            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            for task in done:
                if task == server_task:
                    exception = task.exception()
                    if exception is not None:
                        raise exception

        except Exception as e:
            logging.error("Application error: %s", e)
            raise
        finally:
            await wikipedia_client.aclose()
            logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous entrypoint for the ``cara-server`` script."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
