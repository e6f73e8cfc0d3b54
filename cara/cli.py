"""
Interactive console chat.

Setup:
1. Get an OpenRouter API key from https://openrouter.ai/keys
2. ``export OPENROUTER_API_KEY=your_key_here``
3. ``cara-chat`` (or ``cara-chat --model openrouter:openai/gpt-4o --no-stream``)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Callable
from typing import TextIO

from cara.chat.chat_orchestrator import ChatOrchestrator
from cara.chat.models import ConversationContext
from cara.clients.llm_client import LLMClient
from cara.config import Configuration
from cara.errors import ChatError, user_message
from cara.main import build_orchestrator, configure_logging
from cara.tools import create_tool_registry, create_wikipedia_client
from cara.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

QUIT_COMMANDS = {"quit", "exit", "q"}
API_KEY_ENV = "OPENROUTER_API_KEY"


def is_quit_command(text: str) -> bool:
    return text.strip().lower() in QUIT_COMMANDS


def read_user_input(input_fn: Callable[[str], str]) -> str | None:
    """Prompt until a non-blank line arrives. ``None`` means quit."""
    while True:
        try:
            text = input_fn("You: ").strip()
        except EOFError:
            return None
        if not text:
            continue
        if is_quit_command(text):
            return None
        return text


async def chat_loop(
    orchestrator: ChatOrchestrator,
    registry: ToolRegistry,
    context: ConversationContext,
    model: str | None = None,
    stream: bool = True,
    input_fn: Callable[[str], str] = input,
    out: TextIO | None = None,
) -> ConversationContext:
    """Run the console conversation until the user quits; return the final context."""
    out = out or sys.stdout

    while True:
        text = await asyncio.to_thread(read_user_input, input_fn)
        if text is None:
            out.write(">> Chat ended.\n\n")
            return context

        out.write("Assistant: ")
        try:
            chunks, context_builder = await orchestrator.send_message_stream(text, context, registry, model)
            parts: list[str] = []
            async for chunk in chunks:
                parts.append(chunk)
                if stream:
                    out.write(chunk)
                    out.flush()
            final_text = "".join(parts)
            if not stream:
                out.write(final_text)
            context = context_builder(final_text)
        except ChatError as e:
            logger.debug("Round failed: %s", e)
            out.write(user_message(e))
        except Exception as e:
            logger.error("Unexpected error during round: %s", e, exc_info=True)
            out.write(user_message(e))
        out.write("\n\n")


def print_header(out: TextIO, model: str, stream: bool) -> None:
    out.write("\n>> Starting chat session...\n")
    out.write(f">> Model: {model}\n")
    out.write(f">> Streaming: {str(stream).lower()}\n")
    out.write(">> Type your message (or 'quit' to exit)\n\n")


def print_api_key_error(out: TextIO) -> None:
    out.write(f"\n>> ERROR: {API_KEY_ENV} environment variable not set!\n")
    out.write(">> Get your OpenRouter API key at: https://openrouter.ai/keys\n")
    out.write(f">> Then run: export {API_KEY_ENV}=your_key_here\n\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cara-chat", description="Chat with an AI model from the console")
    parser.add_argument("--model", help="Model id, e.g. openrouter:mistralai/mistral-7b-instruct-v0.2")
    parser.add_argument("--system-prompt", help="Custom system prompt")
    parser.add_argument("--no-stream", dest="stream", action="store_false", help="Print the answer in one piece")
    parser.add_argument("--config", help="YAML file merged over the default configuration")
    return parser


async def _run(args: argparse.Namespace) -> None:
    config = Configuration(args.config)
    configure_logging(config.get_logging_config())

    model = args.model or config.get_default_model()
    context = ConversationContext.new(args.system_prompt or config.get_system_prompt())

    tools_config = config.get_tools_config()
    wikipedia_client = create_wikipedia_client(tools_config)
    registry = create_tool_registry(tools_config, wikipedia_client)

    print_header(sys.stdout, model, args.stream)
    try:
        async with LLMClient(config) as llm_client:
            orchestrator = build_orchestrator(config, llm_client)
            await chat_loop(orchestrator, registry, context, model=model, stream=args.stream)
    finally:
        await wikipedia_client.aclose()


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``cara-chat``."""
    args = build_parser().parse_args(argv)

    Configuration.load_env()
    if not os.getenv(API_KEY_ENV):
        print_api_key_error(sys.stdout)
        return 1

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        sys.stdout.write("\n>> Chat ended.\n\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
