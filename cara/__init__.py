"""Cara: LLM chat orchestration engine with tool calling and streaming delivery."""

__version__ = "0.1.0"
