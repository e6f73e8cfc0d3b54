"""Configuration management for the chat engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, cast

import yaml
from dotenv import load_dotenv

from cara.chat.models import DEFAULT_SYSTEM_PROMPT

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")
CONFIG_ENV_VAR = "CARA_CONFIG"

PROVIDER_KEY_MAP = {
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class Configuration:
    """Default YAML configuration, an optional override file and API keys from the environment."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None, load_env: bool = True) -> None:
        """Load ``config.yaml`` and deep-merge the override file, if any.

        The override path comes from ``config_path`` or the ``CARA_CONFIG``
        environment variable.
        """
        if load_env:
            self.load_env()

        self._default_config = self._load_yaml_config(DEFAULT_CONFIG_PATH)
        override_path = config_path or os.getenv(CONFIG_ENV_VAR)
        if override_path:
            self._config = self._deep_merge(self._default_config, self._load_yaml_config(Path(override_path)))
        else:
            self._config = self._default_config

    @classmethod
    def from_dict(cls, overrides: dict[str, Any]) -> Configuration:
        """Build a configuration from the defaults plus in-memory overrides."""
        configuration = cls(load_env=False)
        configuration._config = configuration._deep_merge(configuration._default_config, overrides)
        return configuration

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(path: Path) -> dict[str, Any]:
        with open(path) as file:
            config = yaml.safe_load(file) or {}
            if not isinstance(config, dict):
                raise ValueError(f"Configuration file {path} must contain a dictionary")
            return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value

        return result

    def get_config_dict(self) -> dict[str, Any]:
        return self._config

    @property
    def active_provider(self) -> str:
        return self._config.get("llm", {}).get("active", "openrouter")

    @property
    def llm_api_key(self) -> str:
        """Get the API key for the active LLM provider.

        Raises:
            ValueError: If the API key is not found in environment variables.
        """
        env_key = PROVIDER_KEY_MAP.get(self.active_provider)
        if not env_key:
            raise ValueError(f"Unknown provider '{self.active_provider}' - no API key mapping found")

        api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(
                f"API key '{env_key}' not found in environment variables for provider '{self.active_provider}'"
            )

        return api_key

    def get_llm_config(self) -> dict[str, Any]:
        """Get active LLM provider configuration.

        Returns:
            Provider settings: ``base_url``, ``model`` and pass-through parameters.
        """
        providers = self._config.get("llm", {}).get("providers", {})

        if self.active_provider not in providers:
            raise ValueError(f"Active provider '{self.active_provider}' not found in providers config")

        provider_config = providers[self.active_provider]
        if not provider_config.get("base_url"):
            raise ValueError(f"Provider '{self.active_provider}' has no base_url")
        if not provider_config.get("model"):
            raise ValueError(f"Provider '{self.active_provider}' has no model")

        return provider_config

    def get_default_model(self) -> str:
        return self.get_llm_config()["model"]

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool settings with validated defaults."""
        pool_config = self._config.get("connection_pool", {})

        config = {
            "max_connections": pool_config.get("max_connections", 50),
            "max_keepalive_connections": pool_config.get("max_keepalive_connections", 20),
            "keepalive_expiry_seconds": pool_config.get("keepalive_expiry_seconds", 300.0),
            "request_timeout_seconds": pool_config.get("request_timeout_seconds", 30.0),
        }

        if config["max_connections"] < 1:
            raise ValueError("max_connections must be at least 1")
        if config["max_keepalive_connections"] < 0:
            raise ValueError("max_keepalive_connections must not be negative")
        if config["request_timeout_seconds"] <= 0:
            raise ValueError("request_timeout_seconds must be positive")

        return config

    def get_chat_service_config(self) -> dict[str, Any]:
        return self._config.get("chat", {}).get("service", {})

    def get_system_prompt(self) -> str:
        return self.get_chat_service_config().get("system_prompt") or DEFAULT_SYSTEM_PROMPT

    def get_max_tool_rounds(self) -> int:
        """Get the maximum number of tool rounds allowed per turn.

        Returns:
            Maximum number of tool rounds (default: 5).
        """
        max_rounds = self.get_chat_service_config().get("max_tool_rounds", 5)

        if not isinstance(max_rounds, int) or isinstance(max_rounds, bool) or max_rounds < 1:
            raise ValueError("max_tool_rounds must be a positive integer")

        return max_rounds

    def get_retry_config(self) -> dict[str, Any]:
        """Get round retry settings.

        Returns:
            ``max_attempts`` (total attempts, >= 1) and ``delay_seconds`` (>= 0).
        """
        retry_config = self.get_chat_service_config().get("retry", {})
        max_attempts = retry_config.get("max_attempts", 10)
        delay = retry_config.get("delay_seconds", 1.0)

        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")
        if not isinstance(delay, (int, float)) or delay < 0:
            raise ValueError("retry.delay_seconds must not be negative")

        return {"max_attempts": max_attempts, "delay_seconds": float(delay)}

    def get_tool_timeout(self) -> float | None:
        """Get the per-tool execution timeout in seconds; ``None`` disables it."""
        timeout = self.get_chat_service_config().get("tool_timeout_seconds", 30.0)
        if timeout is None:
            return None
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("tool_timeout_seconds must be positive")
        return float(timeout)

    def get_event_queue_size(self) -> int:
        size = self.get_chat_service_config().get("event_queue_size", 64)
        if not isinstance(size, int) or size < 1:
            raise ValueError("event_queue_size must be a positive integer")
        return size

    def get_chat_logging_config(self) -> dict[str, Any]:
        """Get truncation settings for chat and tool logging."""
        logging_config = self.get_chat_service_config().get("logging", {})
        return {
            "llm_reply_truncate_length": logging_config.get("llm_reply_truncate_length", 500),
            "tool_arguments_truncate": logging_config.get("tool_arguments_truncate", 500),
        }

    def get_websocket_config(self) -> dict[str, Any]:
        websocket_config = self._config.get("chat", {}).get("websocket", {})
        port = websocket_config.get("port", 8000)
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError("websocket port must be between 1 and 65535")
        return {"host": websocket_config.get("host", "localhost"), "port": port}

    def get_tools_config(self) -> dict[str, Any]:
        return self._config.get("tools", {})

    def get_logging_config(self) -> dict[str, Any]:
        return self._config.get("logging", {})
