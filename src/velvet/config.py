"""Configuration management for the Velvet chat client."""

import os
from typing import Any

import yaml
from dotenv import load_dotenv

from velvet.history.models import UserSettings
from velvet.llm.models import DEFAULT_PROVIDERS, ProviderConfig, ProviderType

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")

PROVIDER_KEY_MAP = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class Configuration:
    """Manages configuration and environment variables for the chat client."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = self._load_yaml_config(self.config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @property
    def active_provider(self) -> str:
        return self._config.get("llm", {}).get("active", "openrouter")

    def api_key_for(self, provider: str) -> str:
        """API key for any known provider from the environment, or empty."""
        env_key = PROVIDER_KEY_MAP.get(provider)
        return os.getenv(env_key, "") if env_key else ""

    def get_provider_configs(self) -> dict[ProviderType, ProviderConfig]:
        """Get endpoint and header configuration for every provider.

        Providers missing from YAML keep their built-in endpoint and headers.

        Raises:
            ValueError: If a provider entry is unknown or malformed.
        """
        providers = dict(DEFAULT_PROVIDERS)
        configured = self._config.get("llm", {}).get("providers", {}) or {}
        if not isinstance(configured, dict):
            raise ValueError("llm.providers must be a mapping in config.yaml")

        for name, entry in configured.items():
            try:
                provider_type = ProviderType(name)
            except ValueError as e:
                raise ValueError(
                    f"Unknown provider '{name}' in llm.providers"
                ) from e

            entry = entry or {}
            if not isinstance(entry, dict):
                raise ValueError(f"llm.providers.{name} must be a mapping")
            default = DEFAULT_PROVIDERS[provider_type]
            endpoint = entry.get("endpoint", default.endpoint)
            if not isinstance(endpoint, str) or not endpoint.startswith("http"):
                raise ValueError(
                    f"llm.providers.{name}.endpoint must be an http(s) URL"
                )

            headers = entry.get("headers", dict(default.headers))
            if not isinstance(headers, dict) or not all(
                isinstance(k, str) and isinstance(v, str)
                for k, v in headers.items()
            ):
                raise ValueError(
                    f"llm.providers.{name}.headers must map strings to strings"
                )

            providers[provider_type] = ProviderConfig(
                provider=provider_type, endpoint=endpoint, headers=headers
            )

        return providers

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming configuration from YAML.

        Returns:
            Streaming configuration dictionary with validated values.
        """
        streaming_config = self._config.get("streaming", {}) or {}
        flush = streaming_config.get("flush_trailing_line", True)
        if not isinstance(flush, bool):
            raise ValueError("streaming.flush_trailing_line must be a boolean")
        return {"flush_trailing_line": flush}

    def get_http_client_config(self) -> dict[str, Any]:
        """Get HTTP client configuration.

        A missing or null timeout leaves the request without a deadline.

        Raises:
            ValueError: If the timeout is not a positive number.
        """
        http_config = self._config.get("http_client", {}) or {}
        timeout = http_config.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, int | float):
                raise ValueError("http_client.timeout must be a number")
            if timeout <= 0:
                raise ValueError("http_client.timeout must be positive")
            timeout = float(timeout)
        return {"timeout": timeout}

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML.

        Returns:
            Logging configuration dictionary.
        """
        logging_config = self._config.get("logging", {}) or {}
        return {"level": str(logging_config.get("level", "INFO")).upper()}

    def get_default_settings(self) -> UserSettings:
        """Get the initial user settings from YAML."""
        llm_config = self._config.get("llm", {})
        return UserSettings(
            user_name=self._config.get("user", {}).get("name", "Guest"),
            api_provider=self.active_provider,
            model=llm_config.get("model", "mythomax-l2-13b"),
        )

    def get_client_options(self) -> dict[str, Any]:
        """Keyword arguments for StreamingCompletionClient."""
        return {
            "providers": self.get_provider_configs(),
            "timeout": self.get_http_client_config()["timeout"],
            "flush_trailing_line": self.get_streaming_config()[
                "flush_trailing_line"
            ],
        }
