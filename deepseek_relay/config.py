"""Configuration management for the DeepSeek relay."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from deepseek_relay.llm.models import DEFAULT_API_URL

logger = logging.getLogger(__name__)

API_KEY_ENV = "DEEPSEEK_API_KEY"


class Configuration:
    """Manages configuration and environment variables for the relay."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self._config = self._load_yaml_config(config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(
        self, config_path: str | os.PathLike[str] | None
    ) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = os.path.join(os.path.dirname(__file__), "config.yaml")
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @property
    def llm_api_key(self) -> str:
        """Get the API key from the environment.

        Returns:
            The API key, or an empty string when unset. An empty key blocks
            streaming until the user provides one.
        """
        return os.getenv(API_KEY_ENV, "").strip()

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_llm_config(self) -> dict[str, Any]:
        """Get LLM endpoint configuration from YAML.

        Returns:
            Dictionary with ``model`` and ``default_api_url``.

        Raises:
            ValueError: If the model is not configured.
        """
        llm_config = self._config.get("llm", {})
        if "model" not in llm_config:
            raise ValueError(
                "llm.model must be explicitly configured in config.yaml"
            )
        return {
            "model": llm_config["model"],
            "default_api_url": llm_config.get("default_api_url", DEFAULT_API_URL),
        }

    def get_http_client_config(self) -> dict[str, Any]:
        """Get HTTP client timeouts.

        Returns:
            HTTP client configuration dictionary with validated values.

        Raises:
            ValueError: If required HTTP client parameters are missing or invalid.
        """
        http_config = self._config.get("llm", {}).get("http_client", {})

        required_keys = [
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
        ]
        for key in required_keys:
            if key not in http_config:
                raise ValueError(
                    f"llm.http_client.{key} must be explicitly configured "
                    "in config.yaml"
                )
            if http_config[key] <= 0:
                raise ValueError(f"llm.http_client.{key} must be positive")

        return {key: float(http_config[key]) for key in required_keys}

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming deadlines.

        Returns:
            Dictionary with ``request_timeout``, ``inactivity_timeout`` and
            ``history_limit`` (None means unlimited).

        Raises:
            ValueError: If required streaming parameters are missing or invalid.
        """
        streaming_config = self._config.get("streaming", {})

        for key in ["request_timeout", "inactivity_timeout"]:
            if key not in streaming_config:
                raise ValueError(
                    f"streaming.{key} must be explicitly configured in config.yaml"
                )

        request_timeout = streaming_config["request_timeout"]
        inactivity_timeout = streaming_config["inactivity_timeout"]
        history_limit = streaming_config.get("history_limit")

        if request_timeout <= 0:
            raise ValueError("streaming.request_timeout must be positive")
        if inactivity_timeout <= 0:
            raise ValueError("streaming.inactivity_timeout must be positive")
        if inactivity_timeout > request_timeout:
            raise ValueError(
                "streaming.inactivity_timeout must be <= streaming.request_timeout"
            )
        if history_limit is not None and (
            not isinstance(history_limit, int) or history_limit < 0
        ):
            raise ValueError("streaming.history_limit must be a non-negative integer")

        return {
            "request_timeout": float(request_timeout),
            "inactivity_timeout": float(inactivity_timeout),
            "history_limit": history_limit,
        }

    def get_runtime_config(self) -> dict[str, Any]:
        """Get worker runtime configuration.

        Raises:
            ValueError: If shutdown_grace is missing or negative.
        """
        runtime_config = self._config.get("runtime", {})
        if "shutdown_grace" not in runtime_config:
            raise ValueError(
                "runtime.shutdown_grace must be explicitly configured in config.yaml"
            )
        if runtime_config["shutdown_grace"] < 0:
            raise ValueError("runtime.shutdown_grace must be non-negative")
        return {"shutdown_grace": float(runtime_config["shutdown_grace"])}

    def get_user_config_path(self) -> str:
        """Get the path of the persisted user settings file."""
        return self._config.get("user_config", {}).get("path", "user.yaml")

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging", {})


class UserConfig(BaseModel):
    """User-editable settings; absent values fall back to config.yaml defaults."""
    api_key: str | None = None
    api_url: str | None = None


class UserConfigStore:
    """Loads and saves ``UserConfig`` under the ``user`` section of a YAML file.

    Other top-level sections of the file are preserved on save.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)

    def _read_document(self) -> dict[str, Any]:
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path) as file:
            document = yaml.safe_load(file) or {}
        if not isinstance(document, dict):
            raise ValueError(
                f"Config file must be YAML dict, got {type(document)}"
            )
        return document

    def load(self) -> UserConfig:
        """Load user settings; missing or unreadable files yield defaults."""
        try:
            document = self._read_document()
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load user config: {e}")
            return UserConfig()

        user_section = document.get("user")
        if not user_section:
            logger.info("No user configuration found, using defaults")
            return UserConfig()

        try:
            user_config = UserConfig.model_validate(user_section)
        except ValidationError as e:
            logger.warning(f"Invalid user config in {self.config_path}: {e}")
            return UserConfig()

        logger.info(f"Loaded user configuration from {self.config_path}")
        return user_config

    def save(self, api_key: str, api_url: str) -> bool:
        """Persist user settings; blank values are stored as absent.

        Returns:
            True when the file was written. Failures are logged, not raised.
        """
        try:
            document = self._read_document()
        except (OSError, ValueError, yaml.YAMLError):
            document = {"plugin": {}}

        document["user"] = UserConfig(
            api_key=api_key if api_key.strip() else None,
            api_url=api_url if api_url.strip() else None,
        ).model_dump(exclude_none=True)

        try:
            with open(self.config_path, "w") as file:
                yaml.safe_dump(document, file, sort_keys=False)
        except OSError as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")
            return False

        logger.info(f"User configuration saved successfully to {self.config_path}")
        return True
