"""
Configuration management for services.
"""

import json
import os
from typing import Any

import yaml

from dotenv import load_dotenv


class ServiceConfig:
    """Configuration management for services using environment variables."""

    def __init__(self) -> None:
        """Initialize configuration by loading environment variables."""
        # Always load .env from the project root (where app.py is located)
        env_path = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.env"))
        load_dotenv(dotenv_path=env_path, override=True)
        self.config: dict[str, Any] = {}
        self.tuning_config: dict[str, Any] = {}
        self.tuning_config_path = os.getenv(
            "LIVE_CONFIG_PATH",
            os.path.join(os.path.dirname(__file__), "../config/live.yaml"),
        )
        self.load_from_env()
        self.load_tuning_config()

    def load_from_env(self) -> None:
        """Load configuration from environment variables."""
        self.config = {
            "database_url": os.getenv("DATABASE_URL", "sqlite:///./liveclass.db"),
            "store_driver": os.getenv("STORE_DRIVER", "database"),
            "redis_url": os.getenv("REDIS_URL"),
            "secret_key": os.getenv("SECRET_KEY", "supersecret"),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "allowed_origins": json.loads(os.getenv("ALLOWED_ORIGINS", '["*"]')),
            "sync_retry_attempts": int(os.getenv("SYNC_RETRY_ATTEMPTS", "5")),
            "sync_retry_delay": float(os.getenv("SYNC_RETRY_DELAY", "0.5")),
            "group_move_flush_interval": float(os.getenv("GROUP_MOVE_FLUSH_INTERVAL", "0.1")),
            "transaction_max_attempts": int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5")),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Value of a setting loaded from the environment, or default."""
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Override one setting at runtime (tests, embedded servers)."""
        self.config[key] = value

    def load_tuning_config(self) -> None:
        """Load live-session tuning configuration from YAML file."""
        path = os.path.abspath(self.tuning_config_path)
        try:
            with open(path, "r", encoding="utf-8") as stream:
                data = yaml.safe_load(stream) or {}
        except FileNotFoundError:
            data = {}
        self.tuning_config = data

    def get_tuning_value(self, path: str, default: Any = None) -> Any:
        """Retrieve a tuning value via dotted path."""
        env_override_key = f"LIVE_FLAG_{path.replace('.', '_').upper()}"
        env_value = os.getenv(env_override_key)
        if env_value is not None:
            return self._coerce_env_value(env_value, default)

        node: Any = self.tuning_config
        for part in path.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node if node is not None else default

    def set_tuning_config(self, tuning_config: dict[str, Any]) -> None:
        """Override tuning configuration (useful for tests)."""
        self.tuning_config = tuning_config

    @staticmethod
    def _coerce_env_value(raw: str, default: Any) -> Any:
        lowered = raw.lower()
        if lowered in {"true", "false"}:
            return lowered == "true"
        if lowered.replace(".", "", 1).isdigit():
            try:
                return float(lowered) if "." in lowered else int(lowered)
            except ValueError:
                return raw
        return raw or default


# Global configuration instance
config = ServiceConfig()
