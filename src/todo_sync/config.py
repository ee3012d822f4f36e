"""Configuration management for todo-sync."""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .sync.models import SyncMode
from .sync.settings import SyncSettings


logger = logging.getLogger(__name__)

REMOTE_KINDS = ("file", "http")


@dataclass
class ConfigModel:
    """Global configuration model for todo-sync."""

    # File paths
    data_dir: str = "~/.todo_sync"

    # Storage
    storage_mode: str = "local"  # local, cloud
    remote_kind: str = "file"  # file, http
    remote_path: str = "~/.todo_sync/remote/todos.json"
    remote_base_url: str = "https://graph.microsoft.com/v1.0"
    token_env_var: str = "TODO_SYNC_TOKEN"

    # Sync behavior
    debounce_ms: int = 1000
    network_timeout_seconds: float = 10.0
    max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    tombstone_retention_days: int = 30

    # Notifications
    notification_interval_minutes: int = 30

    log_level: str = "INFO"

    def __post_init__(self):
        """Post-initialization setup."""
        self.data_dir = os.path.expanduser(self.data_dir)
        self.remote_path = os.path.expanduser(self.remote_path)

        if self.storage_mode not in [m.value for m in SyncMode]:
            logger.warning(f"Unknown storage_mode {self.storage_mode!r}; using local")
            self.storage_mode = SyncMode.LOCAL_ONLY.value
        if self.remote_kind not in REMOTE_KINDS:
            logger.warning(f"Unknown remote_kind {self.remote_kind!r}; using file")
            self.remote_kind = "file"

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        return yaml.dump(data, default_flow_style=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        for key in sorted(set(data) - known):
            logger.warning(f"Ignoring unknown configuration key {key!r}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def sync_settings(self) -> SyncSettings:
        """Validated orchestrator settings built from this config."""
        return SyncSettings(
            debounce_ms=self.debounce_ms,
            network_timeout_seconds=self.network_timeout_seconds,
            max_attempts=self.max_attempts,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            tombstone_retention_days=self.tombstone_retention_days,
        )

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / "config.yaml"

    def get_state_path(self) -> Path:
        """Get the path of the local key/value state file."""
        return Path(self.data_dir) / "state.json"


class Config:
    """Configuration manager for todo-sync."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Load configuration from file or create default."""
        if cls._instance is not None:
            return cls._instance

        config = ConfigModel()

        if config_path is None:
            config_path = config.get_config_path()
        config_path = Path(config_path)

        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    yaml_content = f.read()
                config = ConfigModel.from_yaml(yaml_content)
                logger.debug(f"Loaded configuration from {config_path}")
            except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}; using defaults")
        else:
            cls.save(config, config_path)
            logger.info(f"Created default configuration at {config_path}")

        cls._instance = config
        return config

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()
        config_path = Path(config_path)

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(config.to_yaml())
            logger.debug(f"Configuration saved to {config_path}")
        except OSError as e:
            logger.error(f"Failed to save config to {config_path}: {e}")

    @classmethod
    def get(cls) -> ConfigModel:
        """Get the current configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reload(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Reload configuration from file."""
        cls._instance = None
        return cls.load(config_path)


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    Config.save(config, config_path)
