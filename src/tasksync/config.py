"""Configuration management for tasksync."""

import logging
import os
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import yaml


logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.yaml"

# Environment variable -> (config field, converter)
ENV_OVERRIDES = {
    "TASKSYNC_DATA_DIR": ("data_dir", str),
    "API_BASE_URL": ("api_base_url", str),
    "SYNC_MAX_RETRY": ("max_retries", int),
    "SYNC_BATCH_SIZE": ("batch_size", int),
}


@dataclass
class ConfigModel:
    """Global configuration model for tasksync."""

    # File paths
    data_dir: str = "~/.tasksync"
    database_file: str = "tasks.db"

    # Remote authority
    api_base_url: str = "http://localhost:3000/api"
    connectivity_timeout: float = 5.0  # seconds
    batch_timeout: float = 15.0  # seconds

    # Sync behaviour
    max_retries: int = 3
    batch_size: int = 50
    auto_sync: bool = False
    sync_interval: int = 300  # seconds

    # Local API server
    server_host: str = "127.0.0.1"
    server_port: int = 8080

    log_level: str = "INFO"

    def __post_init__(self):
        """Validate values and prepare the data directory."""
        self.data_dir = os.path.expanduser(str(self.data_dir))

        if int(self.max_retries) < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if int(self.batch_size) < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if float(self.connectivity_timeout) <= 0 or float(self.batch_timeout) <= 0:
            raise ValueError("timeouts must be positive")
        if int(self.sync_interval) < 1:
            raise ValueError(f"sync_interval must be at least 1, got {self.sync_interval}")

        self.max_retries = int(self.max_retries)
        self.batch_size = int(self.batch_size)
        self.connectivity_timeout = float(self.connectivity_timeout)
        self.batch_timeout = float(self.batch_timeout)
        self.sync_interval = int(self.sync_interval)

        Path(self.data_dir).mkdir(parents=True, exist_ok=True)

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        return yaml.dump(asdict(self), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML, ignoring unknown keys."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping")

        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        return cls(**{k: v for k, v in data.items() if k in known})

    def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> "ConfigModel":
        """Return a copy with environment variable overrides applied."""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = asdict(self)
        for var, (name, convert) in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw:
                data[name] = convert(raw)
        return ConfigModel(**data)

    def get_database_path(self) -> Path:
        """Get the sqlite database path."""
        return Path(self.data_dir) / self.database_file

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / CONFIG_FILE_NAME


class Config:
    """Configuration manager for tasksync."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Load configuration from file or create default."""
        if cls._instance is not None and config_path is None:
            return cls._instance

        if config_path is not None and config_path.exists():
            config = cls._read(config_path)
        else:
            config = ConfigModel().with_env_overrides()
            if config_path is None:
                config_path = config.get_config_path()

            if config_path.exists():
                config = cls._read(config_path)
            else:
                cls.save(config, config_path)
                logger.info(f"Created default configuration at {config_path}")

        cls._instance = config
        return config

    @classmethod
    def _read(cls, config_path: Path) -> ConfigModel:
        try:
            config = ConfigModel.from_yaml(config_path.read_text()).with_env_overrides()
            logger.debug(f"Loaded configuration from {config_path}")
            return config
        except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}. Using defaults.")
            return ConfigModel().with_env_overrides()

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            config_path.write_text(config.to_yaml())
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
    def reload(cls) -> ConfigModel:
        """Reload configuration from file."""
        cls._instance = None
        return cls.load()


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    Config.save(config, config_path)


def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to the configuration directory
    """
    config = get_config()
    return Path(config.data_dir)
