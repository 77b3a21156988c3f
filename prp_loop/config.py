"""
Configuration Management
========================

Centralized configuration for the PRP loop.
Supports YAML configuration files with sensible defaults and environment
overrides (PRP_SESSION_DIR, PRP_HOURLY_LIMIT, LOG_LEVEL, LOG_FORMAT).

Circuit breaker thresholds are intentionally absent: they are a fixed
per-phase table in prp_loop.circuit_breaker.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from prp_loop.errors import InvalidConfigError

# Load environment variables from the .env file next to the package, not from CWD
_project_root = Path(__file__).parent.parent
load_dotenv(dotenv_path=_project_root / ".env")


VALID_LOG_FORMATS = ("json", "dev")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidConfigError(name, raw, "must be an integer")
    if value <= 0:
        raise InvalidConfigError(name, raw, "must be greater than zero")
    return value


@dataclass
class StorageConfig:
    """Configuration for persisted session state."""
    session_dir: str = field(default_factory=lambda: os.getenv(
        "PRP_SESSION_DIR",
        ".prp-session"
    ))

    @property
    def session_root(self) -> Path:
        return Path(self.session_dir)


@dataclass
class RateLimitConfig:
    """Configuration for the hourly call budget and provider cooldown."""
    hourly_limit: int = field(default_factory=lambda: _env_int("PRP_HOURLY_LIMIT", 100))
    window_minutes: int = 60
    cooldown_minutes: int = 300  # provider usage window is five hours


@dataclass
class HistoryConfig:
    """Configuration for bounded histories."""
    error_history_limit: int = 50
    status_history_count: int = 10  # blocks returned by read_status_history by default


@dataclass
class LoggingConfig:
    """Configuration for structured logging."""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "dev"))
    log_file: Optional[str] = None


@dataclass
class DashboardConfig:
    """Configuration for the read-only decision state API."""
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class Config:
    """Main configuration class."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidConfigError for out-of-range values."""
        if self.rate_limit.hourly_limit <= 0:
            raise InvalidConfigError("rate_limit.hourly_limit", self.rate_limit.hourly_limit, "must be greater than zero")
        if self.rate_limit.window_minutes <= 0:
            raise InvalidConfigError("rate_limit.window_minutes", self.rate_limit.window_minutes, "must be greater than zero")
        if self.rate_limit.cooldown_minutes <= 0:
            raise InvalidConfigError("rate_limit.cooldown_minutes", self.rate_limit.cooldown_minutes, "must be greater than zero")
        if self.history.error_history_limit <= 0:
            raise InvalidConfigError("history.error_history_limit", self.history.error_history_limit, "must be greater than zero")
        if self.history.status_history_count <= 0:
            raise InvalidConfigError("history.status_history_count", self.history.status_history_count, "must be greater than zero")
        if self.logging.format not in VALID_LOG_FORMATS:
            raise InvalidConfigError("logging.format", self.logging.format, f"must be one of {', '.join(VALID_LOG_FORMATS)}")
        if self.logging.level.upper() not in VALID_LOG_LEVELS:
            raise InvalidConfigError("logging.level", self.logging.level, f"must be one of {', '.join(VALID_LOG_LEVELS)}")
        if not 0 < self.dashboard.port < 65536:
            raise InvalidConfigError("dashboard.port", self.dashboard.port, "must be a valid TCP port")

    @classmethod
    def load_from_file(cls, config_path: Path) -> 'Config':
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML config file

        Returns:
            Config instance with values from file merged with defaults
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise InvalidConfigError(str(config_path), type(data).__name__, "top level must be a mapping")

        # Create config with defaults, then override with file values
        config = cls()

        # Override storage settings
        if 'storage' in data:
            if 'session_dir' in data['storage']:
                config.storage.session_dir = str(data['storage']['session_dir'])

        # Override rate limit settings
        if 'rate_limit' in data:
            for key in ('hourly_limit', 'window_minutes', 'cooldown_minutes'):
                if key in data['rate_limit']:
                    setattr(config.rate_limit, key, _as_int(f"rate_limit.{key}", data['rate_limit'][key]))

        # Override history settings
        if 'history' in data:
            for key in ('error_history_limit', 'status_history_count'):
                if key in data['history']:
                    setattr(config.history, key, _as_int(f"history.{key}", data['history'][key]))

        # Override logging settings
        if 'logging' in data:
            if 'level' in data['logging']:
                config.logging.level = str(data['logging']['level']).upper()
            if 'format' in data['logging']:
                config.logging.format = data['logging']['format']
            if 'log_file' in data['logging']:
                config.logging.log_file = data['logging']['log_file']

        # Override dashboard settings
        if 'dashboard' in data:
            if 'host' in data['dashboard']:
                config.dashboard.host = data['dashboard']['host']
            if 'port' in data['dashboard']:
                config.dashboard.port = _as_int("dashboard.port", data['dashboard']['port'])

        config.validate()
        return config

    @classmethod
    def load_default(cls) -> 'Config':
        """
        Load default configuration.

        Looks for config files in this order:
        1. .prp-loop.yaml in current directory
        2. .prp-loop.yaml in home directory
        3. Default values (no file)

        Returns:
            Config instance
        """
        current_dir_config = Path('.prp-loop.yaml')
        if current_dir_config.exists():
            return cls.load_from_file(current_dir_config)

        home_config = Path.home() / '.prp-loop.yaml'
        if home_config.exists():
            return cls.load_from_file(home_config)

        return cls()

    def to_yaml(self) -> str:
        """
        Convert configuration to YAML string.

        Returns:
            YAML representation of config
        """
        data = {
            'storage': {
                'session_dir': self.storage.session_dir,
            },
            'rate_limit': {
                'hourly_limit': self.rate_limit.hourly_limit,
                'window_minutes': self.rate_limit.window_minutes,
                'cooldown_minutes': self.rate_limit.cooldown_minutes,
            },
            'history': {
                'error_history_limit': self.history.error_history_limit,
                'status_history_count': self.history.status_history_count,
            },
            'logging': {
                'level': self.logging.level,
                'format': self.logging.format,
                'log_file': self.logging.log_file,
            },
            'dashboard': {
                'host': self.dashboard.host,
                'port': self.dashboard.port,
            },
        }

        return yaml.dump(data, default_flow_style=False, sort_keys=False)


def _as_int(key: str, value) -> int:
    if isinstance(value, bool):
        raise InvalidConfigError(key, value, "must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(key, value, "must be an integer")
