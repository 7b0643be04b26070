"""
Configuration management for ignitor.

Loads $IGNITOR_HOME/config.yaml (default ~/.config/ignitor/config.yaml).
An optional `env_file` is loaded into the environment so chain client
factories can read RPC endpoints and keys from it.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


class ConfigError(Exception):
    """Configuration validation error."""
    pass


JOURNAL_BACKENDS = ("file", "sqlite", "memory")
LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_ignitor_home() -> Path:
    """Config home: $IGNITOR_HOME or ~/.config/ignitor."""
    home = os.environ.get("IGNITOR_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/ignitor").expanduser()


@dataclass
class IgnitorConfig:
    """Settings for deployments run from the CLI."""
    journal_backend: str = "file"
    journal_path: str = "~/.local/share/ignitor/journal"
    definitions_dir: str = "modules"
    chain_client: str = "simulated"
    default_sender: Optional[str] = None
    max_workers: int = 4
    submit_attempts: int = 5
    poll_attempts: int = 5
    backoff_initial_s: float = 0.5
    backoff_multiplier: float = 2.0
    backoff_max_s: float = 30.0
    poll_interval_s: float = 2.0
    poll_timeout_s: float = 300.0
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.journal_backend not in JOURNAL_BACKENDS:
            raise ConfigError(
                f"journal_backend must be one of {', '.join(JOURNAL_BACKENDS)}, "
                f"got '{self.journal_backend}'"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be 'pretty' or 'structured', got '{self.log_format}'")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        for name in ("max_workers", "submit_attempts", "poll_attempts"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for name in ("backoff_initial_s", "backoff_max_s", "poll_interval_s", "poll_timeout_s"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{name} must be a non-negative number, got {value!r}")
        if self.backoff_multiplier < 1:
            raise ConfigError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")

    @property
    def journal_location(self) -> Path:
        return Path(self.journal_path).expanduser()

    @property
    def definitions_path(self) -> Path:
        """Definitions directory; relative paths are taken from IGNITOR_HOME."""
        path = Path(self.definitions_dir).expanduser()
        if not path.is_absolute():
            path = get_ignitor_home() / path
        return path

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IgnitorConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        config = cls(**data)
        config.validate()
        return config


def load_config(config_path: Optional[Path] = None) -> IgnitorConfig:
    """
    Load ignitor configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $IGNITOR_HOME/config.yaml

    Returns:
        IgnitorConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_ignitor_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"ignitor config.yaml not found at {config_path}. Run 'ignitor init'.")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = IgnitorConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config
