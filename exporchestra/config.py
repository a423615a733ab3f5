"""
Configuration management for exporchestra.

Configuration lives in $EXPORCHESTRA_HOME/config.yaml (default
~/.config/exporchestra/config.yaml). An optional env_file is loaded into
the process environment with python-dotenv.

Example config.yaml:

    store_path: ~/.config/exporchestra/store
    playbooks_dir: ~/.config/exporchestra/playbooks
    max_fan_out: 4
    step_timeout_s: 30
    max_attempts: 3
    backoff_base_s: 0.5
    backoff_max_s: 10
    log_level: INFO
    log_format: structured
    log_file: ~/.config/exporchestra/logs/exporchestra.log
    env_file: ~/.config/exporchestra/.env
    credit_budget: null
    fail_fast: false
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from exporchestra.errors import ConfigError

LOG_FORMATS = ("structured", "pretty")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_exporchestra_home() -> Path:
    """Config directory: $EXPORCHESTRA_HOME or ~/.config/exporchestra."""
    home = os.environ.get("EXPORCHESTRA_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/exporchestra").expanduser()


@dataclass
class ExporchestraConfig:
    """
    Runtime configuration.

    Attributes:
        store_path: Directory of the file-based artifact store
        playbooks_dir: Directory of extra declarative playbooks
        max_fan_out: Maximum steps running concurrently in one experience
        step_timeout_s: Default per-attempt timeout
        max_attempts: Upper bound on attempts for any step
        backoff_base_s: Delay before the first retry
        backoff_max_s: Upper bound of exponential backoff
        log_level: Logging level
        log_format: "structured" (JSON) or "pretty" (rich console)
        log_file: Path of the log file
        env_file: Optional dotenv file loaded at startup
        credit_budget: When set, steps are authorized against this credit budget
        fail_fast: Skip steps not yet started once a required step fails
    """
    store_path: str = "~/.config/exporchestra/store"
    playbooks_dir: Optional[str] = None
    max_fan_out: int = 4
    step_timeout_s: float = 30.0
    max_attempts: int = 3
    backoff_base_s: float = 0.5
    backoff_max_s: float = 10.0
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: str = "~/.config/exporchestra/logs/exporchestra.log"
    env_file: Optional[str] = None
    credit_budget: Optional[int] = None
    fail_fast: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if not isinstance(self.max_fan_out, int) or self.max_fan_out < 1:
            raise ConfigError(f"max_fan_out must be a positive integer, got {self.max_fan_out!r}")
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be a positive integer, got {self.max_attempts!r}")
        if self.step_timeout_s <= 0:
            raise ConfigError(f"step_timeout_s must be positive, got {self.step_timeout_s!r}")
        if self.backoff_base_s < 0 or self.backoff_max_s < 0:
            raise ConfigError("backoff_base_s and backoff_max_s must be >= 0")
        if self.backoff_max_s < self.backoff_base_s:
            raise ConfigError("backoff_max_s must be >= backoff_base_s")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")
        if self.credit_budget is not None and self.credit_budget < 0:
            raise ConfigError("credit_budget must be >= 0")
        if not isinstance(self.fail_fast, bool):
            raise ConfigError(f"fail_fast must be true or false, got {self.fail_fast!r}")

    @property
    def store_dir(self) -> Path:
        return Path(self.store_path).expanduser()

    @property
    def log_path(self) -> Path:
        return Path(self.log_file).expanduser()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExporchestraConfig":
        """
        Build a config from a mapping.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid config value: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(config_path: Optional[Path] = None) -> ExporchestraConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Explicit config file. Defaults to $EXPORCHESTRA_HOME/config.yaml

    Returns:
        ExporchestraConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_exporchestra_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"exporchestra config.yaml not found at {config_path}. Run 'exporchestra init' first."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = ExporchestraConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config


def write_default_config(home: Path, force: bool = False) -> Path:
    """
    Write a default config.yaml and an empty .env into home.

    Raises:
        FileExistsError: If config.yaml exists and force is False
    """
    config_path = home / "config.yaml"
    if config_path.exists() and not force:
        raise FileExistsError(f"Config already exists at {config_path}")

    home.mkdir(parents=True, exist_ok=True)
    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# Environment for exporchestra tools\n")

    defaults = ExporchestraConfig(
        store_path=str(home / "store"),
        playbooks_dir=str(home / "playbooks"),
        log_file=str(home / "logs" / "exporchestra.log"),
        env_file=str(env_path),
    )
    config_path.write_text(yaml.safe_dump(defaults.to_dict(), sort_keys=False))
    return config_path
