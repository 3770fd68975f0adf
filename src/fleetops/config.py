"""Configuration for fleetops.

Settings come from three layers, later layers winning:

1. Built-in defaults
2. An optional YAML file (default ``~/.fleetops/config.yml``)
3. ``FLEETOPS_*`` environment variables

Example ``config.yml``::

    parallel: 20
    command_timeout: 600
    db_path: /var/lib/fleetops/logs.db
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".fleetops"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "logs.db")

ENV_PREFIX = "FLEETOPS_"
CONFIG_PATH_ENV = "FLEETOPS_CONFIG"

_INT_FIELDS = ("parallel",)
_FLOAT_FIELDS = ("command_timeout", "check_interval", "idle_threshold", "minimum_uptime")
# Fields that may be zero
_NON_NEGATIVE_FIELDS = ("minimum_uptime",)


@dataclass
class FleetConfig:
    """Runtime settings.

    Attributes:
        parallel: Number of hosts running a command at once
        command_timeout: Per-command timeout in seconds
        check_interval: Seconds between idle checks of the log service
        idle_threshold: Idle seconds before the log service is shut down
        minimum_uptime: Seconds after start during which no shutdown is decided
        db_path: SQLite database for activity logs
        text_log_path: Optional plain-text mirror of activity logs
        credential_env: Environment variable holding the sudo password
    """

    parallel: int = 10
    command_timeout: float = 300
    check_interval: float = 300
    idle_threshold: float = 300
    minimum_uptime: float = 30
    db_path: str = DEFAULT_DB_PATH
    text_log_path: str | None = None
    credential_env: str = "SUDO_PASSWORD"

    def __post_init__(self) -> None:
        for name in _INT_FIELDS:
            setattr(self, name, _coerce(name, getattr(self, name), int))
        for name in _FLOAT_FIELDS:
            setattr(self, name, _coerce(name, getattr(self, name), float))

        for name in _INT_FIELDS + _FLOAT_FIELDS:
            value = getattr(self, name)
            if name in _NON_NEGATIVE_FIELDS:
                if value < 0:
                    raise ConfigurationError(f"{name} must not be negative, got {value}")
            elif value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FleetConfig":
        """Create from dictionary.

        Raises:
            ConfigurationError: If the mapping has unknown keys or bad values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**dict(data))

    def format_text(self) -> str:
        """Format configuration as human-readable text."""
        return "\n".join(f"{key}: {value}" for key, value in self.to_dict().items())


def _coerce(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for f in fields(FleetConfig):
        value = env.get(f"{ENV_PREFIX}{f.name.upper()}")
        if value:
            overrides[f.name] = value
    return overrides


def resolve_config_path(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Pick the configuration file: explicit path, then $FLEETOPS_CONFIG, then the default."""
    env = os.environ if env is None else env
    return Path(path or env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH).expanduser()


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> FleetConfig:
    """Load configuration from file and environment.

    Args:
        path: YAML file to read; defaults to $FLEETOPS_CONFIG or
            ~/.fleetops/config.yml. A missing default file is not an error.
        env: Environment mapping (defaults to os.environ)

    Returns:
        The merged FleetConfig

    Raises:
        ConfigurationError: If an explicit file is missing, the YAML is
            invalid or a value is out of range
    """
    env = os.environ if env is None else env
    explicit = path is not None or bool(env.get(CONFIG_PATH_ENV))
    config_path = resolve_config_path(path, env)

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open() as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping")
        data.update(loaded)
        logger.debug(f"Loaded configuration from {config_path}")
    elif explicit:
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    data.update(_env_overrides(env))
    return FleetConfig.from_dict(data)


def save_config(
    config: FleetConfig,
    path: str | Path | None = None,
    overwrite: bool = False,
) -> Path:
    """Write configuration as YAML and return the path written.

    Args:
        config: Settings to write
        path: Target file; resolved like load_config when omitted
        overwrite: Replace an existing file

    Raises:
        ConfigurationError: If the file exists and overwrite is False
    """
    config_path = resolve_config_path(path)
    if config_path.exists() and not overwrite:
        raise ConfigurationError(f"Configuration file already exists: {config_path}")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Saved configuration to {config_path}")
    return config_path
