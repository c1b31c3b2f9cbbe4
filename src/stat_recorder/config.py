"""
Configuration loading

Reads the TOML configuration into dataclasses. Every key is optional;
paths support environment variable and ~ expansion.

    [app]
    name = "stat-recorder"

    [recorder]
    file_dir = "${HOME}/stat-recorder/data"
    flush_interval = 60.0
    max_cache_size = 10000
    eviction_fraction = 0.25
    utc_dates = false
    archive_workers = 2
    archive_max_attempts = 5
    shutdown_timeout = 5.0

    [ip_filter]
    enabled = true
    allow_localhost = true
    config_path = "./config/ips.toml"
    check_interval = 5.0
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = './config/stat-recorder.toml'


def expand_path(value: str) -> Path:
    """Expand environment variables and ~ in a configured path"""
    return Path(os.path.expanduser(os.path.expandvars(str(value))))


@dataclass
class RecorderConfig:
    """Write buffer, scheduler and archive settings"""
    file_dir: Path = Path('./data/statistics')
    flush_interval: float = 60.0
    max_cache_size: int = 10000
    eviction_fraction: float = 0.25
    utc_dates: bool = False
    archive_workers: int = 2
    archive_max_attempts: int = 5
    shutdown_timeout: float = 5.0

    def validate(self):
        if self.flush_interval <= 0:
            raise ConfigError("recorder.flush_interval must be positive")
        if self.max_cache_size < 0:
            raise ConfigError("recorder.max_cache_size must not be negative")
        if not 0 < self.eviction_fraction <= 1:
            raise ConfigError("recorder.eviction_fraction must be in (0, 1]")
        if self.archive_workers < 1:
            raise ConfigError("recorder.archive_workers must be at least 1")
        if self.archive_max_attempts < 0:
            raise ConfigError("recorder.archive_max_attempts must not be negative")
        if self.shutdown_timeout <= 0:
            raise ConfigError("recorder.shutdown_timeout must be positive")


@dataclass
class IpFilterConfig:
    """Access guard settings"""
    enabled: bool = True
    allow_localhost: bool = True
    config_path: Path = Path('./config/ips.toml')
    check_interval: float = 5.0

    def validate(self):
        if self.check_interval <= 0:
            raise ConfigError("ip_filter.check_interval must be positive")


@dataclass
class AppConfig:
    name: str = 'stat-recorder'
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    ip_filter: IpFilterConfig = field(default_factory=IpFilterConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        """Build and validate a config from parsed TOML."""
        app_section = _section(data, 'app')
        name = app_section.get('name', cls.name)
        if not isinstance(name, str) or not name:
            raise ConfigError("app.name must be a non-empty string")

        config = cls(
            name=name,
            recorder=_build(RecorderConfig, 'recorder', _section(data, 'recorder')),
            ip_filter=_build(IpFilterConfig, 'ip_filter', _section(data, 'ip_filter')),
        )
        config.recorder.validate()
        config.ip_filter.validate()
        return config


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    where = f"{section}.{key}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where} must be true or false")
        return value
    if isinstance(default, int) and not isinstance(default, bool):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where} must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where} must be a number")
        return float(value)
    if isinstance(default, Path):
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{where} must be a path string")
        return expand_path(value)
    return value


def _build(cls, section: str, values: Dict[str, Any]):
    known = {f.name: f for f in fields(cls)}
    unknown = set(values) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in [{section}]: {', '.join(sorted(unknown))}")

    defaults = cls()
    kwargs = {}
    for name in known:
        if name in values:
            kwargs[name] = _coerce(section, name, values[name], getattr(defaults, name))
    return cls(**kwargs)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from a TOML file.

    Raises:
        ConfigError: file missing, unparseable or invalid
    """
    path = Path(path or DEFAULT_CONFIG_PATH)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = toml.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"Error loading configuration {path}: {e}") from e

    config = AppConfig.from_dict(data)
    logger.info(f"Loaded configuration from {path}")
    return config
