"""
Configuration for the CloudPRNT print queue

Settings come from an optional YAML file, then CLOUDPRNT_* environment
variables override individual keys.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from ..core.exceptions import ConfigurationError
from ..models.printer import PrinterEndpoint, parse_bool


ENV_PREFIX = "CLOUDPRNT_"
BACKOFF_STRATEGIES = ("fixed", "exponential")


@dataclass
class Settings:
    """Runtime settings for the server, scheduler and CLI."""

    database_url: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    log_level: str = "INFO"
    structured_logs: bool = True
    log_file: Optional[str] = None

    cloudprnt_enabled: bool = True

    # Retry scheduling
    delivery_timeout_seconds: float = 45.0
    retry_backoff_seconds: float = 10.0
    backoff_strategy: str = "fixed"
    max_backoff_seconds: float = 300.0
    sweep_interval_seconds: float = 10.0
    default_max_retries: int = 3

    printers: List[PrinterEndpoint] = field(default_factory=list)

    def validate(self) -> "Settings":
        if self.backoff_strategy not in BACKOFF_STRATEGIES:
            raise ConfigurationError(
                "backoff_strategy", f"must be one of {', '.join(BACKOFF_STRATEGIES)}"
            )
        for key in ("delivery_timeout_seconds", "sweep_interval_seconds"):
            if getattr(self, key) <= 0:
                raise ConfigurationError(key, "must be greater than zero")
        for key in ("retry_backoff_seconds", "max_backoff_seconds"):
            if getattr(self, key) < 0:
                raise ConfigurationError(key, "must not be negative")
        if self.default_max_retries < 0:
            raise ConfigurationError("default_max_retries", "must not be negative")
        if not 0 < self.port < 65536:
            raise ConfigurationError("port", "must be between 1 and 65535")

        seen = set()
        for printer in self.printers:
            if printer.id in seen:
                raise ConfigurationError("printers", f"duplicate printer id {printer.id}")
            seen.add(printer.id)
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Settings":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigurationError(key, "unknown setting")
            if key == "printers":
                kwargs[key] = _parse_printers(value)
            else:
                kwargs[key] = _coerce(key, value, known[key].default)
        return cls(**kwargs).validate()


def load_settings(path: Optional[Union[str, Path]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from a YAML file and the environment.

    Args:
        path: Optional YAML file; missing keys fall back to defaults
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated Settings
    """
    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except OSError as e:
            raise ConfigurationError(str(path), f"cannot read config file: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(str(path), f"invalid YAML: {e}")
        if not isinstance(loaded, dict):
            raise ConfigurationError(str(path), "top level must be a mapping")
        data.update(loaded)

    environ = os.environ if environ is None else environ
    for f in fields(Settings):
        if f.name == "printers":
            continue
        env_key = ENV_PREFIX + f.name.upper()
        if env_key in environ:
            data[f.name] = environ[env_key]

    return Settings.from_mapping(data)


def _parse_printers(value: Any) -> List[PrinterEndpoint]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError("printers", "must be a list")
    printers = []
    for entry in value:
        if not isinstance(entry, Mapping) or "id" not in entry:
            raise ConfigurationError("printers", "each printer needs at least an id")
        try:
            printers.append(PrinterEndpoint.from_dict(entry))
        except (TypeError, ValueError) as e:
            raise ConfigurationError("printers", f"invalid printer {entry.get('id')}: {e}")
    return printers


def _coerce(key: str, value: Any, default: Any) -> Any:
    # An empty YAML key means "use the default".
    if value is None:
        return default
    try:
        if isinstance(default, bool):
            return parse_bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(key, str(e))
