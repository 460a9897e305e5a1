"""
CNC Config Module - Immutable settings for the controller stack.

This module provides the frozen configuration dataclasses handed to the
controller, recovery engine, status monitor and device logger, and the
loader that builds them from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from cnc_config_schema import SettingsYamlSchema


class SettingsError(Exception):
    """Raised when a settings file cannot be read or fails validation."""

    pass


@dataclass(frozen=True)
class ErrorRecoveryConfig:
    """
    Recovery policy.

    Attributes:
        max_retries: Recovery actions allowed per fault episode
        retry_delay: Seconds to wait before a retry or reset
        reconnect_delay: Seconds to wait before reconnecting
        auto_recovery_enabled: Whether failures are recovered automatically
        reset_on_critical_error: Whether alarms trigger a controller reset
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    reconnect_delay: float = 2.0
    auto_recovery_enabled: bool = True
    reset_on_critical_error: bool = True


@dataclass(frozen=True)
class MonitorConfig:
    """
    Status polling settings.

    With adaptive timing the monitor polls at running_interval while the
    machine executes and at idle_interval otherwise.
    """

    poll_interval: float = 0.25
    history_size: int = 300
    reply_timeout: float = 1.0
    adaptive_timing: bool = False
    running_interval: float = 0.1
    idle_interval: float = 0.5


@dataclass(frozen=True)
class ConnectionConfig:
    port: Optional[str] = None
    baudrate: int = 115200
    dialect: str = "grbl"
    greeting_timeout: float = 2.5
    response_timeout: float = 5.0


@dataclass(frozen=True)
class ConsoleConfig:
    capacity: int = 5000


@dataclass(frozen=True)
class ControllerSettings:
    """Root settings object."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    recovery: ErrorRecoveryConfig = field(default_factory=ErrorRecoveryConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    console: ConsoleConfig = field(default_factory=ConsoleConfig)


def settings_from_dict(raw: Optional[Dict[str, Any]]) -> ControllerSettings:
    """
    Validate a settings mapping and build ControllerSettings.

    Args:
        raw: Mapping shaped like the YAML document; None means all defaults

    Returns:
        Validated settings

    Raises:
        pydantic.ValidationError: If the mapping does not match the schema
    """
    schema = SettingsYamlSchema.model_validate(raw or {})
    return ControllerSettings(
        connection=ConnectionConfig(**schema.connection.model_dump()),
        recovery=ErrorRecoveryConfig(**schema.recovery.model_dump()),
        monitor=MonitorConfig(**schema.monitor.model_dump()),
        console=ConsoleConfig(**schema.console.model_dump()),
    )


def _format_error(path: Path, error: Exception) -> str:
    if isinstance(error, ValidationError):
        lines = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get("loc", []))
            lines.append(f"  {location or '<root>'}: {item.get('msg', '')}")
        return f"Invalid settings in `{path}`:\n" + "\n".join(lines)
    if isinstance(error, YAMLError):
        return f"Settings YAML parse error in `{path}`: {error}"
    if isinstance(error, FileNotFoundError):
        return f"Settings file not found: `{path}`"
    return f"Cannot load settings from `{path}`: {error}"


def load_settings(path: Union[str, Path]) -> ControllerSettings:
    """
    Load controller settings from a YAML file.

    Missing sections and keys take their defaults.

    Args:
        path: YAML file path

    Returns:
        Validated settings

    Raises:
        SettingsError: If the file is missing, malformed or invalid
    """
    resolved = Path(path)
    yaml = YAML(typ="safe")
    try:
        with resolved.open() as file:
            raw = yaml.load(file)
        if raw is not None and not isinstance(raw, dict):
            raise SettingsError(f"Settings in `{resolved}` must be a mapping")
        return settings_from_dict(raw)
    except SettingsError:
        raise
    except (OSError, YAMLError, ValidationError) as e:
        raise SettingsError(_format_error(resolved, e)) from e
