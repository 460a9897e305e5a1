"""Strict pydantic schema for the controller settings YAML."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dialects import available_dialects


class ConnectionYaml(BaseModel):
    """Transport and dialect selection."""

    model_config = ConfigDict(extra="forbid")

    port: Optional[str] = None
    baudrate: int = Field(115200, gt=0)
    dialect: str = "grbl"
    greeting_timeout: float = Field(2.5, gt=0)
    response_timeout: float = Field(5.0, gt=0)

    @field_validator("dialect")
    @classmethod
    def _known_dialect(cls, value: str) -> str:
        name = value.strip().lower()
        if name not in available_dialects():
            raise ValueError(f"unknown dialect '{value}', expected one of: {', '.join(available_dialects())}")
        return name


class RecoveryYaml(BaseModel):
    """Error recovery policy."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(3, ge=0)
    retry_delay: float = Field(1.0, ge=0)
    reconnect_delay: float = Field(2.0, ge=0)
    auto_recovery_enabled: bool = True
    reset_on_critical_error: bool = True


class MonitorYaml(BaseModel):
    """Status polling settings."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(0.25, gt=0)
    history_size: int = Field(300, gt=0)
    reply_timeout: float = Field(1.0, gt=0)
    adaptive_timing: bool = False
    running_interval: float = Field(0.1, gt=0)
    idle_interval: float = Field(0.5, gt=0)


class ConsoleYaml(BaseModel):
    """Diagnostic console settings."""

    model_config = ConfigDict(extra="forbid")

    capacity: int = Field(5000, gt=0)


class SettingsYamlSchema(BaseModel):
    """Root settings YAML schema."""

    model_config = ConfigDict(extra="forbid")

    connection: ConnectionYaml = Field(default_factory=ConnectionYaml)
    recovery: RecoveryYaml = Field(default_factory=RecoveryYaml)
    monitor: MonitorYaml = Field(default_factory=MonitorYaml)
    console: ConsoleYaml = Field(default_factory=ConsoleYaml)
