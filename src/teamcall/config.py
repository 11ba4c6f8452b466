"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating server configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3001, ge=0, le=65535, description="Bind port (0 = any free port)")
    max_connections: int = Field(default=1000, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=64 * 1024, ge=1024, description="Largest accepted inbound frame"
    )
    ping_interval_s: float | None = Field(
        default=20.0, gt=0, description="Keepalive ping interval (None disables keepalive)"
    )
    ping_timeout_s: float | None = Field(
        default=20.0, gt=0, description="Seconds to wait for a pong before dropping the client"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class CallsConfig(BaseModel):
    """Call registry behaviour."""

    pending_call_ttl_s: float = Field(
        default=120.0,
        ge=5.0,
        description="Seconds a created call may stay without participants",
    )
    sweep_interval_s: float = Field(
        default=15.0,
        ge=0.5,
        description="Interval of the pending-call expiry sweep",
    )


class SecurityConfig(BaseModel):
    """Trust settings for client-supplied identity."""

    pin_connection_identity: bool = Field(
        default=True,
        description="Bind the first userId a connection presents and reject others",
    )


class HealthConfig(BaseModel):
    """HTTP health and metrics endpoint."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=0,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class ServerConfig(BaseModel):
    """Root server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    calls: CallsConfig = Field(default_factory=CallsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        if self.health.port is not None:
            return self.health.port
        ws_port = self.transport.websocket.port
        return ws_port + 1 if ws_port else 0

    @classmethod
    def from_yaml(cls, path: Path) -> "ServerConfig":
        """Load configuration from YAML file with environment variable overrides.

        Environment overrides:
            TEAMCALL_HOST, TEAMCALL_PORT, TEAMCALL_LOG_LEVEL,
            TEAMCALL_PENDING_CALL_TTL_S

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        if host := os.getenv("TEAMCALL_HOST"):
            data.setdefault("transport", {}).setdefault("websocket", {})["host"] = host

        if port := os.getenv("TEAMCALL_PORT"):
            data.setdefault("transport", {}).setdefault("websocket", {})["port"] = int(port)

        if log_level := os.getenv("TEAMCALL_LOG_LEVEL"):
            data["log_level"] = log_level

        if ttl := os.getenv("TEAMCALL_PENDING_CALL_TTL_S"):
            data.setdefault("calls", {})["pending_call_ttl_s"] = float(ttl)

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ServerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
