"""
Tally Sync Configuration System.

Type-safe configuration built on Pydantic. Settings can be loaded from:
1. Environment variables (prefixed with TALLY_SYNC_, nested with __)
2. Config file (TOML or JSON)
3. Explicit keyword arguments (highest priority)

Example usage:
    from tally_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        endpoint={"base_url": "https://aggregator.example.com"},
        sync={"chunk_size": 50},
    )
"""

from __future__ import annotations

import json
import socket
import tomllib
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tally_sync.tables import DEFAULT_TABLES, TABLES


class SourceConfig(BaseModel):
    """Connection to the source system's XML export interface."""

    host: str = Field(
        default="localhost",
        description="Source server host",
    )
    port: int = Field(
        default=9000,
        ge=1,
        le=65535,
        description="Source server XML port",
    )
    company: str = Field(
        default="",
        description="Company to export from (empty = currently open company)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single extraction request",
    )
    encoding: str = Field(
        default="utf-16-le",
        pattern="^(utf-8|utf-16|utf-16-le)$",
        description="Encoding of export requests and responses",
    )

    @property
    def url(self) -> str:
        """Base URL of the source server."""
        return f"http://{self.host}:{self.port}"


class EndpointConfig(BaseModel):
    """Remote aggregation endpoint receiving synchronized records."""

    base_url: str = Field(
        default="",
        description="Base URL of the aggregation endpoint",
    )
    sync_path: str = Field(
        default="/api/sync",
        description="Path receiving sync payload chunks (POST)",
    )
    health_path: str = Field(
        default="/health",
        description="Path probed before each cycle (GET)",
    )
    api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Optional bearer token sent with every request",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single endpoint request",
    )

    @field_validator("api_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle token from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    tables: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TABLES),
        description="Tables to sync, processed in this order",
    )
    interval_minutes: float = Field(
        default=15,
        gt=0,
        description="Minutes between sync cycles",
    )

    # Chunking
    chunk_size: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Maximum records per payload chunk",
    )
    chunk_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Pause between consecutive chunks",
    )

    # Windows
    initial_lookback_days: int = Field(
        default=365,
        ge=1,
        description="History fetched when bootstrapping a table",
    )
    overlap_minutes: float = Field(
        default=5,
        ge=0,
        description="Overlap subtracted from the last sync time",
    )

    # State
    state_file: Path = Field(
        default=Path(".tally-sync-state.json"),
        description="Path to the persisted sync state document",
    )
    source_identifier: str = Field(
        default_factory=socket.gethostname,
        description="Identifier sent with every payload",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long shutdown waits for an in-flight cycle",
    )


class RetryConfig(BaseModel):
    """Retry and circuit breaker settings for remote calls."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per call, including the first",
    )
    base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Backoff before the second attempt (doubles each time)",
    )
    max_delay_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Cap on the backoff delay",
    )
    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures that open the circuit",
    )
    cooldown_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Time an open circuit waits before a trial call",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for Tally Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (TALLY_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        export TALLY_SYNC_ENDPOINT__BASE_URL="https://aggregator.example.com"
        export TALLY_SYNC_SYNC__CHUNK_SIZE=50
        settings = Settings()

        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="TALLY_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    source: SourceConfig = Field(default_factory=SourceConfig)
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def normalize_paths(self) -> Self:
        """Make endpoint paths absolute and strip the base URL's slash."""
        self.endpoint.base_url = self.endpoint.base_url.rstrip("/")
        for attr in ("sync_path", "health_path"):
            value = getattr(self.endpoint, attr)
            if not value.startswith("/"):
                setattr(self.endpoint, attr, f"/{value}")
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        data["endpoint"]["api_token"] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            # Basic TOML serialization
            lines = []
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        lines.append(f"{k} = {json.dumps(v)}")
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            path.write_text("\n".join(lines))
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_settings(self) -> list[str]:
        """Validate settings needed to run a sync. Returns list of errors."""
        errors = []
        if not self.endpoint.base_url:
            errors.append("endpoint.base_url is required")
        if not self.sync.tables:
            errors.append("sync.tables must name at least one table")
        for name in self.sync.tables:
            if name not in TABLES:
                errors.append(f"Unknown table: {name}")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Top-level settings sections to override

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            for key, value in overrides.items():
                if isinstance(value, dict) and isinstance(data.get(key), dict):
                    data[key].update(value)
                else:
                    data[key] = value
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
