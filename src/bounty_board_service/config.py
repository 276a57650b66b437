"""
Configuration management for the bounty board service.

Loads configuration from YAML with no implicit defaults for required
sections. Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEY_PARTS = ("secret", "password", "token", "key_path", "private_key")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None = None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class LedgerConfig(BaseModel):
    """Escrow ledger gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    accounts_path: str
    transfer_path: str
    refund_path: str
    increase_path: str
    decrease_path: str
    assign_path: str
    approve_path: str
    wallets_path: str
    trustline_path: str
    escrow_address: str
    asset_code: str
    asset_issuer: str
    timeout_seconds: int


class IssueTrackerConfig(BaseModel):
    """GitHub App connection configuration."""

    model_config = ConfigDict(extra="forbid")
    api_base_url: str
    graphql_path: str
    app_id: str
    private_key_path: str
    contributor_app_url: str
    timeout_seconds: int


class VaultConfig(BaseModel):
    """Envelope encryption configuration."""

    model_config = ConfigDict(extra="forbid")
    master_key_path: str


class AuthConfig(BaseModel):
    """Bearer token verification configuration."""

    model_config = ConfigDict(extra="forbid")
    public_key_path: str
    issuer: str


class NotificationsConfig(BaseModel):
    """Activity notification webhook configuration."""

    model_config = ConfigDict(extra="forbid")
    webhook_url: str | None
    timeout_seconds: int


class RetryPolicyConfig(BaseModel):
    """Retry policy for one external system."""

    model_config = ConfigDict(extra="forbid")
    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    timeout_ms: int
    use_circuit_breaker: bool


class RetryConfig(BaseModel):
    """Per-system retry policies."""

    model_config = ConfigDict(extra="forbid")
    ledger: RetryPolicyConfig
    issue_tracker: RetryPolicyConfig
    vault: RetryPolicyConfig


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds shared by all external systems."""

    model_config = ConfigDict(extra="forbid")
    failure_threshold: int
    recovery_timeout_seconds: float
    half_open_max_calls: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All sections are REQUIRED. Missing sections cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    ledger: LedgerConfig
    issue_tracker: IssueTrackerConfig
    vault: VaultConfig
    auth: AuthConfig
    notifications: NotificationsConfig
    retry: RetryConfig
    circuit_breaker: CircuitBreakerConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Parse and validate a YAML configuration file."""
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS) and item is not None:
                redacted[key] = REDACTION_MARKER
            else:
                redacted[key] = _redact(item)
        return redacted
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump())
