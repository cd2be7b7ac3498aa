"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

_DEFAULT_CONFIG_FILENAME = "config.yaml"
_PROJECT_ROOT = Path(__file__).resolve().parents[2]


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
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_jws_path: str
    timeout_seconds: int


class PlatformConfig(BaseModel):
    """Platform agent and arbiter configuration."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str
    arbiter_ids: list[str]

    @field_validator("agent_id")
    @classmethod
    def agent_id_must_not_be_empty(cls, value: str) -> str:
        """Reject empty platform agent_id at startup."""
        if not value.strip():
            msg = "platform.agent_id must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("arbiter_ids")
    @classmethod
    def arbiters_must_be_present(cls, value: list[str]) -> list[str]:
        """At least one non-empty arbiter id is required to resolve disputes."""
        if len(value) == 0 or any(not arbiter.strip() for arbiter in value):
            msg = "platform.arbiter_ids must list at least one non-empty agent id"
            raise ValueError(msg)
        return value


class EscrowConfig(BaseModel):
    """Insurance premium and compensation percentages."""

    model_config = ConfigDict(extra="forbid")
    insurance_premium_pct: int
    insurance_compensation_pct: int

    @field_validator("insurance_premium_pct", "insurance_compensation_pct")
    @classmethod
    def pct_in_range(cls, value: int) -> int:
        """Percentages must be within 0..100."""
        if not 0 <= value <= 100:
            msg = "percentages must be between 0 and 100"
            raise ValueError(msg)
        return value


class LimitsConfig(BaseModel):
    """Field length limits."""

    model_config = ConfigDict(extra="forbid")
    max_title_length: int
    max_description_length: int
    max_proposal_length: int
    max_reason_length: int
    max_tags: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    platform: PlatformConfig
    escrow: EscrowConfig
    limits: LimitsConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path (CONFIG_PATH env var, else project root)."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return _PROJECT_ROOT / _DEFAULT_CONFIG_FILENAME


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML config file."""
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Config file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)

    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next get_settings() re-reads the file."""
    get_settings.cache_clear()


REDACTION_MARKER = "***"
_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "token", "private_key")


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS)
            else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return cast("dict[str, Any]", _redact(get_settings().model_dump()))
