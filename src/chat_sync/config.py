"""Configuration loading and validation for the chat synchronization engine."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "chat-sync"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
MIB = 1024 * 1024


class ModelConfig(BaseModel):
    """Model host settings used by the ephemeral chat client."""

    host: str = "http://localhost:11434"
    timeout: int = Field(default=120, ge=1, le=3600)
    max_retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=30.0)

    @field_validator("host", mode="before")
    @classmethod
    def _validate_host(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("host must be a string.")
        normalized = value.strip()
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise ValueError("host must be an http(s) URL with a hostname.")
        return normalized


class AttachmentsConfig(BaseModel):
    """Size ceilings and image re-encoding settings."""

    max_file_bytes: int = Field(default=5 * MIB, ge=1)
    max_pdf_bytes: int = Field(default=10 * MIB, ge=1)
    upload_fatal_threshold_bytes: int = Field(default=1 * MIB, ge=0)
    max_image_dimension: int = Field(default=1024, ge=16, le=8192)
    image_quality: int = Field(default=80, ge=1, le=100)


class EngineConfig(BaseModel):
    """Engine-level bounds and cosmetic timings."""

    max_pending_messages: int = Field(default=50, ge=1, le=10_000)
    transition_delay_seconds: float = Field(default=0.3, ge=0.0, le=10.0)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/chat-sync/engine.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("log_file_path must be a non-empty string.")
        return value.strip()


class Config(BaseModel):
    """Root configuration model for all sections."""

    model: ModelConfig = ModelConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    engine: EngineConfig = EngineConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _safe_default_config() -> dict[str, dict[str, Any]]:
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when invalid."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "reason": str(exc)},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """Load configuration from TOML, merge with defaults, and validate.

    A missing file yields the defaults. An unreadable or malformed file is
    logged and ignored rather than raised.
    """
    target_path = config_path or CONFIG_PATH

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning(
                "config.parse_failed",
                extra={
                    "event": "config.parse_failed",
                    "path": str(target_path),
                    "reason": str(exc),
                },
            )
            raw_data = {}

    return _validate_config(_deep_merge(DEFAULT_CONFIG, raw_data))


@dataclass(frozen=True)
class EngineSettings:
    """Flattened runtime settings handed to engine components."""

    max_file_bytes: int = 5 * MIB
    max_pdf_bytes: int = 10 * MIB
    upload_fatal_threshold_bytes: int = 1 * MIB
    max_image_dimension: int = 1024
    image_quality: int = 80
    max_pending_messages: int = 50
    transition_delay_seconds: float = 0.3
    model_host: str = "http://localhost:11434"
    model_timeout: int = 120
    model_max_retries: int = 2
    model_retry_backoff_seconds: float = 0.5

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        """Build settings from a validated config mapping as returned by ``load_config``."""
        attachments = config.get("attachments", {})
        engine = config.get("engine", {})
        model = config.get("model", {})
        defaults = cls()
        return cls(
            max_file_bytes=int(attachments.get("max_file_bytes", defaults.max_file_bytes)),
            max_pdf_bytes=int(attachments.get("max_pdf_bytes", defaults.max_pdf_bytes)),
            upload_fatal_threshold_bytes=int(
                attachments.get(
                    "upload_fatal_threshold_bytes", defaults.upload_fatal_threshold_bytes
                )
            ),
            max_image_dimension=int(
                attachments.get("max_image_dimension", defaults.max_image_dimension)
            ),
            image_quality=int(attachments.get("image_quality", defaults.image_quality)),
            max_pending_messages=int(
                engine.get("max_pending_messages", defaults.max_pending_messages)
            ),
            transition_delay_seconds=float(
                engine.get("transition_delay_seconds", defaults.transition_delay_seconds)
            ),
            model_host=str(model.get("host", defaults.model_host)),
            model_timeout=int(model.get("timeout", defaults.model_timeout)),
            model_max_retries=int(model.get("max_retries", defaults.model_max_retries)),
            model_retry_backoff_seconds=float(
                model.get("retry_backoff_seconds", defaults.model_retry_backoff_seconds)
            ),
        )
