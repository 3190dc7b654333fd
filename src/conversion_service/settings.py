"""Config Parameter Modeling and Parsing"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import (
    Field,
    NonNegativeInt,
    PositiveInt,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .tiers import UserTier

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class Settings(BaseSettings):
    """Service configuration, read from environment variables of the same name."""

    model_config = SettingsConfigDict(frozen=True, extra="ignore")

    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for file records and encrypted storage.",
    )
    file_encryption_secret: SecretStr = Field(
        default=...,
        description="Secret that per-file encryption keys are derived from.",
    )
    secure_token_secret: SecretStr = Field(
        default=...,
        description="Secret used to sign download links.",
    )
    stream_threshold_bytes: PositiveInt = Field(
        default=5 * 1024 * 1024,
        description="Files at or above this size are encrypted in chunks instead of in memory.",
    )
    max_file_size_bytes: PositiveInt = Field(
        default=200 * 1024 * 1024,
        description="Largest file accepted for upload or encryption.",
    )
    validate_content: bool = Field(
        default=True,
        description="Check that files really are PDF or DOCX before encrypting them.",
    )
    file_expiry_free: PositiveInt = Field(default=DAY_MS, description="Retention for free tier files, in ms.")
    file_expiry_basic: PositiveInt = Field(default=7 * DAY_MS, description="Retention for basic tier files, in ms.")
    file_expiry_premium: PositiveInt = Field(
        default=30 * DAY_MS, description="Retention for premium tier files, in ms."
    )
    file_expiry_enterprise: PositiveInt = Field(
        default=90 * DAY_MS, description="Retention for enterprise tier files, in ms."
    )
    queue_name: str = Field(default="conversion-queue", description="Name of the conversion job queue.")
    queue_backend: Literal["memory", "redis"] = Field(
        default="memory",
        examples=["memory", "redis"],
        description="Where queued jobs live. The memory backend does not survive restarts.",
    )
    redis_uri: str = Field(
        default="redis://localhost:6379/0",
        examples=["redis://localhost:6379/0"],
        description="Connection URI for the redis queue backend.",
    )
    workers: NonNegativeInt = Field(default=4, description="Number of concurrent conversion workers.")
    cleanup_interval_sec: NonNegativeInt = Field(
        default=3600,
        description="Seconds between retention sweeps, or 0 to disable them.",
    )
    download_token_ttl_sec: PositiveInt = Field(default=3600, description="Lifetime of download links.")
    log_level: str = Field(default="INFO", examples=["DEBUG", "INFO"], description="Root log level.")

    @field_validator("file_encryption_secret", "secure_token_secret")
    @classmethod
    def secret_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("must not be empty")
        return value

    @field_validator("data_dir")
    @classmethod
    def resolve_data_dir(cls, value: Path) -> Path:
        return value.resolve()

    @field_validator("queue_backend", "log_level", mode="before")
    @classmethod
    def normalize_case(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        return value.lower() if info.field_name == "queue_backend" else value.upper()

    @model_validator(mode="after")
    def expiry_increases_with_tier(self) -> "Settings":
        ordered = [
            self.file_expiry_free,
            self.file_expiry_basic,
            self.file_expiry_premium,
            self.file_expiry_enterprise,
        ]
        if any(a >= b for a, b in zip(ordered, ordered[1:])):
            raise ValueError("file expiry must increase strictly from free to basic to premium to enterprise")
        return self

    @property
    def file_expiry_ms(self) -> dict[UserTier, int]:
        return {
            UserTier.FREE: self.file_expiry_free,
            UserTier.BASIC: self.file_expiry_basic,
            UserTier.PREMIUM: self.file_expiry_premium,
            UserTier.ENTERPRISE: self.file_expiry_enterprise,
        }

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings, failing fast on anything the service cannot start with."""
        try:
            return cls()
        except PydanticValidationError as e:
            raise ConfigurationError(f"invalid configuration: {e}") from e


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
