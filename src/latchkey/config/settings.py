"""Application settings loaded from environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SECRET_FIELD_NAMES = [
    "key",
    "apikey",
    "token",
    "secret",
    "password",
    "passwd",
    "privatekey",
    "accesskey",
    "clientsecret",
]

DEFAULT_LEGACY_ARTIFACTS = [
    "credentials.json",
    "oauth.json",
    "secrets.env",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field can be overridden with a ``LATCHKEY_`` prefixed variable,
    e.g. ``LATCHKEY_HOME=/srv/latchkey``.
    """

    model_config = SettingsConfigDict(
        env_prefix="LATCHKEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    environment: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    log_json: bool | None = None

    # Filesystem layout
    home: Path = Field(default_factory=lambda: Path.home() / ".latchkey")
    config_path: Path | None = None
    auth_profiles_path: Path | None = None
    legacy_artifacts: list[str] = Field(default_factory=lambda: list(DEFAULT_LEGACY_ARTIFACTS))

    # Detection
    secret_field_names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SECRET_FIELD_NAMES)
    )

    # Timeouts
    provider_timeout_seconds: float = 10.0
    apply_timeout_seconds: float | None = None

    @field_validator("home", "config_path", "auth_profiles_path")
    @classmethod
    def expand_user(cls, v: Path | None) -> Path | None:
        """Expand ``~`` in configured paths."""
        if v is None:
            return v
        return v.expanduser()

    @field_validator("secret_field_names")
    @classmethod
    def normalize_field_names(cls, v: list[str]) -> list[str]:
        """Normalize secret field names the same way field keys are compared."""
        return [name.lower().replace("_", "").replace("-", "") for name in v]

    @property
    def config_file(self) -> Path:
        """Path of the host configuration document."""
        return self.config_path or self.home / "config.json"

    @property
    def auth_profiles_file(self) -> Path:
        """Path of the auth-profile overlay document."""
        return self.auth_profiles_path or self.home / "auth-profiles.json"

    def legacy_artifact_paths(self) -> list[Path]:
        """Absolute paths of the known legacy plaintext artifacts."""
        return [self.home / name for name in self.legacy_artifacts]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
