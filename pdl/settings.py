"""Environment-driven settings for the PDL tracker."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Process-wide configuration, read once from ``PDL_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="PDL_",
        env_ignore_empty=True,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    private_data_dir: Path = Field(default_factory=lambda: Path.cwd() / "data")
    shared_data_dir: Path = Field(default_factory=lambda: Path.home() / ".pdl" / "data")
    # PDL_USE_CENTRALIZED is the older name of the same switch
    force_shared: bool = Field(
        default=False,
        validation_alias=AliasChoices("PDL_USE_SHARED", "PDL_USE_CENTRALIZED"),
    )
    instance_pattern: str = r"pdl.*main\.py"
    ws_enabled: bool = False
    ws_host: str = "127.0.0.1"
    ws_port: int = Field(default=8080, ge=1, le=65535)
    heartbeat_seconds: float = Field(default=30.0, gt=0)
    heartbeat_timeout: float = Field(default=90.0, gt=0)
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @field_validator("private_data_dir", "shared_data_dir", "log_file")
    @classmethod
    def _expand_user(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else None

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return str(value).strip().upper()


def load_settings() -> Settings:
    """Read settings from the environment, naming every invalid variable."""
    try:
        return Settings()
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        raise ConfigurationError(f"Invalid PDL configuration: {problems}") from e
