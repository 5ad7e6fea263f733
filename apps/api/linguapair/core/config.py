"""Application configuration for the language-exchange matcher."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    stun_urls: str = Field(default="stun:stun.l.google.com:19302")
    turn_url: str = Field(default="")
    turn_username: str = Field(default="")
    turn_password: str = Field(default="")

    profile_field_max_length: int = Field(default=24, ge=1)

    reconnect_base_delay: float = Field(default=0.8, gt=0)
    reconnect_factor: float = Field(default=1.8, ge=1)
    reconnect_max_delay: float = Field(default=15.0, gt=0)
    heartbeat_interval: float = Field(default=20.0, gt=0)
    rejoin_delay: float = Field(default=0.25, ge=0)
    restart_cooldown: float = Field(default=1.5, ge=0)
    escalation_delay: float = Field(default=6.0, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value


def split_urls(value: str) -> list[str]:
    """Split a comma-separated URL setting into its non-empty parts."""

    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
