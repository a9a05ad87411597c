"""Process settings loaded from the environment."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Bootstrap settings. Everything else lives in the YAML config file."""

    model_config = SettingsConfigDict(
        env_prefix="GPTBRIDGE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: Path = Field(default=Path("config/config.yml"), description="YAML config file")
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: str = Field(default="default", description="Log profile: default or console")

    # Runtime overrides, never written back to the config file.
    discord_token: str | None = Field(default=None, description="Overrides discord.token")
    openai_api_key: str | None = Field(default=None, description="Overrides openai.keys with a single key")


def load_settings(**overrides: object) -> Settings:
    updates = {key: value for key, value in overrides.items() if value is not None}
    return Settings(**updates)  # type: ignore[arg-type]
