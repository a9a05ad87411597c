"""YAML-backed bridge configuration with durable updates."""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from gptbridge.errors import ConfigurationError


class DiscordSection(BaseModel):
    token: str = ""
    allow_channels: list[str] = Field(default_factory=list)


class OpenAISection(BaseModel):
    keys: list[str] = Field(default_factory=list)
    model: str = "gpt-3.5-turbo"
    base_url: str | None = None
    temperature: float | None = 0.6
    top_p: float | None = None
    frequency_penalty: float | None = 0.6
    presence_penalty: float | None = None
    max_tokens: int = 4096
    stream: bool = True
    request_timeout_seconds: float = 60.0
    max_attempts: int = 5


class CompletionSection(BaseModel):
    system_message: str = "You are ChatGPT, a helpful assistant in a Discord chat."
    context_budget: int = 4096
    failure_message: str = "Something went wrong on my side, maybe it is time for a break..."


class DeliverySection(BaseModel):
    inline_limit: int = 2000
    attachment_name: str = "message.md"
    edit_interval_seconds: float = 1.0
    typing_interval_seconds: float = 9.0


class BridgeConfig(BaseModel):
    discord: DiscordSection = Field(default_factory=DiscordSection)
    openai: OpenAISection = Field(default_factory=OpenAISection)
    completion: CompletionSection = Field(default_factory=CompletionSection)
    delivery: DeliverySection = Field(default_factory=DeliverySection)


class ConfigStore:
    """Owns the YAML config file.

    Loading fills missing keys with defaults and writes the merged result
    back. ``update`` persists first and publishes the new config only after
    the write succeeded.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._config: BridgeConfig | None = None
        self._lock = asyncio.Lock()

    @property
    def config(self) -> BridgeConfig:
        if self._config is None:
            raise ConfigurationError("config is not loaded")
        return self._config

    def load(self) -> BridgeConfig:
        raw = self._read()
        try:
            config = BridgeConfig.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid config {self.path}: {exc}") from exc
        self._write(config)
        self._config = config
        logger.info("config.loaded path={}", self.path)
        return config

    async def update(self, change: Callable[[BridgeConfig], None]) -> BridgeConfig:
        async with self._lock:
            updated = self.config.model_copy(deep=True)
            change(updated)
            await asyncio.to_thread(self._write, updated)
            self._config = updated
            return updated

    async def store_keys(self, keys: list[str]) -> None:
        def change(config: BridgeConfig) -> None:
            config.openai.keys = list(keys)

        await self.update(change)

    def _read(self) -> dict[str, Any]:
        if not self.path.is_file():
            logger.warning("config.missing path={} action=write_defaults", self.path)
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"cannot read config {self.path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {self.path} must be a mapping")
        return data

    def _write(self, config: BridgeConfig) -> None:
        text = yaml.safe_dump(config.model_dump(mode="json"), allow_unicode=True, sort_keys=False)
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
            raise ConfigurationError(f"cannot write config {self.path}: {exc}") from exc
