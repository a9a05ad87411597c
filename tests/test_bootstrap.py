from __future__ import annotations

from pathlib import Path

import pytest

from gptbridge.app import build_app
from gptbridge.config import ConfigStore, Settings
from gptbridge.errors import MissingSettingError


def _settings(tmp_path: Path, **values: object) -> Settings:
    return Settings(config_path=tmp_path / "config.yml", _env_file=None, **values)  # type: ignore[call-arg]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GPTBRIDGE_DISCORD_TOKEN", raising=False)
    monkeypatch.delenv("GPTBRIDGE_OPENAI_API_KEY", raising=False)


def test_missing_token_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(MissingSettingError):
        build_app(_settings(tmp_path))


def test_build_app_wires_config(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text(
        "discord:\n  token: abc\n  allow_channels: ['100']\nopenai:\n  keys: [k1, k2]\ndelivery:\n  inline_limit: 500\n",
        encoding="utf-8",
    )

    bridge = build_app(_settings(tmp_path))

    assert bridge.rotator.pool.keys == ("k1", "k2")
    assert bridge.channel._config.token == "abc"
    assert bridge.channel._config.allow_channels == {"100"}
    assert bridge.engine is not None


def test_env_token_overrides_file(tmp_path: Path) -> None:
    bridge = build_app(_settings(tmp_path, discord_token="from-env"))
    assert bridge.channel._config.token == "from-env"


@pytest.mark.asyncio
async def test_rotation_persists_config_keys(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text("discord:\n  token: abc\nopenai:\n  keys: [k1, k2]\n", encoding="utf-8")
    bridge = build_app(_settings(tmp_path))

    assert await bridge.rotator.advance(evict=True)

    assert bridge.rotator.current() == "k2"
    assert ConfigStore(path).load().openai.keys == ["k2"]


@pytest.mark.asyncio
async def test_env_key_is_never_written_back(tmp_path: Path) -> None:
    path = tmp_path / "config.yml"
    path.write_text("discord:\n  token: abc\nopenai:\n  keys: [k1]\n", encoding="utf-8")
    bridge = build_app(_settings(tmp_path, openai_api_key="env-key"))

    assert bridge.rotator.current() == "env-key"
    assert await bridge.rotator.advance(evict=True)

    assert ConfigStore(path).load().openai.keys == ["k1"]
