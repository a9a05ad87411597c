"""Application bootstrap: build the component graph from settings."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from gptbridge.channels.discord import DiscordChannel, DiscordConfig
from gptbridge.config import BridgeConfig, ConfigStore, Settings
from gptbridge.core.completion import CompletionClient, SamplingOptions
from gptbridge.core.context import ContextBuilder
from gptbridge.core.credentials import CredentialRotator
from gptbridge.core.delivery import DeliveryCoordinator
from gptbridge.core.engine import ConversationEngine
from gptbridge.core.sessions import SessionRegistry
from gptbridge.errors import MissingSettingError
from gptbridge.integrations.openai_transport import OpenAITransport


@dataclass
class BridgeApp:
    """Owned instances of every long-lived component."""

    settings: Settings
    store: ConfigStore
    rotator: CredentialRotator
    transport: OpenAITransport
    channel: DiscordChannel
    engine: ConversationEngine

    async def run(self) -> None:
        try:
            await self.channel.start(self.engine)
        finally:
            await self.transport.aclose()
            logger.info("app.stopped")


def build_rotator(settings: Settings, store: ConfigStore) -> CredentialRotator:
    if settings.openai_api_key:
        # Environment keys are not ours to rewrite.
        return CredentialRotator([settings.openai_api_key])
    return CredentialRotator(store.config.openai.keys, persist=store.store_keys)


def build_client(config: BridgeConfig, transport: OpenAITransport, rotator: CredentialRotator) -> CompletionClient:
    openai_config = config.openai
    sampling = SamplingOptions(
        model=openai_config.model,
        max_tokens=openai_config.max_tokens,
        temperature=openai_config.temperature,
        top_p=openai_config.top_p,
        frequency_penalty=openai_config.frequency_penalty,
        presence_penalty=openai_config.presence_penalty,
        stream=openai_config.stream,
    )
    return CompletionClient(
        transport,
        rotator,
        system_message=config.completion.system_message,
        sampling=sampling,
        max_attempts=openai_config.max_attempts,
        attempt_timeout=openai_config.request_timeout_seconds,
    )


def build_app(settings: Settings, store: ConfigStore | None = None) -> BridgeApp:
    """Load config and wire the bridge for one process."""

    store = store or ConfigStore(settings.config_path)
    config = store.load()

    token = settings.discord_token or config.discord.token
    if not token:
        raise MissingSettingError(f"discord.token is not set in {store.path} or GPTBRIDGE_DISCORD_TOKEN")

    rotator = build_rotator(settings, store)
    if rotator.size == 0:
        logger.warning("app.no_credentials path={}", store.path)

    transport = OpenAITransport(base_url=config.openai.base_url, timeout=config.openai.request_timeout_seconds)
    channel = DiscordChannel(
        DiscordConfig(
            token=token,
            allow_channels=set(config.discord.allow_channels),
            typing_interval=config.delivery.typing_interval_seconds,
        )
    )
    engine = ConversationEngine(
        channel,
        build_client(config, transport, rotator),
        context_builder=ContextBuilder(channel),
        delivery=DeliveryCoordinator(
            channel,
            inline_limit=config.delivery.inline_limit,
            attachment_name=config.delivery.attachment_name,
            edit_interval=config.delivery.edit_interval_seconds,
        ),
        registry=SessionRegistry(),
        context_budget=config.completion.context_budget,
        failure_message=config.completion.failure_message,
    )
    return BridgeApp(
        settings=settings,
        store=store,
        rotator=rotator,
        transport=transport,
        channel=channel,
        engine=engine,
    )
