"""Discord channel adapter."""

from __future__ import annotations

import asyncio
import contextlib
import io
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import discord
from loguru import logger

from gptbridge.channels.base import ChatEventHandler, ChatMessage, MessageRef, OutboundPayload
from gptbridge.core.turns import clean_mentions
from gptbridge.errors import MessageUnavailableError, MissingSettingError

MAX_ATTACHMENT_BYTES = 100 * 1024
TEXT_CONTENT_KINDS = frozenset({"text", "application"})


@dataclass(frozen=True)
class DiscordConfig:
    """Discord adapter config."""

    token: str
    allow_channels: set[str] = field(default_factory=set)
    typing_interval: float = 9.0


class DiscordChannel:
    """Discord adapter based on discord.py."""

    name = "discord"

    def __init__(self, config: DiscordConfig) -> None:
        self._config = config
        self._client: discord.Client | None = None

    @property
    def bot_user_id(self) -> str:
        user = self._client.user if self._client is not None else None
        return str(user.id) if user is not None else ""

    async def start(self, handler: ChatEventHandler) -> None:
        if not self._config.token:
            raise MissingSettingError("discord token is empty")

        intents = discord.Intents.default()
        intents.messages = True
        intents.message_content = True
        client = discord.Client(intents=intents)
        self._client = client

        @client.event
        async def on_ready() -> None:
            logger.info("discord.ready user={} id={}", str(client.user), self.bot_user_id or "<unknown>")

        @client.event
        async def on_message(message: discord.Message) -> None:
            if not await self.is_trigger(message):
                return
            logger.info(
                "discord.inbound channel_id={} message_id={} sender_id={} content={}",
                message.channel.id,
                message.id,
                message.author.id,
                message.content[:100],
            )
            await handler.on_create(await self.to_chat_message(message, read_attachments=True))

        @client.event
        async def on_message_edit(before: discord.Message, after: discord.Message) -> None:
            if after.author.bot or (before.content == after.content and before.attachments == after.attachments):
                return
            await handler.on_edit(await self.to_chat_message(after, read_attachments=True))

        @client.event
        async def on_raw_message_delete(payload: discord.RawMessageDeleteEvent) -> None:
            await handler.on_delete(str(payload.message_id))

        logger.info("discord.start allow_channels_count={}", len(self._config.allow_channels))
        try:
            async with client:
                await client.start(self._config.token)
        finally:
            self._client = None
            logger.info("discord.stopped")

    async def is_trigger(self, message: discord.Message) -> bool:
        if message.author.bot:
            return False
        if self._config.allow_channels and str(message.channel.id) not in self._config.allow_channels:
            return False
        if not message.content.strip() and not message.attachments:
            return False

        bot_user = self._client.user if self._client is not None else None
        if bot_user is None:
            return False
        if any(user.id == bot_user.id for user in message.mentions):
            return True

        ref = message.reference
        if ref is None or ref.message_id is None:
            return False
        resolved = ref.resolved
        if isinstance(resolved, discord.Message):
            return resolved.author.id == bot_user.id
        try:
            replied = await self.fetch_message(MessageRef(str(ref.channel_id), str(ref.message_id)))
        except MessageUnavailableError:
            return False
        return replied.author_id == str(bot_user.id)

    async def to_chat_message(self, message: discord.Message, *, read_attachments: bool = False) -> ChatMessage:
        parts = [clean_mentions(message.clean_content)] if message.clean_content else []
        for attachment in message.attachments:
            parts.append(await self._attachment_text(attachment, read=read_attachments))

        reference = None
        if message.reference is not None and message.reference.message_id is not None:
            reference = MessageRef(str(message.reference.channel_id), str(message.reference.message_id))

        return ChatMessage(
            message_id=str(message.id),
            channel_id=str(message.channel.id),
            author_id=str(message.author.id),
            author_name=message.author.display_name,
            content="\n".join(parts),
            reference=reference,
            author_is_bot=message.author.bot,
            raw=message,
        )

    async def fetch_message(self, ref: MessageRef) -> ChatMessage:
        client = self._require_client()
        message_id = int(ref.message_id)
        message = discord.utils.get(client.cached_messages, id=message_id)
        if message is None:
            channel = await self._resolve_channel(ref.channel_id)
            if channel is None:
                raise MessageUnavailableError(f"channel {ref.channel_id} is not reachable")
            try:
                message = await channel.fetch_message(message_id)
            except discord.HTTPException as exc:
                raise MessageUnavailableError(f"message {ref.message_id}: {exc}") from exc
        return await self.to_chat_message(message)

    async def send_reply(self, trigger: ChatMessage, payload: OutboundPayload) -> discord.Message:
        target = trigger.raw
        if not isinstance(target, discord.Message):
            channel = await self._resolve_channel(trigger.channel_id)
            if channel is None:
                raise MessageUnavailableError(f"channel {trigger.channel_id} is not reachable")
            target = channel.get_partial_message(int(trigger.message_id))

        if payload.is_attachment:
            return await target.reply(file=_as_file(payload), mention_author=False)
        return await target.reply(content=payload.content, mention_author=False)

    async def edit_message(self, sent: discord.Message, payload: OutboundPayload) -> discord.Message:
        if payload.is_attachment:
            return await sent.edit(content=None, attachments=[_as_file(payload)])
        return await sent.edit(content=payload.content, attachments=[])

    @contextlib.asynccontextmanager
    async def typing(self, channel_id: str) -> AsyncIterator[None]:
        task = asyncio.create_task(self._typing_loop(channel_id))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _typing_loop(self, channel_id: str) -> None:
        try:
            channel = await self._resolve_channel(channel_id)
            while channel is not None:
                await channel.typing()
                await asyncio.sleep(self._config.typing_interval)
        except asyncio.CancelledError:
            return
        except discord.HTTPException:
            logger.exception("discord.typing_loop.error channel_id={}", channel_id)

    async def _attachment_text(self, attachment: discord.Attachment, *, read: bool) -> str:
        placeholder = f"[Attachment: {attachment.filename}]"
        kind = (attachment.content_type or "").split("/", 1)[0]
        if not read or kind not in TEXT_CONTENT_KINDS or attachment.size > MAX_ATTACHMENT_BYTES:
            return placeholder
        try:
            data = await attachment.read()
        except discord.HTTPException:
            logger.exception("discord.attachment.error filename={}", attachment.filename)
            return placeholder
        text = data.decode("utf-8", errors="replace")
        return f"Attachment {attachment.filename}:\n===START===\n{text}\n===END==="

    async def _resolve_channel(self, channel_id: str) -> discord.TextChannel | discord.Thread | discord.DMChannel | None:
        client = self._require_client()
        channel = client.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await client.fetch_channel(int(channel_id))
            except discord.HTTPException:
                logger.warning("discord.channel.unresolved channel_id={}", channel_id)
                return None
        if isinstance(channel, discord.TextChannel | discord.Thread | discord.DMChannel):
            return channel
        return None

    def _require_client(self) -> discord.Client:
        if self._client is None:
            raise MessageUnavailableError("discord client is not running")
        return self._client


def _as_file(payload: OutboundPayload) -> discord.File:
    return discord.File(io.BytesIO(payload.data or b""), filename=payload.filename or "message.md")
