"""Chat platform capability interface consumed by the conversation engine."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class MessageRef:
    """Pointer to another message, usually the one being replied to."""

    channel_id: str
    message_id: str


@dataclass(frozen=True)
class ChatMessage:
    """Platform-neutral view of one chat message.

    ``content`` is already cleaned: mention markup removed and attachments
    replaced by a textual extract.
    """

    message_id: str
    channel_id: str
    author_id: str
    author_name: str
    content: str
    reference: MessageRef | None = None
    author_is_bot: bool = False
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class OutboundPayload:
    """Content for a send or edit: inline text, or a text file attachment."""

    content: str | None = None
    filename: str | None = None
    data: bytes | None = None

    @property
    def is_attachment(self) -> bool:
        return self.data is not None

    @classmethod
    def text(cls, content: str) -> OutboundPayload:
        return cls(content=content)

    @classmethod
    def attachment(cls, content: str, filename: str) -> OutboundPayload:
        return cls(filename=filename, data=content.encode("utf-8"))


class ChatEventHandler(Protocol):
    """Receiver of trigger message lifecycle events."""

    async def on_create(self, message: ChatMessage) -> None: ...

    async def on_edit(self, message: ChatMessage) -> None: ...

    async def on_delete(self, message_id: str) -> None: ...


class ChatPlatform(Protocol):
    """Capabilities the engine needs from the chat client."""

    @property
    def bot_user_id(self) -> str:
        """Account id of the bot itself."""
        ...

    async def fetch_message(self, ref: MessageRef) -> ChatMessage:
        """Fetch one message; raise ``MessageUnavailableError`` if it is gone or inaccessible."""
        ...

    async def send_reply(self, trigger: ChatMessage, payload: OutboundPayload) -> Any:
        """Reply to ``trigger``; return a handle usable with ``edit_message``."""
        ...

    async def edit_message(self, sent: Any, payload: OutboundPayload) -> Any:
        """Replace the content of a message previously returned by ``send_reply``."""
        ...

    def typing(self, channel_id: str) -> AbstractAsyncContextManager[None]:
        """Keep a typing indicator alive in ``channel_id`` while the context is open."""
        ...
