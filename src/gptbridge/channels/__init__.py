"""Chat platform adapters."""

from gptbridge.channels.base import ChatEventHandler, ChatMessage, ChatPlatform, MessageRef, OutboundPayload

__all__ = ["ChatEventHandler", "ChatMessage", "ChatPlatform", "MessageRef", "OutboundPayload"]
