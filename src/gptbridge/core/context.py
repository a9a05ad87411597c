"""Reply-chain context reconstruction."""

from __future__ import annotations

from collections.abc import AsyncIterator

from loguru import logger

from gptbridge.channels.base import ChatMessage, ChatPlatform
from gptbridge.core.cancellation import CancellationToken
from gptbridge.core.turns import ContextBudget, ConversationTurn, Role, sanitize_speaker
from gptbridge.errors import MessageUnavailableError


class ContextBuilder:
    """Turn a trigger's reply chain into conversation history."""

    def __init__(self, platform: ChatPlatform) -> None:
        self._platform = platform

    def to_turn(self, message: ChatMessage) -> ConversationTurn:
        if message.author_id == self._platform.bot_user_id:
            return ConversationTurn(Role.ASSISTANT, message.content)
        return ConversationTurn(Role.USER, message.content, sanitize_speaker(message.author_name))

    async def predecessors(
        self,
        trigger: ChatMessage,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[ChatMessage]:
        """Yield the messages ``trigger`` replies to, newest first.

        Stops at the start of the chain or at the first message that cannot be
        fetched any more.
        """

        seen = {trigger.message_id}
        ref = trigger.reference
        while ref is not None and ref.message_id not in seen:
            fetch = self._platform.fetch_message(ref)
            try:
                message = await (cancellation.guard(fetch) if cancellation is not None else fetch)
            except MessageUnavailableError as exc:
                logger.debug("context.chain.truncated message_id={} reason={}", ref.message_id, exc)
                return
            seen.add(message.message_id)
            yield message
            ref = message.reference

    async def build(
        self,
        trigger: ChatMessage,
        budget: ContextBudget,
        cancellation: CancellationToken | None = None,
    ) -> list[ConversationTurn]:
        """Return history turns oldest first, never exceeding ``budget``."""

        history: list[ConversationTurn] = []
        chain = self.predecessors(trigger, cancellation)
        try:
            async for message in chain:
                if budget.exhausted:
                    break
                turn = self.to_turn(message)
                if not budget.consume(len(turn)):
                    break
                history.append(turn)
        finally:
            await chain.aclose()

        history.reverse()
        logger.debug("context.built trigger={} turns={} remaining={}", trigger.message_id, len(history), budget.remaining)
        return history
