"""Conversation engine: one cancellable completion exchange per trigger message."""

from __future__ import annotations

from contextvars import ContextVar

from loguru import logger

from gptbridge.channels.base import ChatMessage, ChatPlatform, OutboundPayload
from gptbridge.core.completion import Cancelled, CompletionClient, Failed
from gptbridge.core.context import ContextBuilder
from gptbridge.core.delivery import DeliveryCoordinator, DeliveryReport
from gptbridge.core.sessions import CompletionSession, SessionRegistry
from gptbridge.core.turns import ContextBudget
from gptbridge.errors import OperationCancelled

DEFAULT_FAILURE_MESSAGE = "Something went wrong on my side, maybe it is time for a break..."

_current_trigger: ContextVar[str] = ContextVar("gptbridge_trigger", default="-")


def current_trigger() -> str:
    return _current_trigger.get()


class ConversationEngine:
    """Route create/edit/delete events of trigger messages to completion sessions."""

    def __init__(
        self,
        platform: ChatPlatform,
        client: CompletionClient,
        *,
        context_builder: ContextBuilder | None = None,
        delivery: DeliveryCoordinator | None = None,
        registry: SessionRegistry | None = None,
        context_budget: int = 4096,
        failure_message: str = DEFAULT_FAILURE_MESSAGE,
    ) -> None:
        self.platform = platform
        self.client = client
        self.context_builder = context_builder or ContextBuilder(platform)
        self.delivery = delivery or DeliveryCoordinator(platform)
        self.registry = registry or SessionRegistry()
        self.context_budget = context_budget
        self.failure_message = failure_message

    async def on_create(self, message: ChatMessage) -> None:
        # Registration happens before the first suspension point.
        session, _ = self.registry.start(message.message_id)
        token = _current_trigger.set(message.message_id)
        try:
            async with self.platform.typing(message.channel_id):
                await self._run(session, message)
        finally:
            self.registry.complete(session)
            _current_trigger.reset(token)

    async def on_edit(self, message: ChatMessage) -> None:
        if message.message_id not in self.registry:
            logger.debug("engine.edit.ignored trigger={} reason=inactive", message.message_id)
            return
        logger.info("engine.edit.restart trigger={}", message.message_id)
        await self.on_create(message)

    async def on_delete(self, message_id: str) -> None:
        if self.registry.cancel_and_remove(message_id):
            logger.info("engine.delete.cancelled trigger={}", message_id)

    async def _run(self, session: CompletionSession, message: ChatMessage) -> None:
        cancellation = session.cancellation
        try:
            history = await self.context_builder.build(message, ContextBudget(self.context_budget), cancellation)
            new_turn = self.context_builder.to_turn(message)
            outcome = await self.client.complete(history, new_turn, cancellation)
            if isinstance(outcome, Cancelled):
                logger.info("engine.cancelled trigger={} reason={}", session.trigger_id, outcome.reason)
                return
            if isinstance(outcome, Failed):
                await self._report_failure(session, message, outcome.reason)
                return

            report = await self.delivery.deliver(session, message, outcome)
            if _needs_failure_notice(report):
                await self._report_failure(session, message, "nothing_delivered")
        except OperationCancelled:
            logger.info("engine.cancelled trigger={} reason={}", session.trigger_id, cancellation.reason)
        except Exception:
            logger.exception("engine.session.error trigger={}", session.trigger_id)
            await self._report_failure(session, message, "unexpected_error")

    async def _report_failure(self, session: CompletionSession, message: ChatMessage, reason: str) -> None:
        if session.cancelled:
            return
        logger.warning("engine.failure trigger={} reason={}", session.trigger_id, reason)
        try:
            await session.cancellation.guard(
                self.platform.send_reply(message, OutboundPayload.text(self.failure_message))
            )
        except OperationCancelled:
            logger.info("engine.failure_notice.cancelled trigger={}", session.trigger_id)
        except Exception:
            logger.exception("engine.failure_notice.error trigger={}", session.trigger_id)


def _needs_failure_notice(report: DeliveryReport) -> bool:
    # A failed send is not retried.
    return not (report.cancelled or report.delivered or report.push_failed)
