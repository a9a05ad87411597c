"""Reflect completion output into the chat as a reply plus throttled edits."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from gptbridge.channels.base import ChatMessage, ChatPlatform, OutboundPayload
from gptbridge.core.completion import CompletedResponse, FragmentStream
from gptbridge.core.sessions import CompletionSession
from gptbridge.errors import OperationCancelled, ProviderError

INLINE_LIMIT = 2000
ATTACHMENT_NAME = "message.md"


@dataclass(frozen=True)
class DeliveryReport:
    content: str
    delivered: bool
    as_attachment: bool = False
    cancelled: bool = False
    stream_error: ProviderError | None = None
    push_failed: bool = False


class _ReplyWriter:
    """Keeps at most one send/edit in flight for one session."""

    def __init__(self, coordinator: DeliveryCoordinator, session: CompletionSession, trigger: ChatMessage) -> None:
        self._coordinator = coordinator
        self._session = session
        self._trigger = trigger
        self._task: asyncio.Task[None] | None = None
        self.pushed: str | None = None
        self.pushed_attachment = False
        self.failed = False
        session.cancellation.add_callback(self.abort)

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def push_soon(self, content: str) -> None:
        if self.busy or self.failed or self._session.cancelled:
            return
        if len(content) > self._coordinator.inline_limit:
            # Oversized content goes out once, as an attachment, when the stream ends.
            return
        self._task = asyncio.create_task(self._push(content, final=False))

    async def finish(self, content: str) -> None:
        cancellation = self._session.cancellation
        if self._task is not None:
            await cancellation.guard(asyncio.gather(self._task, return_exceptions=True))
        if self.failed or not content or content == self.pushed:
            return
        await cancellation.guard(self._push(content, final=True))

    def abort(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _push(self, content: str, *, final: bool) -> None:
        platform = self._coordinator.platform
        payload = self._coordinator.render(content)
        session = self._session
        try:
            if session.destination is None:
                session.destination = await platform.send_reply(self._trigger, payload)
            else:
                edited = await platform.edit_message(session.destination, payload)
                if edited is not None:
                    session.destination = edited
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failed = True
            logger.exception("delivery.failed trigger={} final={}", session.trigger_id, final)
            return

        self.pushed = content
        self.pushed_attachment = payload.is_attachment
        if not final and self._coordinator.edit_interval > 0:
            await asyncio.sleep(self._coordinator.edit_interval)


class DeliveryCoordinator:
    """Deliver an atomic response or a fragment stream to the trigger's channel."""

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        inline_limit: int = INLINE_LIMIT,
        attachment_name: str = ATTACHMENT_NAME,
        edit_interval: float = 0.0,
    ) -> None:
        self.platform = platform
        self.inline_limit = inline_limit
        self.attachment_name = attachment_name
        self.edit_interval = edit_interval

    def render(self, content: str) -> OutboundPayload:
        if len(content) > self.inline_limit:
            return OutboundPayload.attachment(content, self.attachment_name)
        return OutboundPayload.text(content)

    async def deliver(
        self,
        session: CompletionSession,
        trigger: ChatMessage,
        outcome: CompletedResponse | FragmentStream,
    ) -> DeliveryReport:
        writer = _ReplyWriter(self, session, trigger)
        stream_error: ProviderError | None = None

        if isinstance(outcome, CompletedResponse):
            content = outcome.text
        else:
            content = ""
            async for fragment in outcome:
                content += fragment
                writer.push_soon(content)
            stream_error = outcome.error

        if session.cancelled:
            writer.abort()
            logger.info("delivery.cancelled trigger={} delivered_chars={}", session.trigger_id, len(writer.pushed or ""))
            return DeliveryReport(content, delivered=writer.pushed is not None, cancelled=True)

        try:
            await writer.finish(content)
        except OperationCancelled:
            logger.info("delivery.cancelled trigger={} stage=final", session.trigger_id)
            return DeliveryReport(content, delivered=writer.pushed is not None, cancelled=True)

        logger.info(
            "delivery.done trigger={} chars={} attachment={} failed={}",
            session.trigger_id,
            len(content),
            writer.pushed_attachment,
            writer.failed,
        )
        return DeliveryReport(
            content,
            delivered=writer.pushed is not None,
            as_attachment=writer.pushed_attachment,
            stream_error=stream_error,
            push_failed=writer.failed,
        )
