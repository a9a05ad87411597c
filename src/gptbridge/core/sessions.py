"""Per-trigger completion sessions."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from gptbridge.core.cancellation import CancellationToken

_generations = itertools.count(1)


@dataclass(eq=False)
class CompletionSession:
    """One in-flight exchange triggered by one inbound message."""

    trigger_id: str
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    destination: Any = None
    generation: int = field(default_factory=lambda: next(_generations))

    @property
    def cancelled(self) -> bool:
        return self.cancellation.cancelled


class SessionRegistry:
    """Tracks at most one active session per trigger id.

    Every method is synchronous so a call runs to completion between two
    suspension points of the event loop; create, edit and delete events for
    one trigger therefore apply in arrival order.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CompletionSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, trigger_id: object) -> bool:
        return trigger_id in self._sessions

    def get(self, trigger_id: str) -> CompletionSession | None:
        return self._sessions.get(trigger_id)

    def start(self, trigger_id: str) -> tuple[CompletionSession, CancellationToken]:
        """Install a fresh session, cancelling any session it supersedes."""
        previous = self._sessions.pop(trigger_id, None)
        if previous is not None:
            previous.cancellation.cancel("superseded")
            logger.info("session.superseded trigger={} generation={}", trigger_id, previous.generation)

        session = CompletionSession(trigger_id)
        self._sessions[trigger_id] = session
        logger.debug("session.started trigger={} generation={}", trigger_id, session.generation)
        return session, session.cancellation

    def cancel_and_remove(self, trigger_id: str) -> bool:
        session = self._sessions.pop(trigger_id, None)
        if session is None:
            return False
        session.cancellation.cancel("deleted")
        logger.info("session.cancelled trigger={} generation={}", trigger_id, session.generation)
        return True

    def complete(self, session: CompletionSession) -> bool:
        """Retire ``session`` after it finished; a no-op once it was cancelled or replaced."""
        if session.cancelled or self._sessions.get(session.trigger_id) is not session:
            return False
        del self._sessions[session.trigger_id]
        logger.debug("session.completed trigger={} generation={}", session.trigger_id, session.generation)
        return True
