"""Conversation turn model and context budget."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

DEFAULT_SPEAKER = "Unknown Alien"
MAX_SPEAKER_CHARS = 32
# Keep letters, digits and spaces; drop punctuation, symbols and underscores.
_SPEAKER_STRIP_RE = re.compile(r"[^\w ]|_")


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    """One role-tagged message contributed to a completion request."""

    role: Role
    content: str
    speaker_name: str | None = None

    def __post_init__(self) -> None:
        if self.speaker_name is not None and self.role is not Role.USER:
            raise ValueError("speaker_name is only allowed on user turns")

    def __len__(self) -> int:
        return len(self.content)

    def render(self) -> str:
        if self.speaker_name:
            return f"{self.speaker_name}: {self.content}"
        return self.content

    def to_message(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.render()}


@dataclass
class ContextBudget:
    """Remaining length allowance threaded through context reconstruction."""

    remaining: int

    def __post_init__(self) -> None:
        self.remaining = max(self.remaining, 0)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def fits(self, length: int) -> bool:
        return length <= self.remaining

    def consume(self, length: int) -> bool:
        """Take ``length`` from the budget; refuse without change if it does not fit."""
        if not self.fits(length):
            return False
        self.remaining -= length
        return True


def sanitize_speaker(name: str | None) -> str:
    cleaned = _SPEAKER_STRIP_RE.sub("", name or "")
    cleaned = " ".join(cleaned.split())[:MAX_SPEAKER_CHARS].strip()
    return cleaned or DEFAULT_SPEAKER


def clean_mentions(text: str) -> str:
    return text.replace("@", "")
