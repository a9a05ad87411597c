"""Provider credential pool and rotation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from gptbridge.errors import NoCredentialsError

PersistKeys = Callable[[list[str]], Awaitable[None]]


def mask_credential(key: str) -> str:
    if not key:
        return "<empty>"
    return "*" * 8 + key[int(len(key) * 0.8) :]


@dataclass(frozen=True)
class CredentialPool:
    """Ordered credentials plus the index of the active one.

    Instances are immutable; the rotator swaps whole pools so readers always
    see a consistent pair of keys and index.
    """

    keys: tuple[str, ...]
    index: int = 0

    def __post_init__(self) -> None:
        if self.keys and not 0 <= self.index < len(self.keys):
            object.__setattr__(self, "index", self.index % len(self.keys))

    def __len__(self) -> int:
        return len(self.keys)

    @property
    def active(self) -> str:
        if not self.keys:
            raise NoCredentialsError("no provider credentials left in the pool")
        return self.keys[self.index]

    def skip(self) -> CredentialPool:
        if not self.keys:
            raise NoCredentialsError("no provider credentials left in the pool")
        return CredentialPool(self.keys, (self.index + 1) % len(self.keys))

    def evict(self, key: str) -> CredentialPool:
        position = self.keys.index(key)
        keys = self.keys[:position] + self.keys[position + 1 :]
        if not keys:
            return CredentialPool(())
        index = self.index
        if position < index:
            index -= 1
        # Evicting the active key makes its successor (wrapping) active.
        return CredentialPool(keys, index % len(keys))


class CredentialRotator:
    """Owns the credential pool shared by every session.

    Reads of the active credential never wait; concurrent ``advance`` calls
    are serialized and compare against the credential the failing request
    actually used, so a burst of failures on one key rotates only once.
    """

    def __init__(self, keys: Sequence[str], *, persist: PersistKeys | None = None) -> None:
        unique = tuple(dict.fromkeys(key.strip() for key in keys if key and key.strip()))
        self._pool = CredentialPool(unique)
        self._persist = persist
        self._lock = asyncio.Lock()

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def size(self) -> int:
        return len(self._pool)

    def current(self) -> str:
        return self._pool.active

    async def advance(self, evict: bool, *, expected: str | None = None) -> bool:
        """Move past the active credential, removing it for good when ``evict`` is set.

        ``expected`` is the credential the caller failed with. If another
        session already rotated away from it the pointer is left alone (an
        evicted key is still dropped). Returns True when the pool changed.
        """
        async with self._lock:
            pool = self._pool
            if not pool.keys:
                raise NoCredentialsError("no provider credentials left in the pool")

            target = pool.active if expected is None else expected
            if evict:
                if target not in pool.keys:
                    return False
                updated = pool.evict(target)
                if self._persist is not None:
                    await self._persist(list(updated.keys))
                self._pool = updated
                logger.warning(
                    "credentials.evicted key={} remaining={}",
                    mask_credential(target),
                    len(updated),
                )
                return True

            if target != pool.active:
                return False
            self._pool = pool.skip()
            logger.info(
                "credentials.rotated from={} to={}",
                mask_credential(target),
                mask_credential(self._pool.active),
            )
            return True
