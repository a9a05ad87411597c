from __future__ import annotations

import asyncio

import pytest

from gptbridge.core.credentials import CredentialPool, CredentialRotator, mask_credential
from gptbridge.errors import NoCredentialsError


@pytest.mark.asyncio
async def test_evict_shrinks_pool_and_persists() -> None:
    persisted: list[list[str]] = []

    async def persist(keys: list[str]) -> None:
        persisted.append(keys)

    rotator = CredentialRotator(["k1", "k2", "k3"], persist=persist)
    assert await rotator.advance(True)
    assert rotator.size == 2
    assert rotator.current() == "k2"
    assert persisted == [["k2", "k3"]]


@pytest.mark.asyncio
async def test_evict_until_empty_then_fail_fast() -> None:
    rotator = CredentialRotator(["k1", "k2"])
    await rotator.advance(True)
    await rotator.advance(True)
    assert rotator.size == 0
    with pytest.raises(NoCredentialsError):
        rotator.current()
    with pytest.raises(NoCredentialsError):
        await rotator.advance(True)
    assert rotator.size == 0


@pytest.mark.asyncio
async def test_skip_preserves_size_and_wraps() -> None:
    rotator = CredentialRotator(["k1", "k2", "k3"])
    seen = []
    for _ in range(4):
        await rotator.advance(False)
        seen.append(rotator.current())
    assert seen == ["k2", "k3", "k1", "k2"]
    assert rotator.size == 3


@pytest.mark.asyncio
async def test_evicting_last_position_wraps_to_first() -> None:
    rotator = CredentialRotator(["k1", "k2", "k3"])
    await rotator.advance(False)
    await rotator.advance(False)
    await rotator.advance(True)
    assert rotator.current() == "k1"
    assert rotator.pool.keys == ("k1", "k2")


@pytest.mark.asyncio
async def test_stale_skip_is_ignored() -> None:
    rotator = CredentialRotator(["k1", "k2", "k3"])
    assert await rotator.advance(False, expected="k1")
    assert not await rotator.advance(False, expected="k1")
    assert rotator.current() == "k2"


@pytest.mark.asyncio
async def test_stale_evict_still_drops_the_key() -> None:
    rotator = CredentialRotator(["k1", "k2", "k3"])
    await rotator.advance(False, expected="k1")
    assert await rotator.advance(True, expected="k1")
    assert rotator.pool.keys == ("k2", "k3")
    assert rotator.current() == "k2"
    assert not await rotator.advance(True, expected="k1")


@pytest.mark.asyncio
async def test_concurrent_failures_on_one_key_rotate_once() -> None:
    async def slow_persist(_keys: list[str]) -> None:
        await asyncio.sleep(0.01)

    rotator = CredentialRotator(["k1", "k2", "k3"], persist=slow_persist)
    results = await asyncio.gather(*(rotator.advance(True, expected="k1") for _ in range(5)))
    assert results.count(True) == 1
    assert rotator.pool.keys == ("k2", "k3")


@pytest.mark.asyncio
async def test_failed_persist_leaves_pool_untouched() -> None:
    async def broken(_keys: list[str]) -> None:
        raise OSError("disk full")

    rotator = CredentialRotator(["k1", "k2"], persist=broken)
    with pytest.raises(OSError):
        await rotator.advance(True)
    assert rotator.pool.keys == ("k1", "k2")


def test_duplicates_and_blanks_are_dropped() -> None:
    rotator = CredentialRotator(["k1", " ", "k1", "k2 "])
    assert rotator.pool.keys == ("k1", "k2")


def test_pool_index_normalized() -> None:
    assert CredentialPool(("a", "b"), 5).active == "b"


def test_mask_credential_shows_only_tail() -> None:
    masked = mask_credential("sk-abcdefghij")
    assert masked.endswith("hij")
    assert "abc" not in masked
