from __future__ import annotations

from gptbridge.core.sessions import SessionRegistry


def test_start_registers_session() -> None:
    registry = SessionRegistry()
    session, token = registry.start("m1")
    assert registry.get("m1") is session
    assert session.cancellation is token
    assert session.destination is None
    assert not token.cancelled


def test_restart_supersedes_previous_generation() -> None:
    registry = SessionRegistry()
    first, first_token = registry.start("m1")
    second, second_token = registry.start("m1")

    assert first_token.cancelled
    assert first_token.reason == "superseded"
    assert not second_token.cancelled
    assert registry.get("m1") is second
    assert second.generation > first.generation
    assert len(registry) == 1


def test_cancel_and_remove() -> None:
    registry = SessionRegistry()
    session, token = registry.start("m1")

    assert registry.cancel_and_remove("m1")
    assert token.cancelled
    assert "m1" not in registry
    assert not registry.cancel_and_remove("m1")
    assert not registry.cancel_and_remove("unknown")


def test_complete_removes_only_its_own_generation() -> None:
    registry = SessionRegistry()
    old, _ = registry.start("m1")
    new, _ = registry.start("m1")

    assert not registry.complete(old)
    assert registry.get("m1") is new
    assert registry.complete(new)
    assert "m1" not in registry
    assert not registry.complete(new)


def test_complete_after_cancel_is_noop() -> None:
    registry = SessionRegistry()
    session, token = registry.start("m1")
    token.cancel()
    assert not registry.complete(session)


def test_edit_storm_keeps_one_active_session_per_trigger() -> None:
    registry = SessionRegistry()
    tokens = []
    for _ in range(50):
        for trigger in ("a", "b"):
            _, token = registry.start(trigger)
            tokens.append(token)
            assert len(registry) <= 2

    live = [token for token in tokens if not token.cancelled]
    assert len(live) == 2
    assert len(registry) == 2
