from __future__ import annotations

import asyncio

import pytest
from fakes import FakePlatform, FakeTransport

from gptbridge.core.completion import CompletionClient, SamplingOptions
from gptbridge.core.credentials import CredentialRotator
from gptbridge.core.engine import ConversationEngine
from gptbridge.errors import ProviderError

FAILURE = "sorry, try again later"


def _engine(platform: FakePlatform, transport: FakeTransport, *, stream: bool = False) -> ConversationEngine:
    client = CompletionClient(
        transport,
        CredentialRotator(["k1", "k2"]),
        system_message="sys",
        sampling=SamplingOptions(model="gpt-test", stream=stream),
        attempt_timeout=5.0,
    )
    return ConversationEngine(platform, client, context_budget=1000, failure_message=FAILURE)


@pytest.mark.asyncio
async def test_trigger_with_empty_history_gets_one_reply(platform: FakePlatform) -> None:
    engine = _engine(platform, FakeTransport("OK"))
    trigger = platform.add("t", "hello")

    await engine.on_create(trigger)

    assert platform.sent_contents() == ["OK"]
    assert platform.edits == []
    assert platform.typing_channels == ["c1"]
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_history_is_sent_with_request(platform: FakePlatform) -> None:
    transport = FakeTransport("OK")
    engine = _engine(platform, transport)
    trigger = platform.chain(["what is 2+2", "4"])

    await engine.on_create(trigger)

    request, _ = transport.calls[0]
    assert [message["role"] for message in request.messages] == ["system", "user", "assistant", "user"]
    assert request.messages[-1]["content"] == "Alice: question"


@pytest.mark.asyncio
async def test_streamed_reply_converges_to_final_text(platform: FakePlatform) -> None:
    items = ["Hel", "lo ", " world"]
    engine = _engine(platform, FakeTransport(items), stream=True)

    await engine.on_create(platform.add("t", "hello"))

    assert platform.sent_contents() == ["Hel"]
    assert platform.edit_contents()[-1] == "".join(items)
    assert len(platform.edits) <= len(items)


@pytest.mark.asyncio
async def test_provider_failure_sends_generic_message(platform: FakePlatform) -> None:
    engine = _engine(platform, FakeTransport(ProviderError("internal details")))

    await engine.on_create(platform.add("t", "hello"))

    assert platform.sent_contents() == [FAILURE]
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_empty_answer_sends_generic_message(platform: FakePlatform) -> None:
    engine = _engine(platform, FakeTransport(""))

    await engine.on_create(platform.add("t", "hello"))

    assert platform.sent_contents() == [FAILURE]


@pytest.mark.asyncio
async def test_unexpected_error_sends_generic_message(platform: FakePlatform, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = _engine(platform, FakeTransport("OK"))

    async def explode(*_args: object, **_kwargs: object) -> list[object]:
        raise KeyError("boom")

    monkeypatch.setattr(engine.context_builder, "build", explode)

    await engine.on_create(platform.add("t", "hello"))

    assert platform.sent_contents() == [FAILURE]


@pytest.mark.asyncio
async def test_delete_during_call_suppresses_delivery(platform: FakePlatform) -> None:
    started = asyncio.Event()

    async def slow() -> str:
        started.set()
        await asyncio.sleep(10)
        return "late"

    engine = _engine(platform, FakeTransport(slow))
    task = asyncio.create_task(engine.on_create(platform.add("t", "hello")))
    await started.wait()

    await engine.on_delete("t")
    await asyncio.wait_for(task, timeout=1)

    assert platform.sent == []
    assert platform.edits == []
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_delete_of_unknown_message_is_noop(platform: FakePlatform) -> None:
    engine = _engine(platform, FakeTransport())
    await engine.on_delete("missing")
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_edit_of_finished_exchange_is_ignored(platform: FakePlatform) -> None:
    transport = FakeTransport("OK", "AGAIN")
    engine = _engine(platform, transport)
    trigger = platform.add("t", "hello")

    await engine.on_create(trigger)
    await engine.on_edit(platform.add("t", "hello, edited"))

    assert platform.sent_contents() == ["OK"]
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_edit_mid_stream_supersedes_previous_generation(platform: FakePlatform) -> None:
    transport = FakeTransport(["old-1 ", "old-2 ", "old-3 ", "old-4 "], "NEW", fragment_delay=0.02)
    engine = _engine(platform, transport, stream=True)
    trigger = platform.add("t", "hello")

    first = asyncio.create_task(engine.on_create(trigger))
    while not platform.sent:
        await asyncio.sleep(0.005)

    old_session = engine.registry.get("t")
    assert old_session is not None
    fired: list[str] = []
    old_session.cancellation.add_callback(lambda: fired.append("fired"))

    await engine.on_edit(platform.add("t", "hello, edited"))
    await asyncio.wait_for(first, timeout=1)
    await asyncio.sleep(0.05)

    assert fired == ["fired"]
    new_index = platform.log.index(("send", "NEW"))
    assert all("old" not in (content or "") for _, content in platform.log[new_index:])
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_edit_storm_delivers_only_last_generation(platform: FakePlatform) -> None:
    def slow_answer(label: str):
        async def answer() -> str:
            await asyncio.sleep(0.05)
            return label

        return answer

    script = [slow_answer(f"gen-{index}") for index in range(8)]
    engine = _engine(platform, FakeTransport(*script))

    tasks = [asyncio.create_task(engine.on_create(platform.add("t", "v0")))]
    await asyncio.sleep(0.005)
    for index in range(1, 8):
        tasks.append(asyncio.create_task(engine.on_edit(platform.add("t", f"v{index}"))))
        await asyncio.sleep(0.005)
        assert len(engine.registry) <= 1

    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

    assert platform.sent_contents() == ["gen-7"]
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_stalled_stream_keeps_partial_answer_without_failure_notice(platform: FakePlatform) -> None:
    async def stalled():
        yield "Hel"
        yield "lo"
        await asyncio.sleep(10)

    async def start():
        return stalled()

    client = CompletionClient(
        FakeTransport(start),
        CredentialRotator(["k1"]),
        system_message="sys",
        sampling=SamplingOptions(model="gpt-test", stream=True),
        attempt_timeout=0.05,
    )
    engine = ConversationEngine(platform, client, failure_message=FAILURE)

    await engine.on_create(platform.add("t", "hello"))

    assert FAILURE not in platform.sent_contents()
    assert platform.log[-1][1] == "Hello"
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_delete_during_failure_notice_suppresses_it(platform: FakePlatform) -> None:
    platform.send_delay = 0.05
    engine = _engine(platform, FakeTransport(ProviderError("boom")))
    trigger = platform.add("t", "hello")

    task = asyncio.create_task(engine.on_create(trigger))
    await asyncio.sleep(0.02)
    await engine.on_delete("t")
    await task

    assert platform.sent == []
