"""Completion client with credential rotation and retry policy."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from gptbridge.core.cancellation import CancellationToken
from gptbridge.core.credentials import CredentialRotator, mask_credential
from gptbridge.core.turns import ConversationTurn, Role
from gptbridge.errors import (
    ConfigurationError,
    CredentialRejectedError,
    NoCredentialsError,
    OperationCancelled,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
)

DEFAULT_MAX_ATTEMPTS = 5
MIN_OUTPUT_TOKENS = 256
HISTORY_SHARE = 0.75
MAX_BACKOFF_SECONDS = 20.0


@dataclass(frozen=True)
class SamplingOptions:
    model: str
    max_tokens: int = 4096
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stream: bool = True


@dataclass(frozen=True)
class CompletionRequest:
    """One provider request, already shaped to fit the model window."""

    messages: list[dict[str, Any]]
    model: str
    max_tokens: int
    stream: bool
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "max_tokens": self.max_tokens,
            "n": 1,
            "stream": self.stream,
        }
        for name in ("temperature", "top_p", "frequency_penalty", "presence_penalty"):
            value = getattr(self, name)
            if value is not None:
                params[name] = value
        return params


class CompletionTransport(Protocol):
    """Provider transport: returns the whole text, or an async iterator of fragments when streaming."""

    async def create(self, request: CompletionRequest, *, api_key: str) -> str | AsyncIterator[str]: ...


@dataclass(frozen=True)
class CompletedResponse:
    text: str


@dataclass(frozen=True)
class Cancelled:
    reason: str = "cancelled"


@dataclass(frozen=True)
class Failed:
    reason: str
    error: BaseException | None = field(default=None, compare=False)


class FragmentStream:
    """Lazily consumed, single-use sequence of streamed text fragments.

    Iteration stops quietly when the cancellation token fires. Provider
    errors raised mid-stream end the iteration and are kept on ``error``.
    """

    def __init__(
        self,
        fragments: AsyncIterator[str],
        cancellation: CancellationToken,
        *,
        fragment_timeout: float | None = None,
    ) -> None:
        self._fragments = fragments
        self._cancellation = cancellation
        self._fragment_timeout = fragment_timeout
        self._consumed = False
        self.error: ProviderError | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("fragment stream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        iterator = aiter(self._fragments)
        try:
            while not self._cancellation.cancelled:
                try:
                    async with asyncio.timeout(self._fragment_timeout):
                        fragment = await self._cancellation.guard(anext(iterator))
                except (StopAsyncIteration, OperationCancelled):
                    return
                except TimeoutError:
                    self.error = ProviderTimeoutError(f"no fragment within {self._fragment_timeout}s")
                    logger.warning("completion.stream.timeout seconds={}", self._fragment_timeout)
                    return
                except ProviderError as exc:
                    self.error = exc
                    logger.warning("completion.stream.error error={}", exc)
                    return
                if fragment:
                    yield fragment
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except RuntimeError:
                    logger.debug("completion.stream.close_skipped reason=running")


CompletionOutcome = CompletedResponse | FragmentStream | Cancelled | Failed


def shape_turns(
    system_turn: ConversationTurn,
    history: Sequence[ConversationTurn],
    new_turn: ConversationTurn,
    max_tokens: int,
) -> tuple[list[ConversationTurn], int]:
    """Fit the request into the model window.

    Oldest history turns are dropped first while the combined length exceeds
    ``HISTORY_SHARE`` of ``max_tokens``. System and new turns always survive;
    the new turn is cut from the front if it alone overflows. Returns the
    turns and the output allowance.

    The ``ContextBudget`` only bounds the reply-chain walk. Shaping applies its
    own window derived from ``max_tokens``, so history that fit the budget can
    still be dropped here.
    """

    limit = int(max_tokens * HISTORY_SHARE)
    turns = [system_turn, *history, new_turn]
    length = _combined_length(turns)
    while len(turns) > 2 and length > limit:
        del turns[1]
        length = _combined_length(turns)

    if length > limit:
        overhead = length - len(new_turn.content)
        room = limit - overhead
        if room > 0:
            trimmed = ConversationTurn(new_turn.role, new_turn.content[-room:], new_turn.speaker_name)
            turns[-1] = trimmed
            length = _combined_length(turns)

    return turns, max(max_tokens - length, MIN_OUTPUT_TOKENS)


def _combined_length(turns: Sequence[ConversationTurn]) -> int:
    return sum(len(turn.render()) for turn in turns)


class CompletionClient:
    """Issue one logical completion with rotation on credential and rate-limit failures."""

    def __init__(
        self,
        transport: CompletionTransport,
        rotator: CredentialRotator,
        *,
        system_message: str,
        sampling: SamplingOptions,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_timeout: float | None = 60.0,
    ) -> None:
        self._transport = transport
        self._rotator = rotator
        self._system_turn = ConversationTurn(Role.SYSTEM, system_message)
        self._sampling = sampling
        self._max_attempts = max(max_attempts, 1)
        self._attempt_timeout = attempt_timeout

    def build_request(self, history: Sequence[ConversationTurn], new_turn: ConversationTurn) -> CompletionRequest:
        turns, allowance = shape_turns(self._system_turn, history, new_turn, self._sampling.max_tokens)
        return CompletionRequest(
            messages=[turn.to_message() for turn in turns],
            model=self._sampling.model,
            max_tokens=allowance,
            stream=self._sampling.stream,
            temperature=self._sampling.temperature,
            top_p=self._sampling.top_p,
            frequency_penalty=self._sampling.frequency_penalty,
            presence_penalty=self._sampling.presence_penalty,
        )

    async def complete(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn,
        cancellation: CancellationToken,
    ) -> CompletionOutcome:
        request = self.build_request(history, new_turn)
        logger.info(
            "completion.request model={} turns={} max_tokens={} preview={}",
            request.model,
            len(request.messages),
            request.max_tokens,
            new_turn.content[:100],
        )

        for attempt in range(1, self._max_attempts + 1):
            if cancellation.cancelled:
                return Cancelled(cancellation.reason or "cancelled")
            try:
                credential = self._rotator.current()
            except ConfigurationError as exc:
                logger.error("completion.no_credentials error={}", exc)
                return Failed("no_credentials", exc)

            try:
                result = await self._attempt(request, credential, cancellation)
            except OperationCancelled:
                return Cancelled(cancellation.reason or "cancelled")
            except CredentialRejectedError as exc:
                logger.warning(
                    "completion.credential_rejected attempt={} key={} code={}",
                    attempt,
                    mask_credential(credential),
                    exc.code,
                )
                failure = await self._rotate(credential, evict=True)
            except RateLimitedError as exc:
                logger.warning(
                    "completion.rate_limited attempt={} key={} retry_after={} error={}",
                    attempt,
                    mask_credential(credential),
                    exc.retry_after,
                    exc,
                )
                failure = await self._rotate(credential, evict=False)
                if failure is None and attempt < self._max_attempts and self._rotator.size <= 1:
                    try:
                        await cancellation.sleep(_backoff(exc.retry_after, attempt))
                    except OperationCancelled:
                        return Cancelled(cancellation.reason or "cancelled")
            except ProviderError as exc:
                logger.error("completion.failed attempt={} error={}", attempt, exc)
                return Failed("provider_error", exc)
            else:
                logger.info("completion.succeeded attempt={} streamed={}", attempt, not isinstance(result, str))
                if isinstance(result, str):
                    return CompletedResponse(result)
                return FragmentStream(result, cancellation, fragment_timeout=self._attempt_timeout)

            if failure is not None:
                return failure

        logger.error("completion.attempts_exhausted attempts={}", self._max_attempts)
        return Failed("attempts_exhausted")

    async def _attempt(
        self,
        request: CompletionRequest,
        credential: str,
        cancellation: CancellationToken,
    ) -> str | AsyncIterator[str]:
        try:
            async with asyncio.timeout(self._attempt_timeout):
                return await cancellation.guard(self._transport.create(request, api_key=credential))
        except TimeoutError as exc:
            raise ProviderTimeoutError(f"no response within {self._attempt_timeout}s") from exc

    async def _rotate(self, credential: str, *, evict: bool) -> Failed | None:
        try:
            await self._rotator.advance(evict, expected=credential)
        except NoCredentialsError as exc:
            logger.error("completion.no_credentials error={}", exc)
            return Failed("no_credentials", exc)
        except ConfigurationError as exc:
            logger.error("completion.rotation_failed error={}", exc)
            return Failed("rotation_failed", exc)
        return None


def _backoff(retry_after: float | None, attempt: int) -> float:
    delay = retry_after if retry_after is not None and retry_after > 0 else float(attempt)
    return min(delay, MAX_BACKOFF_SECONDS)
