"""OpenAI SDK transport for the completion client."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion, ChatCompletionChunk

from gptbridge.core.completion import CompletionRequest
from gptbridge.errors import CredentialRejectedError, ProviderError, ProviderTimeoutError, RateLimitedError

CREDENTIAL_FATAL_CODES = frozenset({"insufficient_quota", "access_terminated", "invalid_api_key"})


class OpenAITransport:
    """Issue chat completions with a per-call API key.

    One ``AsyncOpenAI`` client is kept per key. SDK retries are disabled; the
    completion client owns the retry policy.
    """

    def __init__(self, *, base_url: str | None = None, timeout: float | None = None) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(api_key=api_key, base_url=self._base_url, timeout=self._timeout, max_retries=0)
            self._clients[api_key] = client
        return client

    async def create(self, request: CompletionRequest, *, api_key: str) -> str | AsyncIterator[str]:
        client = self._client(api_key)
        try:
            response = await client.chat.completions.create(**request.to_params())
        except openai.APIError as exc:
            raise translate_error(exc) from exc

        if isinstance(response, ChatCompletion):
            return _completion_text(response)
        return _iter_fragments(response)

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.close()


async def _iter_fragments(stream: openai.AsyncStream[ChatCompletionChunk]) -> AsyncIterator[str]:
    try:
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content
    except openai.APIError as exc:
        raise translate_error(exc) from exc
    finally:
        await stream.close()


def _completion_text(response: ChatCompletion) -> str:
    if not response.choices:
        return ""
    return response.choices[0].message.content or ""


def translate_error(exc: openai.APIError) -> ProviderError:
    """Map an SDK error onto the provider error taxonomy."""

    code = _error_code(exc)
    if code in CREDENTIAL_FATAL_CODES or isinstance(exc, openai.AuthenticationError | openai.PermissionDeniedError):
        return CredentialRejectedError(str(exc), code=code)
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(str(exc))
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(str(exc), retry_after=_retry_after(exc))
    logger.debug("openai.error type={} code={}", type(exc).__name__, code)
    return ProviderError(str(exc))


def _error_code(exc: openai.APIError) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    body: Any = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and isinstance(error.get("code"), str):
            return error["code"]
    return None


def _retry_after(exc: openai.RateLimitError) -> float | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
