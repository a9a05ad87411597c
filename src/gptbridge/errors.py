"""Application-level exception types for gptbridge."""

from __future__ import annotations


class GptBridgeError(Exception):
    """Base exception for gptbridge."""


class ConfigurationError(GptBridgeError):
    """Base exception for configuration and startup validation errors."""


class NoCredentialsError(ConfigurationError):
    """Raised when the credential pool is empty."""


class MissingSettingError(ConfigurationError):
    """Raised when a required setting is not configured."""


class ProviderError(GptBridgeError):
    """Raised for completion provider failures that are not retried."""


class CredentialRejectedError(ProviderError):
    """Raised when the provider rejects a credential for good (invalid key, quota exhausted)."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RateLimitedError(ProviderError):
    """Raised when the provider asks the caller to slow down."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTimeoutError(RateLimitedError):
    """Raised when one completion attempt exceeds its wall-clock timeout."""


class MessageUnavailableError(GptBridgeError):
    """Raised when a referenced chat message cannot be fetched."""


class OperationCancelled(GptBridgeError):
    """Raised by cancellation-aware waits once their token fires."""
