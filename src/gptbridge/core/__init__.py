"""Conversation session and completion delivery engine."""

from gptbridge.core.cancellation import CancellationToken
from gptbridge.core.completion import (
    Cancelled,
    CompletedResponse,
    CompletionClient,
    CompletionOutcome,
    CompletionRequest,
    Failed,
    FragmentStream,
    SamplingOptions,
)
from gptbridge.core.context import ContextBuilder
from gptbridge.core.credentials import CredentialPool, CredentialRotator
from gptbridge.core.delivery import DeliveryCoordinator, DeliveryReport
from gptbridge.core.engine import ConversationEngine
from gptbridge.core.sessions import CompletionSession, SessionRegistry
from gptbridge.core.turns import ContextBudget, ConversationTurn, Role

__all__ = [
    "CancellationToken",
    "Cancelled",
    "CompletedResponse",
    "CompletionClient",
    "CompletionOutcome",
    "CompletionRequest",
    "CompletionSession",
    "ContextBudget",
    "ContextBuilder",
    "ConversationEngine",
    "ConversationTurn",
    "CredentialPool",
    "CredentialRotator",
    "DeliveryCoordinator",
    "DeliveryReport",
    "Failed",
    "FragmentStream",
    "Role",
    "SamplingOptions",
    "SessionRegistry",
]
