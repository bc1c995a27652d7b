"""Exception hierarchy for the orchestration layer.

Recoverable provider failures never leave the orchestrator as exceptions; they
are turned into a DegradedResponse (see models.py). Only the classes derived
from FatalOrchestrationError are propagated to callers of the send operations.
"""


class OrchestrationError(Exception):
    """Base class for all errors raised by llm_orchestrator."""


class FatalOrchestrationError(OrchestrationError):
    """A send request cannot be served by any provider."""


class NoProviderAvailableError(FatalOrchestrationError):
    """The provider registry is empty."""

    def __init__(self, message="No LLM provider available"):
        super().__init__(message)


class NoVisionProviderError(FatalOrchestrationError):
    """No vision-capable, credentialed, non-backed-off provider exists."""

    def __init__(self, message="No vision-capable LLM provider available"):
        super().__init__(message)


class ConversationNotFoundError(OrchestrationError, LookupError):
    """A tool-augmented send referenced an unknown conversation id."""

    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ProviderError(OrchestrationError):
    """A provider adapter could not serve a request (missing key, unsupported feature)."""

    def __init__(self, provider_name, message):
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")
