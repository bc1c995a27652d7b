"""Orchestration layer over interchangeable LLM providers."""

from .errors import (
    ConversationNotFoundError,
    FatalOrchestrationError,
    NoProviderAvailableError,
    NoVisionProviderError,
    OrchestrationError,
    ProviderError,
)
from .llm_service import LLMService
from .models import (
    Conversation,
    DegradedResponse,
    Message,
    Model,
    Response,
    Role,
    ToolCall,
    ToolExecutionResult,
    Usage,
)

__version__ = "0.1.0"

__all__ = [
    "LLMService",
    "Conversation",
    "DegradedResponse",
    "Message",
    "Model",
    "Response",
    "Role",
    "ToolCall",
    "ToolExecutionResult",
    "Usage",
    "OrchestrationError",
    "FatalOrchestrationError",
    "NoProviderAvailableError",
    "NoVisionProviderError",
    "ConversationNotFoundError",
    "ProviderError",
]
