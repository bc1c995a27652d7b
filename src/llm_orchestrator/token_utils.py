import logging
import math
import os

from .models import Role

logger = logging.getLogger(__name__)

# Tokens per character
LATIN_TOKEN_RATIO = 0.25
CJK_TOKEN_RATIO = 1.0

# Fixed per-message / per-conversation overheads
MESSAGE_OVERHEAD = 4
TOOL_MESSAGE_OVERHEAD = 10
CONVERSATION_OVERHEAD = 3


def contains_cjk(text: str) -> bool:
    """Return True if text contains any Chinese/Japanese/Korean character."""
    if not text:
        return False
    return any(
        "\u1100" <= char <= "\u11ff"  # Hangul Jamo
        or "\u3000" <= char <= "\u303f"  # CJK symbols and punctuation
        or "\u3040" <= char <= "\u309f"  # Hiragana
        or "\u30a0" <= char <= "\u30ff"  # Katakana
        or "\u4e00" <= char <= "\u9fff"  # CJK unified ideographs
        for char in text
    )


def estimate_tokens(text: str) -> int:
    """Estimate token count for a piece of text.

    Text containing any CJK character is counted at ~1 token per character,
    everything else at ~4 characters per token. Always rounds up so the
    estimate stays on the conservative side.

    Args:
        text: Text to estimate

    Returns:
        Estimated token count (0 for None or empty text)
    """
    if text is None:
        return 0
    if not isinstance(text, str):
        text = str(text)
    if not text:
        return 0

    ratio = CJK_TOKEN_RATIO if contains_cjk(text) else LATIN_TOKEN_RATIO
    return math.ceil(len(text) * ratio)


def estimate_message_tokens(message) -> int:
    """Estimate tokens for one message including its role overhead."""
    if message.role == Role.TOOL:
        return estimate_tool_response_tokens(message.content)
    return MESSAGE_OVERHEAD + estimate_tokens(message.content)


def estimate_messages_tokens(messages) -> int:
    """Estimate tokens for a whole message list.

    An empty list costs nothing; otherwise the fixed conversation overhead is
    added to the per-message sum.
    """
    if not messages:
        return 0
    return CONVERSATION_OVERHEAD + sum(estimate_message_tokens(m) for m in messages)


def estimate_tool_call_tokens(tool_call) -> int:
    return (
        TOOL_MESSAGE_OVERHEAD
        + estimate_tokens(tool_call.tool_name)
        + estimate_tokens(tool_call.arguments)
    )


def estimate_tool_response_tokens(content: str) -> int:
    return TOOL_MESSAGE_OVERHEAD + estimate_tokens(content)


def get_max_context_length(model_name: str) -> int:
    """Get maximum context length for the specified model

    Reads from environment variables with fallback to model defaults

    Args:
        model_name: Model identifier

    Returns:
        Maximum context length in tokens
    """
    model_lower = (model_name or "").lower()

    if "gemini" in model_lower:
        gemini_max = os.getenv("GEMINI_MAX_CONTEXT_LENGTH")
        if gemini_max:
            try:
                return int(gemini_max)
            except ValueError:
                logger.warning("Invalid GEMINI_MAX_CONTEXT_LENGTH: %s. Using default.", gemini_max)

    if "gpt" in model_lower:
        openai_max = os.getenv("OPENAI_MAX_CONTEXT_LENGTH")
        if openai_max:
            try:
                return int(openai_max)
            except ValueError:
                logger.warning("Invalid OPENAI_MAX_CONTEXT_LENGTH: %s. Using default.", openai_max)

    default_max = os.getenv("DEFAULT_MAX_CONTEXT_LENGTH")
    if default_max:
        try:
            return int(default_max)
        except ValueError:
            logger.warning("Invalid DEFAULT_MAX_CONTEXT_LENGTH: %s. Using default.", default_max)

    # Built-in model-specific defaults, first match wins
    MODEL_DEFAULTS = [
        ("gemini-2", 1048576),
        ("gemini-1.5-pro", 1000000),
        ("gemini-1.5-flash", 1048576),
        ("gemini-pro", 32760),
        ("gemini", 32760),
        ("gpt-4o", 128000),
        ("gpt-4-turbo", 128000),
        ("gpt-4-1106", 128000),
        ("gpt-4", 8192),
        ("gpt-3.5-turbo", 16385),
        ("gpt-3.5", 4096),
        ("claude-3", 200000),
    ]

    for pattern, context_length in MODEL_DEFAULTS:
        if pattern in model_lower:
            return context_length

    return 4096
