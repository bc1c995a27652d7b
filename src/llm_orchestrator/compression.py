from typing import Any, Dict, List

from .models import Message, Role
from .token_utils import CONVERSATION_OVERHEAD, estimate_message_tokens, estimate_messages_tokens


def trim_conversation(
    messages: List[Message],
    max_tokens: int,
    preserve_system: bool = True,
) -> List[Message]:
    """Trim conversation history to a token budget, keeping the newest messages.

    If the whole list already fits it is returned as-is (the same object).
    Otherwise the first system message is kept (when preserve_system is set)
    and non-system messages are added from newest to oldest until the next one
    would overflow. A single message is never truncated, so a system message
    that alone exceeds the budget is returned by itself.
    """
    if not messages:
        return messages

    if estimate_messages_tokens(messages) <= max_tokens:
        return messages

    system_message = None
    if preserve_system:
        system_message = next((m for m in messages if m.role == Role.SYSTEM), None)

    accumulated = estimate_message_tokens(system_message) if system_message else 0

    kept = []
    for message in reversed(messages):
        if message.role == Role.SYSTEM:
            continue
        tokens = estimate_message_tokens(message)
        if CONVERSATION_OVERHEAD + accumulated + tokens > max_tokens:
            break
        kept.append(message)
        accumulated += tokens

    kept.reverse()
    if system_message is not None:
        kept.insert(0, system_message)
    return kept


def get_trim_info(
    messages: List[Message],
    max_tokens: int,
    preserve_system: bool = True,
) -> Dict[str, Any]:
    """Get information about how history would be trimmed"""
    if not messages:
        return {
            "messages_removed": 0,
            "original_tokens": 0,
            "trimmed_tokens": 0,
        }

    trimmed = trim_conversation(messages, max_tokens, preserve_system)

    return {
        "messages_removed": len(messages) - len(trimmed),
        "original_tokens": estimate_messages_tokens(messages),
        "trimmed_tokens": estimate_messages_tokens(trimmed),
    }
