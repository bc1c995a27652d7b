"""Data model shared by providers, the orchestrator and the repositories.

Messages carry a fixed role tag rather than a class per role. Conversations and
messages round-trip through plain dicts so repositories can store them as JSON.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Role:
    """Message role tags."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    ALL = frozenset({SYSTEM, USER, ASSISTANT, TOOL})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """A single conversation message.

    Attributes:
        role: One of the Role tags
        content: Plain text content
        name: Tool name for role="tool" messages
    """

    role: str
    content: str = ""
    name: Optional[str] = None

    def __post_init__(self):
        if self.role not in Role.ALL:
            raise ValueError(f"Invalid role: '{self.role}'. Must be one of {sorted(Role.ALL)}")
        if self.content is None:
            self.content = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    @classmethod
    def tool(cls, tool_name: str, content: str) -> "Message":
        return cls(Role.TOOL, content, name=tool_name)

    def to_dict(self) -> Dict[str, Any]:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=data["role"], content=data.get("content") or "", name=data.get("name"))


@dataclass(frozen=True)
class Model:
    """Immutable description of a model offered by a provider."""

    id: str
    name: str = ""
    max_context_length: int = 4096
    supports_tool_calls: bool = False
    supports_vision: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class ToolCall:
    """A structured tool invocation emitted by a provider.

    Attributes:
        id: Provider-assigned call id (may be empty)
        tool_name: Name of the tool to run
        arguments: Serialized argument payload (usually JSON)
    """

    id: str
    tool_name: str
    arguments: str = "{}"

    @classmethod
    def from_arguments(cls, tool_name: str, arguments: Any, call_id: Optional[str] = None):
        """Build a ToolCall from an already-parsed argument mapping."""
        if isinstance(arguments, str):
            payload = arguments
        else:
            payload = json.dumps(arguments or {}, ensure_ascii=False)
        call_id = call_id or f"call_{uuid.uuid4().hex[:12]}"
        return cls(id=call_id, tool_name=tool_name, arguments=payload)


@dataclass
class Usage:
    """Token usage counters (estimates unless the vendor reported them)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class Response:
    """Result of a send operation."""

    provider_name: str
    model_name: str
    message: Message
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    conversation_id: Optional[str] = None

    is_degraded = False

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class DegradedResponse(Response):
    """Response synthesized after every attempted provider failed.

    Returned normally (never raised) so callers always get a valid Response.
    """

    error: Optional[str] = None

    is_degraded = True


@dataclass
class ToolExecutionResult:
    """Outcome reported by a ToolExecutor."""

    success: bool
    data: Any = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any) -> "ToolExecutionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error_message: str) -> "ToolExecutionResult":
        return cls(success=False, error_message=error_message)


@dataclass
class SystemPrompt:
    """A stored system prompt."""

    content: str
    name: str = "default"
    is_default: bool = True


@dataclass
class Conversation:
    """A stored conversation with its ordered message history."""

    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    class_id: Optional[str] = None
    date: str = field(default_factory=lambda: _utcnow().strftime("%Y-%m-%d"))
    time_slot: Optional[int] = None
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _utcnow()

    def add_system_message(self, content: str) -> None:
        self.add_message(Message.system(content))

    def add_user_message(self, content: str) -> None:
        self.add_message(Message.user(content))

    def add_assistant_message(self, content: str) -> None:
        self.add_message(Message.assistant(content))

    def add_tool_message(self, tool_name: str, content: str) -> None:
        self.add_message(Message.tool(tool_name, content))

    @property
    def system_message(self) -> Optional[Message]:
        """First system message, if any."""
        for message in self.messages:
            if message.role == Role.SYSTEM:
                return message
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "class_id": self.class_id,
            "date": self.date,
            "time_slot": self.time_slot,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        created_at = _parse_timestamp(data.get("created_at"))
        updated_at = _parse_timestamp(data.get("updated_at")) or created_at
        messages = []
        for i, raw in enumerate(data.get("messages", [])):
            try:
                messages.append(Message.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed message at index %d: %s", i, e)
        return cls(
            conversation_id=data["conversation_id"],
            class_id=data.get("class_id"),
            date=data.get("date") or _utcnow().strftime("%Y-%m-%d"),
            time_slot=data.get("time_slot"),
            messages=messages,
            created_at=created_at or _utcnow(),
            updated_at=updated_at or _utcnow(),
        )


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("Invalid timestamp in conversation data: %r", value)
        return None
