"""Conversation and system prompt storage collaborators."""

import asyncio
import copy
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .config import DEFAULT_SYSTEM_PROMPT
from .models import Conversation, SystemPrompt

logger = logging.getLogger(__name__)

# Schema version for conversation files
SCHEMA_VERSION = 1


def _default_base_dir() -> Path:
    """Resolve the base directory for conversation storage."""
    env_dir = os.getenv("LLM_CONVERSATION_DIR")
    if env_dir:
        return Path(env_dir)

    xdg_data = os.getenv("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / "llm_orchestrator" / "conversations"

    return Path.home() / ".llm_orchestrator" / "conversations"


def sanitize_name(name: str) -> str:
    """Sanitize identifiers for filesystem safety."""
    raw = (name or "").strip()
    if raw in {"", ".", ".."} or os.path.sep in raw or (os.path.altsep and os.path.altsep in raw):
        raise ValueError("Invalid name")

    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", raw)
    if sanitized in {"", ".", ".."}:
        raise ValueError("Invalid name")
    return sanitized


class ConversationRepository(ABC):
    """Storage for conversations. Every call is an await point."""

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """Return a working copy of the conversation, or None if unknown."""

    @abstractmethod
    async def add(self, conversation: Conversation) -> str:
        """Store a new conversation and return its id."""

    @abstractmethod
    async def update(self, conversation: Conversation) -> None:
        """Overwrite a stored conversation (last writer wins)."""

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation; False if it did not exist."""


class InMemoryConversationRepository(ConversationRepository):
    """Process-local repository.

    Stores and returns deep copies so callers never share a working copy.
    """

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._lock = threading.Lock()

    async def get(self, conversation_id):
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return copy.deepcopy(conversation) if conversation is not None else None

    async def add(self, conversation):
        with self._lock:
            self._conversations[conversation.conversation_id] = copy.deepcopy(conversation)
        return conversation.conversation_id

    async def update(self, conversation):
        with self._lock:
            self._conversations[conversation.conversation_id] = copy.deepcopy(conversation)

    async def delete(self, conversation_id):
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._conversations)


class JsonConversationRepository(ConversationRepository):
    """Filesystem-backed repository, one JSON file per conversation."""

    def __init__(self, base_dir: Optional[Path] = None):
        resolved_base = base_dir if base_dir is not None else _default_base_dir()
        self.base_dir = Path(resolved_base)

    def _path(self, conversation_id: str) -> Path:
        return self.base_dir / f"{sanitize_name(conversation_id)}.json"

    def _read(self, conversation_id: str) -> Optional[Conversation]:
        try:
            path = self._path(conversation_id)
        except ValueError as e:
            logger.warning("Invalid conversation id %r: %s", conversation_id, e)
            return None
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read conversation file %s: %s", path, e)
            return None

        try:
            metadata = data.get("metadata") or {}
            version = metadata.get("schema_version", SCHEMA_VERSION)
            if version > SCHEMA_VERSION:
                logger.warning(
                    "Conversation %s has newer schema version %s (supported: %s)",
                    conversation_id,
                    version,
                    SCHEMA_VERSION,
                )
            return Conversation.from_dict(data["conversation"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed conversation file %s: %s", path, e)
            return None

    def _write(self, conversation: Conversation) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(conversation.conversation_id)
        payload = {
            "conversation": conversation.to_dict(),
            "metadata": {
                "schema_version": SCHEMA_VERSION,
                "saved_at": datetime.now(timezone.utc).isoformat(),
            },
        }
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _remove(self, conversation_id: str) -> bool:
        try:
            path = self._path(conversation_id)
            path.unlink()
        except (FileNotFoundError, ValueError):
            return False
        return True

    def list_ids(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(path.stem for path in self.base_dir.glob("*.json"))

    async def get(self, conversation_id):
        return await asyncio.to_thread(self._read, conversation_id)

    async def add(self, conversation):
        await asyncio.to_thread(self._write, conversation)
        return conversation.conversation_id

    async def update(self, conversation):
        await asyncio.to_thread(self._write, conversation)

    async def delete(self, conversation_id):
        return await asyncio.to_thread(self._remove, conversation_id)


class SystemPromptProvider(ABC):
    @abstractmethod
    async def get_default_prompt(self) -> SystemPrompt:
        """Return the prompt that seeds new conversations."""


class StaticSystemPromptProvider(SystemPromptProvider):
    """Serves one fixed system prompt."""

    def __init__(self, content: str = DEFAULT_SYSTEM_PROMPT):
        self._prompt = SystemPrompt(content=content)

    async def get_default_prompt(self) -> SystemPrompt:
        return self._prompt
