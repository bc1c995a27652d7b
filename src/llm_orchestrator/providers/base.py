"""Base classes for LLM providers

This module defines the abstract interface that all LLM providers must implement.
Every network-facing method is a coroutine so asyncio task cancellation reaches
the in-flight SDK call.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import ProviderError
from ..models import Message, Model, Response, Role
from ..token_utils import get_max_context_length

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]


def guess_image_mime_type(image_bytes: bytes) -> str:
    """Sniff the image MIME type from magic bytes (defaults to PNG)."""
    if image_bytes.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image_bytes.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


class LLMProvider(ABC):
    """Abstract base class for LLM providers

    Subclasses supply the vendor calls; this class owns the model catalog,
    the selected model and the credential flag.

    Attributes:
        name: Provider identifier (e.g. "openai")
        current_model: Currently selected Model
        available_models: Model catalog, replaced wholesale on refresh
    """

    name = "base"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key
        self.available_models: List[Model] = list(self.default_models())
        self.current_model: Optional[Model] = None
        self._initialized = False
        self._select_initial_model(model)

    def _select_initial_model(self, model_id: Optional[str]) -> None:
        if model_id and not self.set_model(model_id):
            # Configured model is not in the built-in catalog yet
            self.current_model = self.describe_model(model_id)
        if self.current_model is None and self.available_models:
            self.current_model = self.available_models[0]

    @staticmethod
    def default_models() -> List[Model]:
        """Built-in catalog used until the first successful fetch."""
        return []

    def describe_model(self, model_id: str) -> Model:
        """Build a Model entry for an id reported by the vendor catalog."""
        context_length = get_max_context_length(model_id)
        return Model(id=model_id, name=model_id, max_context_length=context_length)

    @property
    def has_valid_api_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def supports_streaming(self) -> bool:
        return True

    @property
    def supports_tool_calls(self) -> bool:
        return bool(self.current_model and self.current_model.supports_tool_calls)

    @property
    def supports_vision(self) -> bool:
        return bool(self.current_model and self.current_model.supports_vision)

    @property
    def model_name(self) -> str:
        return self.current_model.id if self.current_model else ""

    @property
    def max_context_length(self) -> int:
        if self.current_model is None:
            return get_max_context_length("")
        return self.current_model.max_context_length

    async def initialize(self) -> None:
        """Prepare the provider and fetch its catalog when credentialed.

        A failed catalog fetch keeps the built-in catalog; anything else
        raised here marks the provider as failed to initialize.
        """
        if self._initialized:
            return
        self._initialized = True
        logger.info("%s provider initialized", self.name)

        if not self.has_valid_api_key:
            logger.debug("%s provider has no API key, skipping model fetch", self.name)
            return
        try:
            await self.fetch_available_models()
        except Exception as e:
            logger.warning("Could not fetch %s models, keeping defaults: %s", self.name, e)

    async def fetch_available_models(self) -> List[Model]:
        """Re-query the vendor catalog and replace the local one.

        Returns:
            The new catalog (unchanged if the vendor returned nothing)

        Raises:
            ProviderError: If the provider has no API key
        """
        if not self.has_valid_api_key:
            raise ProviderError(self.name, "API key not set")

        models = await self._fetch_models()
        if not models:
            logger.warning("%s returned an empty model catalog, keeping current one", self.name)
            return list(self.available_models)

        self.available_models = list(models)
        if self.current_model is None:
            self.current_model = self.available_models[0]
        else:
            # Refresh capability data for the selected id if the vendor reports it
            refreshed = self._find_model(self.current_model.id)
            if refreshed is not None:
                self.current_model = refreshed
        logger.info("Fetched %d %s models", len(self.available_models), self.name)
        return list(self.available_models)

    def set_model(self, model_id: str) -> bool:
        """Select a model from the catalog.

        Returns:
            True if the model was found and selected, False otherwise
        """
        model = self._find_model(model_id)
        if model is None:
            return False
        self.current_model = model
        return True

    def _find_model(self, model_id: str) -> Optional[Model]:
        for model in self.available_models:
            if model.id == model_id:
                return model
        return None

    def _require_api_key(self) -> None:
        if not self.has_valid_api_key:
            raise ProviderError(self.name, "API key not set")

    @staticmethod
    def conversation_messages(messages: List[Message], system_prompt: Optional[str]):
        """Drop system-role messages when an explicit system prompt is given."""
        if system_prompt:
            return [m for m in messages if m.role != Role.SYSTEM]
        return list(messages)

    @abstractmethod
    async def _fetch_models(self) -> List[Model]:
        """Return the vendor's current model catalog."""

    @abstractmethod
    async def send(self, messages: List[Message], system_prompt: Optional[str] = None) -> Response:
        """Send the conversation and return the complete response."""

    @abstractmethod
    async def send_with_tools(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
    ) -> Response:
        """Send the conversation with MCP-format tool definitions.

        Args:
            messages: Conversation history (not mutated)
            tools: [{"name": str, "description": str, "inputSchema": dict}, ...]
            system_prompt: Optional system instruction
        """

    async def send_streaming(
        self,
        messages: List[Message],
        on_chunk: ChunkCallback,
        system_prompt: Optional[str] = None,
    ) -> Response:
        """Stream the response through on_chunk and return the final Response.

        The default implementation emits the whole text as a single chunk.
        """
        response = await self.send(messages, system_prompt)
        if response.message.content:
            await on_chunk(response.message.content)
        return response

    async def send_with_tools_streaming(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        on_chunk: ChunkCallback,
        system_prompt: Optional[str] = None,
    ) -> Response:
        response = await self.send_with_tools(messages, tools, system_prompt)
        if response.message.content:
            await on_chunk(response.message.content)
        return response

    async def send_with_image(
        self,
        message: str,
        image_bytes: bytes,
        system_prompt: Optional[str] = None,
    ) -> Response:
        raise ProviderError(self.name, "Image input is not supported")

    def __repr__(self):
        return f"<{type(self).__name__} name={self.name!r} model={self.model_name!r}>"
