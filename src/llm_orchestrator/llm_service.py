"""LLMService - orchestration layer over interchangeable LLM providers

Every send operation follows the same pipeline: resolve the conversation,
append the caller's messages, trim to the provider's budget, dispatch with a
single failover retry, post-process tool calls, then persist and return.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .compression import get_trim_info, trim_conversation
from .config import AppConfig
from .errors import ConversationNotFoundError, NoProviderAvailableError, NoVisionProviderError
from .failover import FailoverController
from .history import (
    ConversationRepository,
    InMemoryConversationRepository,
    StaticSystemPromptProvider,
    SystemPromptProvider,
)
from .model_refresh import ModelRefreshScheduler
from .models import Conversation, DegradedResponse, Message, Response, Role, Usage
from .providers.base import LLMProvider
from .registry import ProviderRegistry
from .token_utils import estimate_messages_tokens, estimate_tokens
from .tool_processor import ToolCallProcessor, ToolExecutor

logger = logging.getLogger(__name__)

DEGRADED_PROVIDER_NAME = "System"
DEGRADED_MESSAGE = (
    "I'm sorry, but I'm having trouble reaching the language model service right now. "
    "Please try again in a few minutes."
)
FAILOVER_NOTICE = "\n\n[Primary provider failed, switching to backup provider...]\n\n"

ChunkHandler = Callable[[str], Union[None, Awaitable[None]]]


def _supports_vision(provider: LLMProvider) -> bool:
    return provider.supports_vision


class _StreamRelay:
    """Forwards chunks to the caller's handler while accumulating them.

    The handler may be a plain function or a coroutine function.
    """

    def __init__(self, handler: ChunkHandler):
        self._handler = handler
        self._parts: List[str] = []

    async def emit(self, text: str) -> None:
        result = self._handler(text)
        if inspect.isawaitable(result):
            await result

    async def on_chunk(self, text: str) -> None:
        self._parts.append(text)
        await self.emit(text)

    async def notify_failover(self, failed, substitute) -> None:
        # Streaming restarts from scratch on the substitute
        self._parts.clear()
        await self.emit(FAILOVER_NOTICE)

    @property
    def text(self) -> str:
        return "".join(self._parts)


class LLMService:
    """Orchestrates providers, conversations and tool execution.

    Args:
        providers: Providers in preference order (ignored if registry is given)
        conversation_repository: Conversation storage (in-memory by default)
        system_prompt_provider: Source of the default system prompt
        tool_executor: Optional backend for tool calls
        config: AppConfig (defaults are used if None)
        clock: Monotonic clock for failover backoff
        registry: Prebuilt ProviderRegistry
        refresh_sleep: Sleep coroutine for the refresh scheduler (tests)
    """

    def __init__(
        self,
        providers: Optional[List[LLMProvider]] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        system_prompt_provider: Optional[SystemPromptProvider] = None,
        tool_executor: Optional[ToolExecutor] = None,
        config: Optional[AppConfig] = None,
        clock=None,
        registry: Optional[ProviderRegistry] = None,
        refresh_sleep=None,
    ):
        self.config = config or AppConfig()
        self._registry = registry if registry is not None else ProviderRegistry(providers or [])
        self._failover = FailoverController(
            self._registry, backoff_seconds=self.config.failure_backoff_seconds, clock=clock
        )
        self._repository = conversation_repository or InMemoryConversationRepository()
        self._prompts = system_prompt_provider or StaticSystemPromptProvider(
            self.config.default_system_prompt
        )
        self._tool_processor = ToolCallProcessor(tool_executor)
        self._refresh = ModelRefreshScheduler(
            self._registry,
            interval=self.config.model_refresh_interval_seconds,
            initial_delay=self.config.model_refresh_initial_delay_seconds,
            sleep=refresh_sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize providers, pick the active one and start model refresh."""
        await self._registry.initialize_all()
        self._failover.select_active()
        if self.config.model_refresh_enabled:
            self._refresh.start()

    async def stop(self) -> None:
        await self._refresh.stop()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def failover(self) -> FailoverController:
        return self._failover

    @property
    def refresh_scheduler(self) -> ModelRefreshScheduler:
        return self._refresh

    @property
    def active_provider(self) -> Optional[LLMProvider]:
        active = self._failover.active
        if active is None and not self._registry.is_empty():
            active = self._failover.select_active()
        return active

    @property
    def available_providers(self) -> List[LLMProvider]:
        return self._registry.providers

    async def set_active_provider(self, name: str) -> bool:
        return self._failover.set_active(name)

    def get_provider(self, name: str) -> Optional[LLMProvider]:
        return self._registry.get(name)

    async def refresh_models(self) -> bool:
        """Refresh every credentialed provider; False if a refresh was already running."""
        return await self._refresh.refresh_all()

    async def refresh_models_for_provider(self, name: str) -> bool:
        return await self._refresh.refresh_provider(name)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self, class_id: Optional[str] = None, date: Optional[str] = None, time_slot=None
    ) -> str:
        """Create a conversation seeded with the default system prompt.

        Returns:
            The new conversation id
        """
        conversation = await self._new_conversation(class_id, date, time_slot)
        return conversation.conversation_id

    async def _new_conversation(self, class_id=None, date=None, time_slot=None) -> Conversation:
        conversation = Conversation(class_id=class_id, time_slot=time_slot)
        if date:
            conversation.date = date
        prompt = await self._prompts.get_default_prompt()
        conversation.add_system_message(prompt.content)
        await self._repository.add(conversation)
        logger.debug("Created conversation %s", conversation.conversation_id)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await self._repository.delete(conversation_id)

    async def get_conversation_history(self, conversation_id: str) -> List[Message]:
        conversation = await self._repository.get(conversation_id)
        if conversation is None:
            logger.warning("Conversation not found: %s", conversation_id)
            return []
        return list(conversation.messages)

    async def _resolve_conversation(
        self, conversation_id: Optional[str], must_exist: bool = False
    ) -> Conversation:
        if conversation_id:
            conversation = await self._repository.get(conversation_id)
            if conversation is not None:
                return conversation
            if must_exist:
                raise ConversationNotFoundError(conversation_id)
            logger.warning(
                "Conversation not found: %s, creating new conversation", conversation_id
            )
        return await self._new_conversation()

    async def _effective_system_prompt(
        self, system_prompt: Optional[str], conversation: Conversation
    ) -> str:
        if system_prompt:
            return system_prompt
        system_message = conversation.system_message
        if system_message is not None and system_message.content:
            return system_message.content
        return (await self._prompts.get_default_prompt()).content

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _initial_provider(self, predicate=None) -> LLMProvider:
        if self._registry.is_empty():
            raise NoProviderAvailableError()

        active = self.active_provider
        if active is None:
            raise NoProviderAvailableError()
        if predicate is None:
            return active

        if self._failover.is_eligible(active) and predicate(active):
            return active
        candidate = self._failover.find_eligible(predicate)
        if candidate is None:
            raise NoVisionProviderError()
        return candidate

    def _trim_for(self, provider: LLMProvider, history: List[Message]) -> List[Message]:
        budget = max(provider.max_context_length - self.config.response_token_reserve, 0)
        trimmed = trim_conversation(history, budget)
        if trimmed is not history:
            info = get_trim_info(history, budget)
            logger.info(
                "Trimmed conversation for %s: removed %d messages (%d -> %d tokens)",
                provider.name,
                info["messages_removed"],
                info["original_tokens"],
                info["trimmed_tokens"],
            )
        return trimmed

    @staticmethod
    def _degraded(error: Exception) -> DegradedResponse:
        return DegradedResponse(
            provider_name=DEGRADED_PROVIDER_NAME,
            model_name="",
            message=Message.assistant(DEGRADED_MESSAGE),
            error=str(error),
        )

    async def _dispatch(self, history, call, predicate=None, on_failover=None):
        """Call the provider, retrying once on a substitute after a failure.

        Returns:
            (response, trimmed history sent to the provider that answered)
        """
        provider = self._initial_provider(predicate)
        trimmed = self._trim_for(provider, history)
        try:
            return await call(provider, trimmed), trimmed
        except Exception as e:
            logger.warning(
                "Error from provider %s: %s. Switching to backup provider.", provider.name, e
            )
            self._failover.mark_failed(provider)
            first_error = e

        substitute = self._failover.resolve_substitute(provider, predicate)
        if substitute is None:
            logger.error("No backup provider available after %s failed", provider.name)
            return self._degraded(first_error), trimmed

        if on_failover is not None:
            await on_failover(provider, substitute)
        trimmed = self._trim_for(substitute, history)
        try:
            return await call(substitute, trimmed), trimmed
        except Exception as retry_error:
            logger.error(
                "Backup provider %s also failed: %s", substitute.name, retry_error, exc_info=True
            )
            self._failover.mark_failed(substitute)
            return self._degraded(retry_error), trimmed

    async def _finish(self, conversation, response, trimmed, relay=None):
        """Tool-process, persist and correlate a dispatched response."""
        if relay is not None and not response.message.content:
            response.message.content = relay.text
        if relay is not None and response.is_degraded:
            await relay.emit(response.message.content)

        if not response.is_degraded:
            before = response.message.content
            await self._tool_processor.process(response)
            after = response.message.content
            if relay is not None and after != before and after.startswith(before):
                await relay.emit(after[len(before) :])

            if not response.usage.prompt_tokens and not response.usage.completion_tokens:
                response.usage = Usage(
                    prompt_tokens=estimate_messages_tokens(trimmed),
                    completion_tokens=estimate_tokens(after),
                )
            conversation.add_assistant_message(after)

        await self._repository.update(conversation)
        response.conversation_id = conversation.conversation_id
        return response

    async def _send(
        self,
        conversation: Conversation,
        system_prompt: Optional[str],
        call,
        predicate=None,
        relay: Optional[_StreamRelay] = None,
    ) -> Response:
        effective_prompt = await self._effective_system_prompt(system_prompt, conversation)
        # Persist the caller's message before dispatching
        await self._repository.update(conversation)

        async def invoke(provider, trimmed):
            return await call(provider, trimmed, effective_prompt)

        response, trimmed = await self._dispatch(
            conversation.messages,
            invoke,
            predicate=predicate,
            on_failover=relay.notify_failover if relay is not None else None,
        )
        return await self._finish(conversation, response, trimmed, relay)

    @staticmethod
    def _replace_history(conversation: Conversation, messages: List[Message]) -> None:
        messages = list(messages)
        if not any(m.role == Role.SYSTEM for m in messages):
            system_message = conversation.system_message
            if system_message is not None:
                messages.insert(0, system_message)
        conversation.messages = messages

    async def _tool_definitions(self, tools) -> List[Dict[str, Any]]:
        if tools is not None:
            return list(tools)
        executor = self._tool_processor.executor
        list_tools = getattr(executor, "list_tools", None)
        if list_tools is None:
            return []
        return list(await list_tools())

    # ------------------------------------------------------------------
    # Send operations
    # ------------------------------------------------------------------

    async def send_message(
        self,
        message: str,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Response:
        """Send one user message, continuing or creating a conversation."""
        conversation = await self._resolve_conversation(conversation_id)
        conversation.add_user_message(message)

        async def call(provider, trimmed, prompt):
            return await provider.send(trimmed, prompt)

        return await self._send(conversation, system_prompt, call)

    async def send_messages(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Response:
        """Send an explicit history, replacing the conversation's messages."""
        conversation = await self._resolve_conversation(conversation_id)
        self._replace_history(conversation, messages)

        async def call(provider, trimmed, prompt):
            return await provider.send(trimmed, prompt)

        return await self._send(conversation, system_prompt, call)

    async def send_messages_streaming(
        self,
        messages: List[Message],
        on_chunk: ChunkHandler,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Response:
        """Like send_messages, streaming text chunks to on_chunk."""
        conversation = await self._resolve_conversation(conversation_id)
        self._replace_history(conversation, messages)
        relay = _StreamRelay(on_chunk)

        async def call(provider, trimmed, prompt):
            return await provider.send_streaming(trimmed, relay.on_chunk, prompt)

        return await self._send(conversation, system_prompt, call, relay=relay)

    async def send_message_with_tools(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> Response:
        """Send a message with tool definitions and execute resulting tool calls.

        Raises:
            ConversationNotFoundError: If conversation_id is given but unknown
        """
        conversation = await self._resolve_conversation(conversation_id, must_exist=True)
        conversation.add_user_message(message)
        tool_definitions = await self._tool_definitions(tools)

        async def call(provider, trimmed, prompt):
            return await provider.send_with_tools(trimmed, tool_definitions, prompt)

        return await self._send(conversation, system_prompt, call)

    async def send_message_with_tools_streaming(
        self,
        message: str,
        on_chunk: ChunkHandler,
        conversation_id: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> Response:
        conversation = await self._resolve_conversation(conversation_id, must_exist=True)
        conversation.add_user_message(message)
        tool_definitions = await self._tool_definitions(tools)
        relay = _StreamRelay(on_chunk)

        async def call(provider, trimmed, prompt):
            return await provider.send_with_tools_streaming(
                trimmed, tool_definitions, relay.on_chunk, prompt
            )

        return await self._send(conversation, system_prompt, call, relay=relay)

    async def send_message_with_image(
        self,
        message: str,
        image_bytes: bytes,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Response:
        """Send a message with an image to a vision-capable provider.

        Raises:
            NoVisionProviderError: If no eligible provider supports images
        """
        conversation = await self._resolve_conversation(conversation_id)
        conversation.add_user_message(message)

        async def call(provider, trimmed, prompt):
            return await provider.send_with_image(message, image_bytes, prompt)

        return await self._send(conversation, system_prompt, call, predicate=_supports_vision)
