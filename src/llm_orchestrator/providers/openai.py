"""OpenAI provider implementation over the openai SDK's async client."""

import base64
import logging
from typing import Any, Dict, List, Optional

import openai

from ..errors import ProviderError
from ..models import Message, Model, Response, Role, ToolCall, Usage
from ..token_utils import get_max_context_length
from .base import LLMProvider, guess_image_mime_type

logger = logging.getLogger(__name__)

EXCLUDED_MODEL_MARKERS = ("instruct", "vision", "preview", "audio", "realtime", "transcribe", "tts")


# MCP Tool conversion functions


def mcp_tools_to_openai_format(mcp_tools: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Convert MCP tool definitions to OpenAI tools format.

    Args:
        mcp_tools: List of MCP tool definitions with structure:
            [{"name": str, "description": str, "inputSchema": dict}, ...]

    Returns:
        List of OpenAI tool definitions:
            [{"type": "function", "function": {"name": str, ...}}, ...]
        or None if no tools are provided.
    """
    if not mcp_tools:
        return None

    openai_tools = []
    for tool in mcp_tools:
        name = tool.get("name")
        if not name:
            logger.warning(
                "Skipping MCP tool without name. Tool data: %s",
                {k: v for k, v in tool.items() if k != "inputSchema"},
            )
            continue

        openai_tools.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description") or "",
                    "parameters": tool.get("inputSchema") or {"type": "object", "properties": {}},
                },
            }
        )

    return openai_tools if openai_tools else None


class OpenAIToolCallAssembler:
    """Assembles OpenAI streaming tool calls.

    Arguments arrive as partial JSON strings across chunks, keyed by the
    delta's index for parallel function calling. The JSON is only handed
    out once the stream has finished.
    """

    def __init__(self):
        self._tools_by_index: Dict[int, Dict[str, Any]] = {}

    def reset(self) -> None:
        self._tools_by_index.clear()

    def process_tool_call(self, tool_call_delta) -> None:
        index = getattr(tool_call_delta, "index", None) or 0
        function = getattr(tool_call_delta, "function", None)

        if index not in self._tools_by_index:
            self._tools_by_index[index] = {"id": None, "name": None, "arguments_json": ""}

        tool_call = self._tools_by_index[index]

        if getattr(tool_call_delta, "id", None):
            tool_call["id"] = tool_call_delta.id

        if function is not None:
            if getattr(function, "name", None):
                tool_call["name"] = function.name
            if getattr(function, "arguments", None):
                tool_call["arguments_json"] += function.arguments

    def finalize(self) -> List[ToolCall]:
        """Return the assembled tool calls in index order."""
        calls = []
        for index in sorted(self._tools_by_index.keys()):
            tool_call = self._tools_by_index[index]
            if not tool_call["name"]:
                logger.warning("Dropping streamed tool_call without name at index %s", index)
                continue
            logger.debug(
                "Finalizing tool_call: index=%s, id=%s, name=%s",
                index,
                tool_call["id"],
                tool_call["name"],
            )
            calls.append(
                ToolCall(
                    id=tool_call["id"] or "",
                    tool_name=tool_call["name"],
                    arguments=tool_call["arguments_json"] or "{}",
                )
            )
        return calls


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider.

    The async OpenAI client is safe to share between concurrent requests.
    """

    name = "openai"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        super().__init__(api_key=api_key, model=model)
        self._client = client

    @staticmethod
    def default_models() -> List[Model]:
        return [
            Model("gpt-4o", "GPT-4o", 128000, True, True),
            Model("gpt-4-turbo", "GPT-4 Turbo", 128000, True, True),
            Model("gpt-3.5-turbo", "GPT-3.5 Turbo", 16000, True, False),
        ]

    def describe_model(self, model_id: str) -> Model:
        if not model_id.startswith("gpt-"):
            return super().describe_model(model_id)
        vision = model_id.startswith(("gpt-4o", "gpt-4-turbo"))
        return Model(model_id, model_id, get_max_context_length(model_id), True, vision)

    @property
    def client(self):
        if self._client is None:
            self._require_api_key()
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def format_messages(messages: List[Message], system_prompt: Optional[str] = None):
        """Convert messages to the chat completions format.

        Tool results are stored without the vendor's tool_call_id, so they are
        replayed as user-visible context rather than role="tool" entries.
        """
        formatted = []
        if system_prompt and system_prompt.strip():
            formatted.append({"role": "system", "content": system_prompt})

        for message in LLMProvider.conversation_messages(messages, system_prompt):
            if message.role == Role.TOOL:
                formatted.append(
                    {
                        "role": "user",
                        "content": f"Tool: {message.name or 'tool'}\nResult: {message.content}",
                    }
                )
            else:
                formatted.append({"role": message.role, "content": message.content})
        return formatted

    def _build_response(self, text: str, tool_calls: List[ToolCall], usage=None) -> Response:
        return Response(
            provider_name=self.name,
            model_name=self.model_name,
            message=Message.assistant(text or ""),
            tool_calls=tool_calls,
            usage=Usage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    async def _complete(self, api_messages, tools=None) -> Response:
        self._require_api_key()
        api_params = {"model": self.model_name, "messages": api_messages}
        openai_tools = mcp_tools_to_openai_format(tools) if tools else None
        if openai_tools:
            api_params["tools"] = openai_tools
            api_params["tool_choice"] = "auto"

        completion = await self.client.chat.completions.create(**api_params)
        if not completion.choices:
            raise ProviderError(self.name, "Empty response from API")

        message = completion.choices[0].message
        tool_calls = [
            ToolCall(
                id=tc.id or "",
                tool_name=tc.function.name,
                arguments=tc.function.arguments or "{}",
            )
            for tc in (getattr(message, "tool_calls", None) or [])
        ]
        return self._build_response(message.content, tool_calls, completion.usage)

    async def _stream(self, api_messages, on_chunk, tools=None) -> Response:
        self._require_api_key()
        api_params = {
            "model": self.model_name,
            "messages": api_messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        openai_tools = mcp_tools_to_openai_format(tools) if tools else None
        if openai_tools:
            api_params["tools"] = openai_tools
            api_params["tool_choice"] = "auto"

        stream = await self.client.chat.completions.create(**api_params)

        assembler = OpenAIToolCallAssembler()
        parts = []
        usage = None
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = chunk.usage
            if not getattr(chunk, "choices", None):
                continue
            delta = chunk.choices[0].delta
            for tool_call_delta in getattr(delta, "tool_calls", None) or []:
                assembler.process_tool_call(tool_call_delta)
            text = self.extract_text_from_delta(delta)
            if text:
                parts.append(text)
                await on_chunk(text)

        return self._build_response("".join(parts), assembler.finalize(), usage)

    @staticmethod
    def extract_text_from_delta(delta) -> str:
        """Extract text from a streaming delta (string or list content)."""
        content = getattr(delta, "content", None)
        if isinstance(content, list):
            return "".join(part.text if hasattr(part, "text") else str(part) for part in content)
        return content or ""

    async def send(self, messages, system_prompt=None) -> Response:
        return await self._complete(self.format_messages(messages, system_prompt))

    async def send_streaming(self, messages, on_chunk, system_prompt=None) -> Response:
        return await self._stream(self.format_messages(messages, system_prompt), on_chunk)

    async def send_with_tools(self, messages, tools, system_prompt=None) -> Response:
        return await self._complete(self.format_messages(messages, system_prompt), tools)

    async def send_with_tools_streaming(self, messages, tools, on_chunk, system_prompt=None):
        return await self._stream(self.format_messages(messages, system_prompt), on_chunk, tools)

    async def send_with_image(self, message, image_bytes, system_prompt=None) -> Response:
        if not self.supports_vision:
            raise ProviderError(self.name, f"Model {self.model_name} does not support images")

        encoded = base64.b64encode(image_bytes).decode("ascii")
        data_url = f"data:{guess_image_mime_type(image_bytes)};base64,{encoded}"
        api_messages = []
        if system_prompt:
            api_messages.append({"role": "system", "content": system_prompt})
        api_messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": message},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        )
        return await self._complete(api_messages)

    async def _fetch_models(self) -> List[Model]:
        models = []
        async for entry in self.client.models.list():
            model_id = entry.id
            if not model_id.startswith("gpt-"):
                continue
            if any(marker in model_id for marker in EXCLUDED_MODEL_MARKERS):
                continue
            models.append(self.describe_model(model_id))
        return models

