"""Google Gemini provider implementation over the google.genai SDK (async client)."""

import json
import logging
from typing import Any, Dict, List, Optional

import google.genai as genai
from google.genai import types

from ..errors import ProviderError
from ..models import Message, Model, Response, Role, ToolCall, Usage
from ..token_utils import get_max_context_length
from .base import LLMProvider, guess_image_mime_type

logger = logging.getLogger(__name__)


def _sanitize_schema_for_gemini(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Remove JSON Schema fields that Gemini API doesn't accept.

    Gemini only accepts: type, properties, required, description, items, enum.
    """
    if not isinstance(schema, dict):
        return schema

    allowed_fields = {"type", "properties", "required", "description", "items", "enum"}

    cleaned = {}
    for key, value in schema.items():
        if key not in allowed_fields:
            continue

        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {
                prop_name: _sanitize_schema_for_gemini(prop_schema)
                for prop_name, prop_schema in value.items()
            }
        elif key == "items" and isinstance(value, dict):
            cleaned[key] = _sanitize_schema_for_gemini(value)
        else:
            cleaned[key] = value

    return cleaned


def mcp_tools_to_gemini_format(mcp_tools: List[Dict[str, Any]]) -> Optional[List[types.Tool]]:
    """Convert MCP tool definitions to Gemini Tool format.

    Returns:
        A list containing a single Gemini Tool object, or None if no tools are provided.
    """
    if not mcp_tools:
        return None

    function_declarations = []
    for tool in mcp_tools:
        name = tool.get("name")
        parameters = tool.get("inputSchema")

        if not name:
            logger.warning(
                "Skipping MCP tool without name. Tool data: %s",
                {k: v for k, v in tool.items() if k != "inputSchema"},
            )
            continue

        if parameters and isinstance(parameters, dict):
            parameters = _sanitize_schema_for_gemini(parameters)

        function_declarations.append(
            types.FunctionDeclaration(
                name=name,
                description=tool.get("description") or "",
                parameters=parameters or None,
            )
        )

    if not function_declarations:
        return None

    return [types.Tool(function_declarations=function_declarations)]


def _strip_model_prefix(model_name: str) -> str:
    return model_name.split("/", 1)[1] if model_name.startswith("models/") else model_name


class GeminiProvider(LLMProvider):
    """Google Gemini provider.

    Uses the async surface of google.genai.Client (client.aio).
    """

    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        super().__init__(api_key=api_key, model=_strip_model_prefix(model) if model else None)
        self._client = client

    @staticmethod
    def default_models() -> List[Model]:
        return [
            Model("gemini-1.5-pro", "Gemini 1.5 Pro", 1000000, True, True),
            Model("gemini-1.5-flash", "Gemini 1.5 Flash", 1000000, True, True),
            Model("gemini-1.0-pro", "Gemini 1.0 Pro", 32000, True, False),
        ]

    def describe_model(self, model_id: str) -> Model:
        model_id = _strip_model_prefix(model_id)
        vision = "1.0-pro" not in model_id or "vision" in model_id
        return Model(model_id, model_id, get_max_context_length(model_id), True, vision)

    @property
    def client(self):
        if self._client is None:
            self._require_api_key()
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    @staticmethod
    def format_history(messages: List[Message], system_prompt: Optional[str] = None):
        """Convert messages to Gemini contents.

        System messages go into the system instruction instead of the contents.
        Returns (contents, system_instruction).
        """
        system_instruction = system_prompt
        if not system_instruction:
            system_parts = [m.content for m in messages if m.role == Role.SYSTEM and m.content]
            system_instruction = "\n\n".join(system_parts) or None

        contents = []
        for message in messages:
            if message.role == Role.SYSTEM:
                continue
            if message.role == Role.ASSISTANT:
                contents.append({"role": "model", "parts": [{"text": message.content}]})
            elif message.role == Role.TOOL:
                text = f"Tool: {message.name or 'tool'}\nResult: {message.content}"
                contents.append({"role": "user", "parts": [{"text": text}]})
            else:
                contents.append({"role": "user", "parts": [{"text": message.content}]})
        return contents, system_instruction

    @staticmethod
    def _build_config(system_instruction=None, tools=None):
        if not system_instruction and not tools:
            return None
        return types.GenerateContentConfig(
            system_instruction=system_instruction or None,
            tools=mcp_tools_to_gemini_format(tools) if tools else None,
        )

    @staticmethod
    def _extract_parts(response):
        """Split a response (or stream chunk) into text and function calls."""
        texts = []
        calls = []
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                function_call = getattr(part, "function_call", None)
                if function_call is not None and getattr(function_call, "name", None):
                    calls.append(
                        ToolCall(
                            id=getattr(function_call, "id", None) or "",
                            tool_name=function_call.name,
                            arguments=json.dumps(
                                dict(function_call.args or {}), ensure_ascii=False
                            ),
                        )
                    )
                elif getattr(part, "text", None):
                    texts.append(part.text)
            # Only the first candidate is used
            break
        return "".join(texts), calls

    def _build_response(self, text, tool_calls, usage_metadata=None) -> Response:
        return Response(
            provider_name=self.name,
            model_name=self.model_name,
            message=Message.assistant(text),
            tool_calls=tool_calls,
            usage=Usage(
                prompt_tokens=getattr(usage_metadata, "prompt_token_count", 0) or 0,
                completion_tokens=getattr(usage_metadata, "candidates_token_count", 0) or 0,
            ),
        )

    async def _generate(self, contents, system_instruction=None, tools=None) -> Response:
        self._require_api_key()
        response = await self.client.aio.models.generate_content(
            model=self.model_name,
            contents=contents,
            config=self._build_config(system_instruction, tools),
        )
        text, calls = self._extract_parts(response)
        return self._build_response(text, calls, getattr(response, "usage_metadata", None))

    async def _generate_stream(self, contents, on_chunk, system_instruction=None, tools=None):
        self._require_api_key()
        stream = await self.client.aio.models.generate_content_stream(
            model=self.model_name,
            contents=contents,
            config=self._build_config(system_instruction, tools),
        )
        parts = []
        calls = []
        usage_metadata = None
        async for chunk in stream:
            if getattr(chunk, "usage_metadata", None) is not None:
                usage_metadata = chunk.usage_metadata
            text, chunk_calls = self._extract_parts(chunk)
            calls.extend(chunk_calls)
            if text:
                parts.append(text)
                await on_chunk(text)
        return self._build_response("".join(parts), calls, usage_metadata)

    async def send(self, messages, system_prompt=None) -> Response:
        contents, system_instruction = self.format_history(messages, system_prompt)
        return await self._generate(contents, system_instruction)

    async def send_streaming(self, messages, on_chunk, system_prompt=None) -> Response:
        contents, system_instruction = self.format_history(messages, system_prompt)
        return await self._generate_stream(contents, on_chunk, system_instruction)

    async def send_with_tools(self, messages, tools, system_prompt=None) -> Response:
        contents, system_instruction = self.format_history(messages, system_prompt)
        return await self._generate(contents, system_instruction, tools)

    async def send_with_tools_streaming(self, messages, tools, on_chunk, system_prompt=None):
        contents, system_instruction = self.format_history(messages, system_prompt)
        return await self._generate_stream(contents, on_chunk, system_instruction, tools)

    async def send_with_image(self, message, image_bytes, system_prompt=None) -> Response:
        if not self.supports_vision:
            raise ProviderError(self.name, f"Model {self.model_name} does not support images")

        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_text(text=message),
                    types.Part.from_bytes(
                        data=image_bytes, mime_type=guess_image_mime_type(image_bytes)
                    ),
                ],
            )
        ]
        return await self._generate(contents, system_prompt)

    async def _fetch_models(self) -> List[Model]:
        models = []
        async for entry in await self.client.aio.models.list():
            model_id = _strip_model_prefix(entry.name or "")
            if not model_id.startswith("gemini"):
                continue
            actions = getattr(entry, "supported_actions", None) or []
            if actions and "generateContent" not in actions:
                continue
            described = self.describe_model(model_id)
            context_length = (
                getattr(entry, "input_token_limit", None) or described.max_context_length
            )
            models.append(
                Model(
                    id=model_id,
                    name=getattr(entry, "display_name", None) or model_id,
                    max_context_length=context_length,
                    supports_tool_calls=described.supports_tool_calls,
                    supports_vision=described.supports_vision,
                )
            )
        return models
