"""Execution of tool calls found in model responses.

Structured calls (reported by the provider) and inline fenced blocks found in
the response text are both turned into invocations and run by the same
executor loop. A failing tool only degrades its own result text.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from .models import Response, ToolCall, ToolExecutionResult

logger = logging.getLogger(__name__)

INLINE_TOOL_PATTERN = re.compile(r"```tool\s+(\w+)\s+([\s\S]*?)```")


@runtime_checkable
class ToolExecutor(Protocol):
    """Backend that runs tools by name."""

    async def execute(self, tool_name: str, args: Dict[str, Any]) -> ToolExecutionResult: ...


@dataclass
class StructuredInvocation:
    """A tool call the provider reported natively."""

    tool_call: ToolCall

    @property
    def tool_name(self) -> str:
        return self.tool_call.tool_name

    @property
    def raw_args(self) -> str:
        return self.tool_call.arguments


@dataclass
class InlineInvocation:
    """A fenced ```tool block found in the response text."""

    tool_name: str
    raw_args: str
    block: str
    start: int = 0
    end: int = 0


ToolInvocation = Union[StructuredInvocation, InlineInvocation]


def _coerce_value(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def parse_key_value_pairs(text: str) -> Dict[str, Any]:
    """Parse `key: value` lines, coercing int, then float, then bool."""
    params = {}
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if not key:
            continue
        params[key] = _coerce_value(value.strip())
    return params


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    """Parse a tool argument payload: JSON object first, then key/value lines."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return parse_key_value_pairs(raw)
    if isinstance(parsed, dict):
        return parsed
    logger.debug("Tool arguments are JSON but not an object, falling back to key/value parsing")
    return parse_key_value_pairs(raw)


def detect_inline_invocations(text: str) -> List[InlineInvocation]:
    return [
        InlineInvocation(
            tool_name=match.group(1).strip(),
            raw_args=match.group(2).strip(),
            block=match.group(0),
            start=match.start(),
            end=match.end(),
        )
        for match in INLINE_TOOL_PATTERN.finditer(text or "")
    ]


def detect_invocations(response: Response) -> List[ToolInvocation]:
    """Structured calls if the response has any, otherwise inline blocks."""
    if response.tool_calls:
        return [StructuredInvocation(tc) for tc in response.tool_calls]
    return detect_inline_invocations(response.message.content)


def format_tool_result(result: ToolExecutionResult) -> str:
    if not result.success:
        return f"Error: {result.error_message}"
    if isinstance(result.data, str):
        return result.data
    return json.dumps(result.data, indent=2, ensure_ascii=False, default=str)


class ToolCallProcessor:
    """Runs detected tool invocations and rewrites the response text."""

    def __init__(self, executor: Optional[ToolExecutor]):
        self._executor = executor

    @property
    def executor(self) -> Optional[ToolExecutor]:
        return self._executor

    async def run_invocation(self, invocation: ToolInvocation) -> str:
        """Execute one invocation and return its result text (never raises)."""
        args = parse_tool_arguments(invocation.raw_args)
        try:
            result = await self._executor.execute(invocation.tool_name, args)
        except Exception as e:
            logger.exception("Error executing tool %s", invocation.tool_name)
            return f"Error: {e}"

        if not result.success:
            logger.warning("Tool %s returned error: %s", invocation.tool_name, result.error_message)
        return format_tool_result(result)

    async def process(self, response: Response) -> Response:
        """Execute the response's tool invocations in order and append results.

        The response is updated in place and returned.
        """
        if self._executor is None:
            return response

        invocations = detect_invocations(response)
        if not invocations:
            return response

        if isinstance(invocations[0], StructuredInvocation):
            content = response.message.content or ""
            for invocation in invocations:
                result_text = await self.run_invocation(invocation)
                content += f"\n\nTool: {invocation.tool_name}\nResult: {result_text}"
            response.message.content = content
        else:
            response.message.content = await self._apply_inline(
                response.message.content, invocations
            )
        return response

    async def process_text(self, text: str) -> str:
        """Replace inline tool blocks in text with block + result."""
        if self._executor is None:
            return text
        invocations = detect_inline_invocations(text)
        if not invocations:
            return text
        return await self._apply_inline(text, invocations)

    async def _apply_inline(self, text: str, invocations: List[InlineInvocation]) -> str:
        pieces = []
        cursor = 0
        for invocation in invocations:
            result_text = await self.run_invocation(invocation)
            pieces.append(text[cursor : invocation.start])
            pieces.append(
                f"```tool {invocation.tool_name}\n{invocation.raw_args}\n```\n\n"
                f"**Tool Result:**\n```json\n{result_text}\n```"
            )
            cursor = invocation.end
        pieces.append(text[cursor:])
        return "".join(pieces)
