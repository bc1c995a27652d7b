"""
Tool executor backed by an MCP server over stdio.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from ..models import ToolExecutionResult

logger = logging.getLogger(__name__)


def flatten_content(content) -> str:
    """Flatten MCP content items into plain text."""
    parts = []
    for item in content or []:
        item_type = getattr(item, "type", None)
        if item_type == "text":
            parts.append(item.text)
        elif item_type == "resource":
            resource = getattr(item, "resource", None)
            text = getattr(resource, "text", None)
            if text is None:
                text = f"[resource: {getattr(resource, 'uri', '')}]"
            parts.append(text)
        elif item_type == "image":
            parts.append(f"[image: {getattr(item, 'mimeType', 'unknown')}]")
        else:
            parts.append(str(item))
    return "\n".join(parts)


class McpToolExecutor:
    """ToolExecutor over an MCP stdio session.

    Use as an async context manager; the session lives until exit.
    """

    def __init__(self, server_command: str, server_args: Optional[List[str]] = None, timeout=120):
        self.server_command = server_command
        self.server_args = list(server_args or [])
        self.timeout = timeout
        self.session: Optional[ClientSession] = None
        self._exit_stack: Optional[AsyncExitStack] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """Launch the server process and initialize a session.

        Raises:
            ConnectionError: If the server cannot be started or initialized
        """
        server_params = StdioServerParameters(command=self.server_command, args=self.server_args)
        self._exit_stack = AsyncExitStack()
        try:
            read_stream, write_stream = await self._exit_stack.enter_async_context(
                stdio_client(server_params)
            )
            self.session = await self._exit_stack.enter_async_context(
                ClientSession(read_stream, write_stream)
            )
            await asyncio.wait_for(self.session.initialize(), timeout=self.timeout)
        except Exception as e:
            await self.close()
            raise ConnectionError(f"Failed to connect to MCP server: {e}") from e
        logger.info("Connected to MCP server: %s", self.server_command)

    async def close(self) -> None:
        exit_stack, self._exit_stack = self._exit_stack, None
        self.session = None
        if exit_stack is not None:
            try:
                await exit_stack.aclose()
            except Exception as e:
                logger.warning("Error closing MCP session: %s", e)

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise ConnectionError(
                "MCP executor is not connected. Use 'async with McpToolExecutor(...)'."
            )
        return self.session

    async def list_tools(self) -> List[Dict[str, Any]]:
        """List tools as [{"name", "description", "inputSchema"}, ...]."""
        response = await self._require_session().list_tools()
        return [
            {"name": tool.name, "description": tool.description, "inputSchema": tool.inputSchema}
            for tool in response.tools
        ]

    async def execute(self, tool_name: str, args: Dict[str, Any]) -> ToolExecutionResult:
        session = self._require_session()
        response = await asyncio.wait_for(
            session.call_tool(tool_name, args), timeout=self.timeout
        )
        text = flatten_content(response.content)
        if getattr(response, "isError", False):
            return ToolExecutionResult.fail(text or f"Tool {tool_name} failed")
        return ToolExecutionResult.ok(text)
