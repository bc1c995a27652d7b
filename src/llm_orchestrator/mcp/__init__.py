"""
MCP (Model Context Protocol) tool execution package.
"""

from llm_orchestrator.mcp.executor import McpToolExecutor, flatten_content

__all__ = ["McpToolExecutor", "flatten_content"]
