"""Tool dispatcher: one catalog and one string-returning entry point.

The dispatcher is the tool boundary for the agent loop. ``execute`` is total:
it returns text for any name and any input, converting failures into a
human-readable error string the model can react to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from claude_agent_sdk import SdkMcpTool, create_sdk_mcp_server

from codebox.config import CodeboxConfig
from codebox.sql_tools import WarehouseCredentials, create_sql_tools
from codebox.workspace_tools import create_workspace_tools

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-run execution context supplied by the (already authenticated) caller."""

    workspace_path: str
    credentials: WarehouseCredentials | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_text(result: Any) -> str:
    """Flatten a tool handler result into plain text."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        parts = [
            str(block.get("text", ""))
            for block in result.get("content", []) or []
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(parts)
    return str(result)


class ToolDispatcher:
    """Routes tool calls by name to workspace and warehouse tools."""

    def __init__(
        self,
        context: ToolContext,
        config: CodeboxConfig | None = None,
        *,
        sql_connect: Callable[..., Any] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.context = context
        self.config = config or CodeboxConfig()
        credentials = context.credentials or WarehouseCredentials.from_config(self.config.databricks)

        tools: list[SdkMcpTool] = create_workspace_tools(context.workspace_path, self.config.tools)
        tools += create_sql_tools(
            credentials,
            http_timeout=self.config.databricks.http_timeout_seconds,
            connect=sql_connect,
            transport=http_transport,
        )
        self._tools: dict[str, SdkMcpTool] = {t.name: t for t in tools}

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def catalog(self) -> list[dict]:
        """Tool definitions in the model API's {name, description, input_schema} shape."""
        return [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in self._tools.values()
        ]

    async def execute(self, name: str, tool_input: Any) -> str:
        """Execute a tool and always return a string."""
        handler = self._tools.get(name)
        if handler is None:
            return f"Unknown tool: {name}"
        if not isinstance(tool_input, dict):
            return f"Error: Invalid input for {name}: expected an object"
        try:
            result = await handler.handler(tool_input)
            return extract_text(result)
        except KeyError as e:
            return f"Error: Missing required parameter {e}"
        except Exception as e:
            logger.info("Tool %s failed: %s", name, e)
            return f"Error: {e}"

    def as_mcp_server(self, name: str = "codebox-tools") -> dict:
        """Expose the same tools as an in-process MCP server for Agent SDK sessions."""
        return create_sdk_mcp_server(name=name, version="1.0.0", tools=list(self._tools.values()))
