"""MCP (Model Context Protocol) client for tool discovery and execution."""

import itertools
import json
import logging
from typing import Dict, Any, Optional, List

from toolhub.adapters.mcp_transport import MCPTransport
from toolhub.infra.error_handler import (
    ToolError,
    HandlerError,
    RemoteProtocolError,
    classify_error,
    classify_jsonrpc_error,
)

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolhub", "version": "1.0.0"}

# Guard against servers that keep returning a cursor
MAX_TOOL_PAGES = 50


class MCPClient:
    """Client for one MCP server session.

    Wraps a transport (stdio, HTTP or WebSocket); MCP uses JSON-RPC 2.0 for
    communication. Every failure is raised as a classified ToolError.
    """

    def __init__(self, transport: MCPTransport, timeout: Optional[float] = 30.0):
        self.transport = transport
        self.timeout = timeout
        self.server_info: Dict[str, Any] = {}
        self.capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None
        self._ids = itertools.count(1)

    @property
    def server_id(self) -> str:
        return self.transport.server_id

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    async def connect(self) -> Dict[str, Any]:
        """
        Connect the transport and perform the initialize handshake.

        Returns:
            The server's initialize result
        """
        try:
            await self.transport.connect()
        except ToolError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        result = await self._request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        self.server_info = result.get("serverInfo") or {}
        self.capabilities = result.get("capabilities") or {}
        self.protocol_version = result.get("protocolVersion")

        await self._notify("notifications/initialized")

        logger.info(
            f"Initialized tool server {self.server_id}",
            extra={
                "server_id": self.server_id,
                "server_name": self.server_info.get("name"),
                "protocol_version": self.protocol_version,
            },
        )
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """
        Fetch every tool descriptor the server exposes, following pagination cursors.

        Returns:
            Raw tool descriptors (name, description, inputSchema)
        """
        tools: List[Dict[str, Any]] = []
        cursor = None
        for _ in range(MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await self._request("tools/list", params)
            page = result.get("tools")
            if not isinstance(page, list):
                raise RemoteProtocolError(f"tools/list from '{self.server_id}' did not return a tool list")
            tools.extend(page)
            cursor = result.get("nextCursor")
            if not cursor:
                return tools
        logger.warning(f"Tool server {self.server_id} returned more than {MAX_TOOL_PAGES} pages of tools")
        return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Invoke a tool on the server.

        Args:
            name: Tool name as exposed by the server
            arguments: Tool arguments
            timeout: Per-call deadline in seconds (defaults to the client timeout)

        Returns:
            Structured content when present, joined text for text-only results,
            otherwise the raw content blocks

        Raises:
            HandlerError: If the server reports isError for the call
        """
        result = await self._request(
            "tools/call",
            {"name": name, "arguments": arguments},
            timeout=timeout,
        )

        if result.get("isError"):
            text = render_content(result.get("content")) or "Tool reported an error"
            raise HandlerError(text if isinstance(text, str) else json.dumps(text))

        if result.get("structuredContent") is not None:
            return result["structuredContent"]
        return render_content(result.get("content"))

    async def ping(self, timeout: Optional[float] = None) -> None:
        """Health probe."""
        await self._request("ping", {}, timeout=timeout)

    async def close(self) -> None:
        await self.transport.close()

    async def _request(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        request_id = next(self._ids)
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            response = await self.transport.request(message, timeout if timeout is not None else self.timeout)
        except ToolError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        # Handle JSON-RPC 2.0 response
        if "error" in response:
            error = response["error"] if isinstance(response["error"], dict) else {"message": str(response["error"])}
            raise classify_jsonrpc_error(error, f"{method} on '{self.server_id}'")

        result = response.get("result")
        if not isinstance(result, dict):
            raise RemoteProtocolError(f"{method} on '{self.server_id}' returned no result object")
        return result

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        try:
            await self.transport.notify(message)
        except ToolError:
            raise
        except Exception as e:
            raise classify_error(e) from e


def render_content(content: Any) -> Any:
    """Collapse MCP content blocks: text-only content becomes one string."""
    if not content:
        return ""
    if not isinstance(content, list):
        return content
    if all(isinstance(block, dict) and block.get("type") == "text" for block in content):
        return "\n".join(block.get("text", "") for block in content)
    return content
