"""Transports carrying JSON-RPC 2.0 messages to MCP tool servers (stdio, HTTP, WebSocket)."""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List

import httpx
import websockets

from toolhub.infra.error_handler import (
    RemoteUnavailableError,
    RemoteProtocolError,
    ServerLaunchError,
)
from toolhub.infra.timeout import run_with_timeout, MCP_SHUTDOWN_GRACE
from toolhub.models.server import ToolServerConfig, TransportType

logger = logging.getLogger(__name__)


class MCPTransport(ABC):
    """Sends JSON-RPC requests/notifications and returns the matching response message."""

    def __init__(self, server_id: str):
        self.server_id = server_id
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @abstractmethod
    async def connect(self) -> None:
        """Launch or connect to the server."""

    @abstractmethod
    async def request(self, message: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        """
        Send a JSON-RPC request and wait for the response with the same id.

        Args:
            message: Complete JSON-RPC request object (with "id")
            timeout: Seconds to wait for the response; None waits forever

        Returns:
            The raw JSON-RPC response object
        """

    @abstractmethod
    async def notify(self, message: Dict[str, Any]) -> None:
        """Send a JSON-RPC notification (no response expected)."""

    @abstractmethod
    async def close(self) -> None:
        """Disconnect and release resources."""


class StdioTransport(MCPTransport):
    """
    Launched subprocess speaking newline-delimited JSON-RPC on stdin/stdout.

    A single reader task routes responses to waiting requests by id. If the process
    exits, every pending request fails with RemoteUnavailableError.
    """

    def __init__(
        self,
        server_id: str,
        command: str,
        args: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        super().__init__(server_id)
        self.command = command
        self.args = list(args)
        self.env = env or {}
        self.cwd = cwd
        self.process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[Any, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        process_env = os.environ.copy()
        process_env.update(self.env)

        logger.info(f"Starting tool server process for {self.server_id}: {self.command} {' '.join(self.args)}")
        # Environment values may hold secrets: log the keys only
        logger.debug(f"Environment variables for {self.server_id}: {sorted(self.env.keys())}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
                cwd=self.cwd,
                limit=4 * 1024 * 1024,  # tools/list responses can be large
            )
        except FileNotFoundError:
            raise ServerLaunchError(
                f"Command not found for server '{self.server_id}': {self.command}. "
                f"Please ensure it is installed and in PATH."
            )
        except PermissionError as e:
            raise ServerLaunchError(f"Cannot execute command for server '{self.server_id}': {e}")

        self._is_connected = True
        self._reader_task = asyncio.create_task(self._read_stdout(), name=f"mcp-stdout-{self.server_id}")
        self._stderr_task = asyncio.create_task(self._drain_stderr(), name=f"mcp-stderr-{self.server_id}")
        logger.info(f"Tool server process for {self.server_id} started with PID {self.process.pid}")

    async def _read_stdout(self) -> None:
        reason = "closed its output"
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    # Some servers print banners on stdout
                    logger.debug(f"Ignoring non-JSON output from {self.server_id}: {text[:200]}")
                    continue
                await self._route(message)
        except (ConnectionError, OSError, ValueError) as e:
            reason = f"stream failed: {e}"
        finally:
            self._is_connected = False
            returncode = self.process.returncode if self.process else None
            if returncode is not None:
                reason = f"exited with code {returncode}"
            self._fail_pending(RemoteUnavailableError(f"Tool server '{self.server_id}' {reason}"))

    async def _route(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object message from {self.server_id}")
            return

        if "method" in message:
            if "id" in message:
                # Server-to-client requests (sampling, roots) are not supported
                try:
                    await self._write({
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": -32601, "message": f"Method not found: {message['method']}"},
                    })
                except RemoteUnavailableError as e:
                    logger.debug(f"Could not reject {message['method']} from {self.server_id}: {e}")
            else:
                logger.debug(f"Notification from {self.server_id}: {message['method']}")
            return

        future = self._pending.pop(message.get("id"), None)
        if future is None:
            logger.debug(f"Dropping response with unknown id {message.get('id')!r} from {self.server_id}")
            return
        if not future.done():
            future.set_result(message)

    async def _drain_stderr(self) -> None:
        try:
            while True:
                line = await self.process.stderr.readline()
                if not line:
                    return
                logger.debug(f"[{self.server_id} stderr] {line.decode('utf-8', errors='replace').rstrip()}")
        except (ConnectionError, OSError, ValueError):
            return

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _write(self, message: Dict[str, Any]) -> None:
        if not self._is_connected or not self.process or not self.process.stdin:
            raise RemoteUnavailableError(f"Tool server '{self.server_id}' is not connected")
        data = (json.dumps(message) + "\n").encode("utf-8")
        try:
            async with self._write_lock:
                self.process.stdin.write(data)
                await self.process.stdin.drain()
        except (ConnectionError, OSError) as e:
            self._is_connected = False
            raise RemoteUnavailableError(f"Failed to write to tool server '{self.server_id}': {e}")

    async def request(self, message: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        request_id = message["id"]
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(message)
            return await run_with_timeout(
                future, timeout, f"{message.get('method')} on '{self.server_id}'"
            )
        except BaseException:
            # Timeout, cancellation or write failure: tell the server to stop working on it
            if self._pending.pop(request_id, None) is not None:
                self._send_cancel(request_id)
            raise

    def _send_cancel(self, request_id: Any) -> None:
        if not self._is_connected or not self.process or not self.process.stdin:
            return
        notification = {
            "jsonrpc": "2.0",
            "method": "notifications/cancelled",
            "params": {"requestId": request_id, "reason": "Request cancelled by client"},
        }
        try:
            self.process.stdin.write((json.dumps(notification) + "\n").encode("utf-8"))
        except (ConnectionError, OSError) as e:
            logger.debug(f"Could not send cancellation to {self.server_id}: {e}")

    async def notify(self, message: Dict[str, Any]) -> None:
        await self._write(message)

    async def close(self) -> None:
        self._is_connected = False
        process, self.process = self.process, None

        if process and process.returncode is None:
            try:
                if process.stdin:
                    process.stdin.close()
                await asyncio.wait_for(process.wait(), timeout=MCP_SHUTDOWN_GRACE)
            except asyncio.TimeoutError:
                logger.warning(f"Tool server {self.server_id} did not exit in {MCP_SHUTDOWN_GRACE}s, killing it")
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            logger.info(f"Tool server process for {self.server_id} stopped")

        for task in (self._reader_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(RemoteUnavailableError(f"Tool server '{self.server_id}' was stopped"))


def _parse_event_stream(body: str) -> List[Dict[str, Any]]:
    """Extract JSON-RPC messages from a text/event-stream body."""
    messages = []
    data_lines: List[str] = []
    for line in body.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line and data_lines:
            messages.append(json.loads("\n".join(data_lines)))
            data_lines = []
    return messages


class HttpTransport(MCPTransport):
    """JSON-RPC over HTTP POST (plain JSON or event-stream responses)."""

    def __init__(self, server_id: str, endpoint: str, headers: Optional[Dict[str, str]] = None, timeout: float = 30.0):
        super().__init__(server_id)
        self.endpoint = endpoint
        self.headers = headers or {}
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
                **self.headers,
            },
            timeout=self.timeout,
        )
        self._is_connected = True
        logger.info(f"HTTP transport for {self.server_id} ready ({self.endpoint})")

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        if not self._client:
            raise RemoteUnavailableError(f"Tool server '{self.server_id}' is not connected")
        headers = {"Mcp-Session-Id": self._session_id} if self._session_id else None
        response = await self._client.post(self.endpoint, json=message, headers=headers)
        response.raise_for_status()
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    async def request(self, message: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        response = await run_with_timeout(
            self._post(message), timeout, f"{message.get('method')} on '{self.server_id}'"
        )

        if response.headers.get("content-type", "").startswith("text/event-stream"):
            for candidate in _parse_event_stream(response.text):
                if isinstance(candidate, dict) and candidate.get("id") == message["id"]:
                    return candidate
            raise RemoteProtocolError(f"No response for request {message['id']} in event stream from '{self.server_id}'")

        result = response.json()
        if not isinstance(result, dict):
            raise RemoteProtocolError(f"Tool server '{self.server_id}' returned a non-object response")
        return result

    async def notify(self, message: Dict[str, Any]) -> None:
        await self._post(message)

    async def close(self) -> None:
        self._is_connected = False
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info(f"HTTP transport for {self.server_id} closed")


class WebSocketTransport(MCPTransport):
    """One JSON-RPC request/response per WebSocket connection."""

    def __init__(self, server_id: str, endpoint: str, headers: Optional[Dict[str, str]] = None, timeout: float = 30.0):
        super().__init__(server_id)
        self.endpoint = endpoint
        self.headers = headers or {}
        self.timeout = timeout

    async def connect(self) -> None:
        self._is_connected = True
        logger.info(f"WebSocket transport for {self.server_id} ready ({self.endpoint})")

    async def _exchange(self, message: Dict[str, Any], expect_response: bool) -> Optional[Dict[str, Any]]:
        if not self._is_connected:
            raise RemoteUnavailableError(f"Tool server '{self.server_id}' is not connected")
        async with websockets.connect(
            self.endpoint,
            additional_headers=self.headers,
            open_timeout=self.timeout,
            ping_interval=None,  # Disable ping for short-lived connections
        ) as websocket:
            await websocket.send(json.dumps(message))
            if not expect_response:
                return None
            while True:
                response = json.loads(await websocket.recv())
                # Skip server notifications sent ahead of the response
                if isinstance(response, dict) and response.get("id") == message["id"]:
                    return response

    async def request(self, message: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        return await run_with_timeout(
            self._exchange(message, expect_response=True), timeout, f"{message.get('method')} on '{self.server_id}'"
        )

    async def notify(self, message: Dict[str, Any]) -> None:
        # Connections are per request, so session notifications have nowhere to go
        logger.debug(f"Skipping {message.get('method')} for connectionless WebSocket server {self.server_id}")

    async def close(self) -> None:
        self._is_connected = False


def create_transport(server: ToolServerConfig, env: Dict[str, str], headers: Dict[str, str]) -> MCPTransport:
    """
    Build the transport for a server configuration.

    Args:
        server: Validated server configuration
        env: Environment with ${VAR} placeholders already resolved (stdio only)
        headers: Headers with placeholders already resolved (network transports)

    Returns:
        An unconnected MCPTransport
    """
    if server.transport == TransportType.STDIO:
        return StdioTransport(server.server_id, server.command, server.args, env=env)
    if server.transport == TransportType.HTTP:
        return HttpTransport(server.server_id, server.endpoint, headers=headers, timeout=server.timeout_seconds)
    if server.transport == TransportType.WEBSOCKET:
        return WebSocketTransport(server.server_id, server.endpoint, headers=headers, timeout=server.timeout_seconds)
    raise ServerLaunchError(f"Unsupported transport '{server.transport}' for server '{server.server_id}'")
