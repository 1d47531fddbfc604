"""Remote tool server manager: lifecycle, discovery cache and invocation for MCP servers."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple, Callable

from pydantic import ValidationError

from toolhub.adapters.mcp_client import MCPClient
from toolhub.adapters.mcp_transport import create_transport
from toolhub.infra.error_handler import (
    ToolError,
    RemoteUnavailableError,
    RemoteProtocolError,
    JSONRPC_METHOD_NOT_FOUND,
    classify_error,
    retry_with_backoff,
)
from toolhub.infra.metrics import mcp_server_state, mcp_discovery_total
from toolhub.infra.timeout import run_with_timeout
from toolhub.logging.event_logger import log_event
from toolhub.models.server import (
    ALLOWED_TRANSITIONS,
    EMPTY_TOOL_CACHE,
    STATE_ORDINALS,
    ServersDocument,
    ServerState,
    ToolCache,
    ToolServerConfig,
    ToolServerHandle,
)
from toolhub.models.tool import ToolDefinition, ExecutionMode, remote_origin
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult
from toolhub.services.server_config_service import ServerConfigService, resolve_placeholders

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ToolServerConfig], MCPClient]


def create_mcp_client(server: ToolServerConfig) -> MCPClient:
    """Build an unconnected client for a server, resolving ${VAR} placeholders."""
    env, missing_env = resolve_placeholders(server.env)
    headers, missing_headers = resolve_placeholders(server.headers)
    for name in sorted(set(missing_env + missing_headers)):
        logger.warning(f"Environment variable '{name}' for server '{server.server_id}' is not set")
    return MCPClient(create_transport(server, env, headers), timeout=server.timeout_seconds)


def normalize_tool_descriptor(server_id: str, descriptor: Any) -> Optional[ToolDefinition]:
    """
    Convert a server's tool descriptor into a ToolDefinition.

    The schema may arrive as inputSchema, input_schema or parameters. Descriptors
    without a name or description, or with an invalid schema, are skipped.

    Returns:
        ToolDefinition, or None if the descriptor was skipped
    """
    if not isinstance(descriptor, dict):
        logger.warning(f"Skipping non-object tool descriptor from {server_id}")
        return None

    name = descriptor.get("name")
    description = descriptor.get("description")
    if not name or not description:
        logger.warning(f"Skipping tool without name or description from {server_id}: {name or '<unnamed>'}")
        return None

    schema = descriptor.get("inputSchema") or descriptor.get("input_schema") or descriptor.get("parameters") or {}
    try:
        return ToolDefinition(
            name=name,
            description=description,
            parameters_schema=schema,
            origin=remote_origin(server_id),
            execution_mode=ExecutionMode.SYNC,
            category=descriptor.get("category") or "mcp",
            version=str(descriptor.get("version") or "1.0.0"),
        )
    except ValidationError as e:
        problems = "; ".join(error["msg"] for error in e.errors())
        logger.warning(f"Skipping invalid tool '{name}' from {server_id}: {problems}")
        return None


def _descriptor(definition: ToolDefinition) -> Dict[str, Any]:
    return {
        "name": definition.name,
        "description": definition.description,
        "inputSchema": definition.parameters_schema,
    }


class RemoteToolServerManager:
    """
    Owns one ToolServerHandle per configured server.

    Each handle's state transitions are serialized by its own lock; there is no lock
    spanning servers, so a hung server never blocks the others. Discovered tool lists
    are swapped in whole (ToolCache is immutable).
    """

    def __init__(
        self,
        document: ServersDocument,
        config_service: Optional[ServerConfigService] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.document = document
        self.config_service = config_service
        self._client_factory = client_factory or create_mcp_client
        self._clock = clock
        self._persisted: Dict[str, Dict[str, Any]] = {}
        self._handles: Dict[str, ToolServerHandle] = {
            server_id: self._new_handle(server) for server_id, server in document.servers.items()
        }

    def _new_handle(self, server: ToolServerConfig) -> ToolServerHandle:
        handle = ToolServerHandle(config=server)
        handle.call_slots = asyncio.Semaphore(self.document.global_config.max_concurrent)
        mcp_server_state.labels(server_id=server.server_id).set(STATE_ORDINALS[handle.state])
        return handle

    @property
    def cache_ttl(self) -> float:
        return float(self.document.global_config.discovery_cache_ttl_seconds)

    def _get_handle(self, server_id: str) -> ToolServerHandle:
        handle = self._handles.get(server_id)
        if handle is None:
            raise RemoteUnavailableError(f"Unknown tool server '{server_id}'")
        return handle

    def _transition(self, handle: ToolServerHandle, new_state: ServerState, error: Optional[str] = None) -> None:
        """Apply a state transition. Caller must hold handle.lock."""
        old_state = handle.state
        if new_state == old_state:
            if error:
                handle.last_error = error
            return
        if new_state != ServerState.STOPPED and new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Illegal state transition for '{handle.server_id}': {old_state.value} -> {new_state.value}"
            )

        handle.state = new_state
        if error:
            handle.last_error = error
        elif new_state == ServerState.HEALTHY:
            handle.last_error = None

        mcp_server_state.labels(server_id=handle.server_id).set(STATE_ORDINALS[new_state])
        log_event(
            event_type="mcp_server_state_changed",
            status="failure" if new_state in (ServerState.DEGRADED, ServerState.STOPPED) and error else "success",
            server_id=handle.server_id,
            payload={"from": old_state.value, "to": new_state.value, "error": error},
        )

    # Startup

    async def start_all(self) -> Dict[str, ServerState]:
        """
        Start every enabled server concurrently.

        Each server is bounded by its own timeout; failures are recorded on the handle
        (Degraded or Stopped) and never raised.

        Returns:
            Final state per enabled server
        """
        if self.config_service is not None:
            self._persisted = await asyncio.to_thread(self.config_service.load_tools_cache)

        handles = [handle for handle in self._handles.values() if handle.config.enabled]
        await asyncio.gather(*(self._start(handle) for handle in handles))
        states = {handle.server_id: handle.state for handle in handles}
        logger.info(f"Tool servers started: {', '.join(f'{k}={v.value}' for k, v in states.items()) or 'none'}")
        return states

    async def start_server(self, server_id: str) -> ServerState:
        return await self._start(self._get_handle(server_id))

    async def _start(self, handle: ToolServerHandle, use_persisted: bool = True) -> ServerState:
        async with handle.lock:
            await self._start_locked(handle, use_persisted)
            return handle.state

    async def _start_locked(self, handle: ToolServerHandle, use_persisted: bool = True) -> None:
        server = handle.config
        if not server.enabled:
            logger.info(f"Tool server {server.server_id} is disabled, not starting")
            return
        if handle.state in (ServerState.HEALTHY, ServerState.DEGRADED):
            return
        if handle.state in (ServerState.CONFIGURING, ServerState.STARTING):
            # Left over from a cancelled start
            self._transition(handle, ServerState.STOPPED)

        self._transition(handle, ServerState.CONFIGURING)
        self._transition(handle, ServerState.STARTING)

        try:
            client = await self._connect(handle)
        except asyncio.CancelledError:
            self._transition(handle, ServerState.STOPPED, error="Startup cancelled")
            raise
        except ToolError as e:
            # Missing command, bad credentials or a broken protocol will not fix themselves
            target = ServerState.DEGRADED if e.retryable else ServerState.STOPPED
            logger.error(f"Tool server {server.server_id} failed to start: {e.message}")
            self._transition(handle, target, error=e.message)
            return

        handle.client = client
        handle.server_info = client.server_info

        persisted = self._persisted.get(server.server_id) if use_persisted else None
        if persisted and self._restore_cache(handle, persisted):
            self._transition(handle, ServerState.HEALTHY)
            return

        try:
            await self._discover_locked(handle)
        except ToolError as e:
            logger.error(f"Tool discovery failed for {server.server_id}: {e.message}")
            self._transition(handle, ServerState.DEGRADED, error=f"Discovery failed: {e.message}")
            return

        self._transition(handle, ServerState.HEALTHY)

    async def _connect(self, handle: ToolServerHandle) -> MCPClient:
        """Create a client and complete the handshake, retrying transient failures."""
        server = handle.config

        async def attempt() -> MCPClient:
            client = self._client_factory(server)
            try:
                await run_with_timeout(client.connect(), server.timeout_seconds, f"Handshake with '{server.server_id}'")
            except BaseException:
                await self._close_client(server.server_id, client)
                raise
            return client

        client, _ = await retry_with_backoff(
            attempt,
            max_attempts=self.document.global_config.retry_attempts + 1,
            initial_delay=0.5,
            max_delay=5.0,
        )
        return client

    def _restore_cache(self, handle: ToolServerHandle, persisted: Dict[str, Any]) -> bool:
        """Adopt a persisted discovery result if it is younger than the TTL."""
        try:
            discovered_at = datetime.fromisoformat(persisted["discovered_at"]).timestamp()
            descriptors = persisted["tools"]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed persisted tools for {handle.server_id}: {e}")
            return False

        cache = ToolCache(
            tools=tuple(
                definition
                for definition in (normalize_tool_descriptor(handle.server_id, d) for d in descriptors)
                if definition is not None
            ),
            cached_at=discovered_at,
            ttl_seconds=self.cache_ttl,
        )
        if not cache.is_fresh(self._clock()):
            return False

        handle.cached_tools = cache
        logger.info(f"Using persisted tool list for {handle.server_id} ({len(cache.tools)} tools)")
        return True

    # Discovery

    async def _discover_locked(self, handle: ToolServerHandle) -> Tuple[ToolDefinition, ...]:
        server_id = handle.server_id
        try:
            descriptors = await handle.client.list_tools()
        except ToolError:
            mcp_discovery_total.labels(server_id=server_id, status="failure").inc()
            raise

        tools = []
        seen = set()
        for descriptor in descriptors:
            definition = normalize_tool_descriptor(server_id, descriptor)
            if definition is None:
                continue
            if definition.name in seen:
                logger.warning(f"Tool server {server_id} listed '{definition.name}' twice, keeping the first")
                continue
            seen.add(definition.name)
            tools.append(definition)

        now = self._clock()
        handle.cached_tools = ToolCache(tools=tuple(tools), cached_at=now, ttl_seconds=self.cache_ttl)
        mcp_discovery_total.labels(server_id=server_id, status="success").inc()
        log_event(
            event_type="mcp_tools_discovered",
            server_id=server_id,
            payload={"tool_count": len(tools), "skipped": len(descriptors) - len(tools)},
        )

        if self.config_service is not None:
            try:
                await asyncio.to_thread(
                    self.config_service.save_cached_tools,
                    server_id,
                    [_descriptor(tool) for tool in tools],
                    datetime.fromtimestamp(now, tz=timezone.utc),
                )
            except OSError as e:
                logger.warning(f"Could not persist discovered tools for {server_id}: {e}")

        return handle.cached_tools.tools

    async def discover_tools(self, server_id: str, force: bool = False) -> List[ToolDefinition]:
        """
        Return a server's tools, listing them again if the cache expired (or force).

        Safe to repeat. A failed discovery moves a Healthy server to Degraded.

        Raises:
            RemoteUnavailableError: If the server is not connected
        """
        handle = self._get_handle(server_id)
        async with handle.lock:
            if handle.state not in (ServerState.HEALTHY, ServerState.DEGRADED) or handle.client is None:
                raise RemoteUnavailableError(f"Tool server '{server_id}' is {handle.state.value}")
            if not force and handle.cached_tools.is_fresh(self._clock()):
                return list(handle.cached_tools.tools)
            try:
                return list(await self._discover_locked(handle))
            except ToolError as e:
                if handle.state == ServerState.HEALTHY:
                    self._transition(handle, ServerState.DEGRADED, error=f"Discovery failed: {e.message}")
                raise

    async def refresh_stale_caches(self) -> None:
        """Re-discover tools of Healthy servers whose cache outlived its TTL."""
        now = self._clock()
        stale = [
            handle.server_id
            for handle in self._handles.values()
            if handle.state == ServerState.HEALTHY and not handle.cached_tools.is_fresh(now)
        ]
        results = await asyncio.gather(*(self.discover_tools(sid) for sid in stale), return_exceptions=True)
        for server_id, result in zip(stale, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, ToolError):
                logger.warning(f"Refreshing tools of {server_id} failed: {result.message}")
            elif isinstance(result, BaseException):
                raise result

    def invalidate(self, server_id: str) -> None:
        """Expire a server's tool cache; tools stay visible until the next discovery."""
        handle = self._get_handle(server_id)
        cache = handle.cached_tools
        handle.cached_tools = ToolCache(tools=cache.tools, cached_at=None, ttl_seconds=cache.ttl_seconds)
        self._persisted.pop(server_id, None)

    def healthy_tools(self) -> List[Tuple[str, Tuple[ToolDefinition, ...]]]:
        """Cached tool lists of Healthy servers, in configuration order."""
        handles = self._handles
        result = []
        for handle in handles.values():
            cache = handle.cached_tools
            if handle.state == ServerState.HEALTHY:
                result.append((handle.server_id, cache.tools))
        return result

    # Invocation

    async def invoke_tool(self, server_id: str, request: ToolCallRequest, timeout: Optional[float] = None) -> ToolCallResult:
        """
        Call a tool on a Healthy server.

        A crash or dropped connection moves the server to Degraded and raises a
        retryable RemoteUnavailableError; retrying is the caller's decision.

        Args:
            server_id: Server exposing the tool
            request: The tool call
            timeout: Deadline in seconds (defaults to the server's timeout)

        Returns:
            Successful ToolCallResult

        Raises:
            ToolError: Classified failure
        """
        handle = self._get_handle(server_id)
        client = handle.client
        if handle.state != ServerState.HEALTHY or client is None:
            raise RemoteUnavailableError(f"Tool server '{server_id}' is {handle.state.value}")

        timeout = timeout or handle.config.timeout_seconds
        start_time = time.monotonic()
        handle.invocations += 1
        try:
            async with handle.call_slots:
                output = await client.call_tool(request.tool_name, request.arguments, timeout=timeout)
        except RemoteUnavailableError as e:
            handle.failures += 1
            await self._mark_degraded(handle, client, e.message)
            raise
        except ToolError:
            handle.failures += 1
            raise
        finally:
            handle.last_latency_ms = int((time.monotonic() - start_time) * 1000)

        return ToolCallResult(
            call_id=request.call_id,
            tool_name=request.tool_name,
            success=True,
            output=output,
            duration_ms=handle.last_latency_ms,
        )

    async def _mark_degraded(self, handle: ToolServerHandle, client: MCPClient, reason: str) -> None:
        async with handle.lock:
            # A restart may already have replaced the client that failed
            if handle.client is client and handle.state == ServerState.HEALTHY:
                logger.warning(f"Tool server {handle.server_id} degraded: {reason}")
                self._transition(handle, ServerState.DEGRADED, error=reason)

    # Health

    async def probe(self, server_id: str) -> ServerState:
        """
        Health-check a started server.

        Degraded servers reconnect if needed, re-discover when their cache is stale and
        return to Healthy on success. A failing Healthy server becomes Degraded.
        """
        handle = self._get_handle(server_id)
        async with handle.lock:
            if handle.state not in (ServerState.HEALTHY, ServerState.DEGRADED):
                return handle.state
            try:
                await self._probe_locked(handle)
            except ToolError as e:
                if handle.state == ServerState.HEALTHY:
                    logger.warning(f"Health probe failed for {server_id}: {e.message}")
                self._transition(handle, ServerState.DEGRADED, error=f"Probe failed: {e.message}")
                return handle.state

            if handle.state == ServerState.DEGRADED:
                logger.info(f"Tool server {server_id} recovered")
                self._transition(handle, ServerState.HEALTHY)
            return handle.state

    async def _probe_locked(self, handle: ToolServerHandle) -> None:
        if handle.client is None or not handle.client.is_connected:
            await self._close_client(handle.server_id, handle.client)
            handle.client = None
            handle.client = await self._connect(handle)
            handle.server_info = handle.client.server_info

        try:
            await handle.client.ping(timeout=handle.config.timeout_seconds)
        except RemoteProtocolError as e:
            # A server without ping still answered
            if e.code != JSONRPC_METHOD_NOT_FOUND:
                raise

        if not handle.cached_tools.is_fresh(self._clock()):
            await self._discover_locked(handle)

    async def probe_all(self) -> Dict[str, ServerState]:
        server_ids = [sid for sid, handle in self._handles.items() if handle.config.enabled]
        states = await asyncio.gather(*(self.probe(sid) for sid in server_ids))
        return dict(zip(server_ids, states))

    # Shutdown, restart, reload

    async def _close_client(self, server_id: str, client: Optional[MCPClient]) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing connection to {server_id}: {classify_error(e).message}")

    async def _stop_locked(self, handle: ToolServerHandle) -> None:
        client, handle.client = handle.client, None
        await self._close_client(handle.server_id, client)
        handle.cached_tools = EMPTY_TOOL_CACHE
        if handle.state != ServerState.UNCONFIGURED:
            self._transition(handle, ServerState.STOPPED)

    async def _stop(self, handle: ToolServerHandle) -> None:
        async with handle.lock:
            await self._stop_locked(handle)

    async def shutdown(self, server_id: Optional[str] = None) -> None:
        """Stop one server, or all of them."""
        if server_id is not None:
            await self._stop(self._get_handle(server_id))
            return
        await asyncio.gather(*(self._stop(handle) for handle in self._handles.values()))
        logger.info("All tool servers stopped")

    async def restart(self, server_id: str) -> ServerState:
        """Stop and start a server, discarding every cached tool list."""
        handle = self._get_handle(server_id)
        self._persisted.pop(server_id, None)
        async with handle.lock:
            await self._stop_locked(handle)
            await self._start_locked(handle, use_persisted=False)
            return handle.state

    async def reload(self, document: ServersDocument) -> Dict[str, List[str]]:
        """
        Apply a new servers document.

        Servers whose configuration is unchanged keep running. Removed or changed
        servers are stopped; new, changed and newly enabled servers are started.

        Returns:
            Dict with started, stopped and unchanged server ids
        """
        old_handles = self._handles
        self.document = document

        new_handles: Dict[str, ToolServerHandle] = {}
        to_stop: List[ToolServerHandle] = []
        to_start: List[ToolServerHandle] = []
        unchanged: List[str] = []

        for server_id, server in document.servers.items():
            existing = old_handles.get(server_id)
            if existing is not None and existing.config == server:
                new_handles[server_id] = existing
                unchanged.append(server_id)
                continue
            if existing is not None:
                to_stop.append(existing)
            handle = self._new_handle(server)
            new_handles[server_id] = handle
            if server.enabled:
                to_start.append(handle)

        to_stop.extend(handle for sid, handle in old_handles.items() if sid not in document.servers)

        # Swap first so snapshots stop seeing removed servers immediately
        self._handles = new_handles

        await asyncio.gather(*(self._stop(handle) for handle in to_stop))
        await asyncio.gather(*(self._start(handle) for handle in to_start))

        summary = {
            "started": [handle.server_id for handle in to_start],
            "stopped": [handle.server_id for handle in to_stop],
            "unchanged": unchanged,
        }
        logger.info(f"Tool server configuration reloaded: {summary}")
        return summary

    # Introspection

    def get_state(self, server_id: str) -> ServerState:
        return self._get_handle(server_id).state

    def get_timeout(self, server_id: str) -> float:
        """Per-call deadline in seconds configured for a server."""
        return self._get_handle(server_id).config.timeout_seconds

    def server_ids(self) -> List[str]:
        return list(self._handles)

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-server state, tool count, cache age, last error and invocation counters."""
        now = self._clock()
        stats = {}
        for server_id, handle in self._handles.items():
            cache = handle.cached_tools
            age = cache.age_seconds(now)
            stats[server_id] = {
                "state": handle.state.value,
                "enabled": handle.config.enabled,
                "transport": handle.config.transport.value,
                "tool_count": len(cache.tools),
                "cache_age_seconds": round(age, 1) if age is not None else None,
                "cache_fresh": cache.is_fresh(now),
                "last_error": handle.last_error,
                "invocations": handle.invocations,
                "failures": handle.failures,
                "last_latency_ms": handle.last_latency_ms,
                "server_info": handle.server_info,
            }
        return stats
