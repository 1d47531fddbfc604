"""Remote tool server configuration and runtime handle models."""

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from toolhub.models.tool import ToolDefinition


SERVER_ID_PATTERN = re.compile(r"^[a-z0-9\-_]+$")
DEFAULT_SERVER_TIMEOUT_MS = 30_000
MAX_SERVER_TIMEOUT_MS = 300_000


class TransportType(str, Enum):
    """How the manager reaches a tool server."""
    STDIO = "stdio"  # Launched subprocess speaking newline-delimited JSON-RPC
    HTTP = "http"
    WEBSOCKET = "websocket"


class ServerState(str, Enum):
    """Lifecycle states of a remote tool server handle."""
    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STOPPED = "stopped"


# Allowed transitions; STOPPED is reachable from every state
ALLOWED_TRANSITIONS: Dict[ServerState, Tuple[ServerState, ...]] = {
    ServerState.UNCONFIGURED: (ServerState.CONFIGURING,),
    ServerState.CONFIGURING: (ServerState.STARTING,),
    ServerState.STARTING: (ServerState.HEALTHY, ServerState.DEGRADED),
    ServerState.HEALTHY: (ServerState.DEGRADED,),
    ServerState.DEGRADED: (ServerState.HEALTHY,),
    ServerState.STOPPED: (ServerState.CONFIGURING,),
}

STATE_ORDINALS: Dict[ServerState, int] = {
    state: index for index, state in enumerate(ServerState)
}


class ToolServerConfig(BaseModel):
    """Configuration for one external tool server, as read from the servers document."""

    server_id: str = Field(..., description="Unique server identifier")
    transport: TransportType = Field(default=TransportType.STDIO)
    command: Optional[str] = Field(default=None, description="Executable for stdio servers")
    args: List[str] = Field(default_factory=list)
    endpoint: Optional[str] = Field(default=None, description="URL for http/websocket servers")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment (may contain ${VAR})")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers for network transports")
    timeout_ms: int = Field(default=DEFAULT_SERVER_TIMEOUT_MS, ge=1, le=MAX_SERVER_TIMEOUT_MS)
    enabled: bool = Field(default=False)
    display_name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("server_id")
    @classmethod
    def _validate_server_id(cls, value: str) -> str:
        if not SERVER_ID_PATTERN.match(value):
            raise ValueError(
                f"Server name '{value}' must contain only lowercase letters, numbers, hyphens, and underscores"
            )
        return value

    @model_validator(mode="after")
    def _validate_transport_fields(self) -> "ToolServerConfig":
        if self.transport == TransportType.STDIO:
            if not self.command:
                raise ValueError(f"stdio server '{self.server_id}' requires a command")
        elif self.transport == TransportType.HTTP:
            if not self.endpoint or not self.endpoint.lower().startswith(("http://", "https://")):
                raise ValueError(f"http server '{self.server_id}' requires an http(s):// endpoint")
        elif self.transport == TransportType.WEBSOCKET:
            if not self.endpoint or not self.endpoint.lower().startswith(("ws://", "wss://")):
                raise ValueError(f"websocket server '{self.server_id}' requires a ws(s):// endpoint")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def label(self) -> str:
        return self.display_name or self.server_id.replace("-", " ").capitalize()


class GlobalServerSettings(BaseModel):
    """Settings applied to every server unless overridden per server."""
    timeout_ms: int = Field(default=DEFAULT_SERVER_TIMEOUT_MS, ge=1, le=MAX_SERVER_TIMEOUT_MS)
    max_concurrent: int = Field(default=3, ge=1, le=10)
    retry_attempts: int = Field(default=2, ge=0, le=5)
    discovery_cache_ttl_seconds: int = Field(default=3600, ge=0)


class ServersDocument(BaseModel):
    """The whole server configuration document, loaded once and passed explicitly."""
    servers: Dict[str, ToolServerConfig] = Field(default_factory=dict)
    global_config: GlobalServerSettings = Field(default_factory=GlobalServerSettings)

    def enabled_servers(self) -> List[ToolServerConfig]:
        return [server for server in self.servers.values() if server.enabled]


@dataclass(frozen=True)
class ToolCache:
    """Snapshot of a server's discovered tools. Replaced whole, never mutated."""
    tools: Tuple[ToolDefinition, ...] = ()
    cached_at: Optional[float] = None  # epoch seconds
    ttl_seconds: float = 3600.0

    def is_fresh(self, now: Optional[float] = None) -> bool:
        if self.cached_at is None:
            return False
        now = time.time() if now is None else now
        return (now - self.cached_at) < self.ttl_seconds

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        if self.cached_at is None:
            return None
        now = time.time() if now is None else now
        return max(0.0, now - self.cached_at)


EMPTY_TOOL_CACHE = ToolCache()


@dataclass
class ToolServerHandle:
    """Runtime state for one configured server. Owned by the server manager only."""
    config: ToolServerConfig
    state: ServerState = ServerState.UNCONFIGURED
    cached_tools: ToolCache = EMPTY_TOOL_CACHE
    last_error: Optional[str] = None
    client: Any = None  # MCPClient while connected
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    call_slots: Optional[asyncio.Semaphore] = None  # Bounds concurrent tools/call requests
    server_info: Dict[str, Any] = field(default_factory=dict)
    invocations: int = 0
    failures: int = 0
    last_latency_ms: Optional[int] = None

    @property
    def server_id(self) -> str:
        return self.config.server_id
