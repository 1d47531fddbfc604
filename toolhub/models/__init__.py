from .tool import ToolDefinition, ExecutionMode, LOCAL_ORIGIN, remote_origin
from .tool_call import ToolCallRequest, ToolCallResult, ErrorKind, CallStatus
from .server import (
    ToolServerConfig,
    ServersDocument,
    ServerState,
    ToolServerHandle,
    TransportType,
)

__all__ = [
    "ToolDefinition",
    "ExecutionMode",
    "LOCAL_ORIGIN",
    "remote_origin",
    "ToolCallRequest",
    "ToolCallResult",
    "ErrorKind",
    "CallStatus",
    "ToolServerConfig",
    "ServersDocument",
    "ServerState",
    "ToolServerHandle",
    "TransportType",
]
