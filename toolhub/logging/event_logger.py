"""Event logging service."""

import logging
from typing import Optional, Dict, Any

from toolhub.models.tool_call import ToolCallRequest, ToolCallResult

audit_logger = logging.getLogger("toolhub.events")


def log_event(
    event_type: str,
    status: str = "success",
    latency_ms: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    tool_name: Optional[str] = None,
    call_id: Optional[str] = None,
    server_id: Optional[str] = None,
) -> None:
    """
    Emit a structured audit event.

    Args:
        event_type: Event type (e.g., 'tool_call_started', 'mcp_server_state_changed')
        status: 'success' | 'failure' | 'pending'
        latency_ms: Latency in milliseconds
        payload: Additional fields, rendered as JSON by the log formatter
        tool_name: Optional tool name
        call_id: Optional provider call id
        server_id: Optional remote tool server id
    """
    extra: Dict[str, Any] = {"event_type": event_type, "status": status}
    if latency_ms is not None:
        extra["latency_ms"] = latency_ms
    if tool_name:
        extra["tool_name"] = tool_name
    if call_id:
        extra["call_id"] = call_id
    if server_id:
        extra["server_id"] = server_id
    if payload:
        extra["payload"] = payload

    level = logging.WARNING if status == "failure" else logging.INFO
    audit_logger.log(level, event_type, extra=extra)


def log_tool_call(request: ToolCallRequest, result: ToolCallResult, origin: str) -> None:
    """
    Log the final outcome of a tool call.

    Arguments are not logged; only their keys are, since they may carry user data.

    Args:
        request: The executed request
        result: Its result
        origin: Tool origin ('local' or 'remote:<server_id>')
    """
    if result.is_pending:
        event_type, status = "tool_call_queued", "pending"
    elif result.success:
        event_type, status = "tool_call_completed", "success"
    else:
        event_type, status = "tool_call_failed", "failure"

    payload: Dict[str, Any] = {
        "origin": origin,
        "attempts": result.attempts,
        "argument_keys": sorted(request.arguments.keys()),
    }
    if result.job_id:
        payload["job_id"] = result.job_id
    if not result.success:
        payload["error_kind"] = result.error_kind.value if result.error_kind else None
        payload["error_message"] = (result.error_message or "")[:200]

    log_event(
        event_type=event_type,
        status=status,
        latency_ms=result.duration_ms,
        payload=payload,
        tool_name=request.tool_name,
        call_id=request.call_id,
    )
