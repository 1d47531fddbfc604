"""Normalized tool call request/result models shared by every provider and backend."""

import json
import uuid
from enum import Enum
from typing import Dict, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Failure classes surfaced by the tool system."""
    DUPLICATE_TOOL_NAME = "DuplicateToolName"
    UNKNOWN_TOOL = "UnknownTool"
    MALFORMED_TOOL_CALL = "MalformedToolCall"
    SCHEMA_VALIDATION_FAILED = "SchemaValidationFailed"
    HANDLER_ERROR = "HandlerError"
    REMOTE_UNAVAILABLE = "RemoteUnavailable"
    TIMEOUT = "Timeout"
    REMOTE_PROTOCOL_ERROR = "RemoteProtocolError"
    AUTHENTICATION_FAILED = "AuthenticationFailed"


class CallStatus(str, Enum):
    """Lifecycle status of a single tool call result."""
    COMPLETED = "completed"
    ACCEPTED = "accepted"  # Queued for background processing
    FAILED = "failed"


def new_call_id() -> str:
    """Synthesize a call id for providers that do not supply one."""
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallRequest(BaseModel):
    """A model's request to invoke a tool, normalized across providers."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., description="Name of the tool in the unified registry")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Parsed JSON arguments")
    call_id: str = Field(default_factory=new_call_id, description="Provider call correlation id")


class ToolCallResult(BaseModel):
    """Outcome of executing (or queueing) one ToolCallRequest."""

    call_id: str
    tool_name: str
    success: bool
    output: Optional[Union[str, int, float, bool, Dict[str, Any], list]] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    attempts: int = 1
    status: CallStatus = CallStatus.COMPLETED
    job_id: Optional[str] = None

    @classmethod
    def failure(
        cls,
        request: ToolCallRequest,
        kind: ErrorKind,
        message: str,
        duration_ms: int = 0,
        attempts: int = 1,
    ) -> "ToolCallResult":
        return cls(
            call_id=request.call_id,
            tool_name=request.tool_name,
            success=False,
            error_kind=kind,
            error_message=message,
            duration_ms=duration_ms,
            attempts=attempts,
            status=CallStatus.FAILED,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == CallStatus.ACCEPTED

    def to_tool_message(self) -> str:
        """
        Render this result as the text relayed back to the model as the tool output.

        Failed calls carry a human-readable reason instead of raising, so the model
        can decide how to continue the conversation.
        """
        if not self.success:
            kind = self.error_kind.value if self.error_kind else "Error"
            return f"Error ({kind}): {self.error_message or 'tool call failed'}"
        if self.is_pending:
            return (
                f"Tool '{self.tool_name}' has been queued for background processing "
                f"(job {self.job_id})."
            )
        if self.output is None:
            return "Tool executed successfully"
        if isinstance(self.output, str):
            return self.output
        if isinstance(self.output, bool):
            return json.dumps(self.output)
        if isinstance(self.output, (int, float)):
            return str(self.output)
        return json.dumps(self.output, default=str)
