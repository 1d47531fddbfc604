"""Canonical tool definition model."""

import re
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


LOCAL_ORIGIN = "local"
REMOTE_ORIGIN_PREFIX = "remote:"

# Strictest name rule across supported providers (xAI/OpenAI: letters, digits, _ and -, max 64)
TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
TOOL_NAME_MAX_LENGTH = 64

EMPTY_OBJECT_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}


class ExecutionMode(str, Enum):
    """How a tool call is carried out."""
    SYNC = "sync"  # Run in the calling context, result available immediately
    QUEUED = "queued"  # Handed to a background job, result reconciled later


def remote_origin(server_id: str) -> str:
    """Build the origin string for a tool exposed by a remote tool server."""
    return f"{REMOTE_ORIGIN_PREFIX}{server_id}"


class ToolDefinition(BaseModel):
    """Canonical, immutable description of one tool regardless of where it runs."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Tool name, unique across the unified registry")
    description: str = Field(..., description="Human readable description shown to the model")
    parameters_schema: Dict[str, Any] = Field(
        default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA),
        description="JSON Schema (object) describing the tool arguments",
    )
    origin: str = Field(
        default=LOCAL_ORIGIN,
        description="'local' for in-process handlers, 'remote:<server_id>' for tool servers",
    )
    execution_mode: ExecutionMode = Field(
        default=ExecutionMode.SYNC,
        description="'sync' or 'queued'; remote tools are always sync",
    )
    category: str = Field(default="general", description="Free-form grouping label")
    version: str = Field(default="1.0.0", description="Tool version as reported by its source")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not value or not TOOL_NAME_PATTERN.match(value):
            raise ValueError(
                f"Tool name '{value}' can only contain letters, numbers, underscores, and hyphens"
            )
        if len(value) > TOOL_NAME_MAX_LENGTH:
            raise ValueError(
                f"Tool name '{value}' is too long (max {TOOL_NAME_MAX_LENGTH} characters)"
            )
        return value

    @field_validator("parameters_schema")
    @classmethod
    def _validate_schema(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            return dict(EMPTY_OBJECT_SCHEMA)
        if value.get("type") != "object":
            raise ValueError('Tool parameters schema type must be "object"')
        properties = value.get("properties", {})
        if not isinstance(properties, dict):
            raise ValueError("Tool parameters schema 'properties' must be an object")
        required = value.get("required", [])
        if not isinstance(required, list):
            raise ValueError("Tool parameters schema 'required' must be a list")
        return value

    @field_validator("origin")
    @classmethod
    def _validate_origin(cls, value: str) -> str:
        if value == LOCAL_ORIGIN:
            return value
        if value.startswith(REMOTE_ORIGIN_PREFIX) and len(value) > len(REMOTE_ORIGIN_PREFIX):
            return value
        raise ValueError(f"Invalid tool origin '{value}'")

    @model_validator(mode="after")
    def _remote_tools_are_sync(self) -> "ToolDefinition":
        if self.is_remote and self.execution_mode != ExecutionMode.SYNC:
            raise ValueError("Remote tools cannot use queued execution")
        return self

    @property
    def is_local(self) -> bool:
        return self.origin == LOCAL_ORIGIN

    @property
    def is_remote(self) -> bool:
        return self.origin.startswith(REMOTE_ORIGIN_PREFIX)

    @property
    def server_id(self) -> Optional[str]:
        """Server id for remote tools, None for local ones."""
        if not self.is_remote:
            return None
        return self.origin[len(REMOTE_ORIGIN_PREFIX):]

    @property
    def required_parameters(self) -> list:
        return list(self.parameters_schema.get("required", []))
