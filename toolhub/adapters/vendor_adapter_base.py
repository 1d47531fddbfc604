"""Shared contract and helpers for provider (vendor) tool-calling adapters."""

import json
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional

from toolhub.infra.error_handler import MalformedToolCallError, AuthenticationFailedError
from toolhub.models.tool import ToolDefinition
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult, new_call_id

# Error type/code/status values providers use for bad or missing credentials
AUTH_ERROR_MARKERS = {
    "authentication_error",
    "permission_error",
    "invalid_api_key",
    "UNAUTHENTICATED",
    "PERMISSION_DENIED",
    401,
    403,
}


class ProviderAdapter(ABC):
    """Translates the unified tool namespace to and from one provider's wire format."""

    provider_id: str = ""

    @abstractmethod
    def format_tools_for_wire(self, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        """Serialize definitions into the provider's tools payload. Pure and deterministic."""

    @abstractmethod
    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        """Whether the provider (and, when given, the model) accepts tools."""

    @abstractmethod
    def extract_tool_calls(self, response: Any) -> List[ToolCallRequest]:
        """
        Parse every tool call the provider asked for.

        Raises:
            MalformedToolCallError: If a call's arguments are not a JSON object
        """

    @abstractmethod
    def format_tool_result(self, result: ToolCallResult) -> Dict[str, Any]:
        """Build the provider-shaped message that threads a result back into the conversation."""

    def response_has_tool_calls(self, response: Any) -> bool:
        return bool(self._raw_tool_calls(response_data(response)))

    def _raw_tool_calls(self, data: Dict[str, Any]) -> List[Any]:
        return []


def response_data(response: Any) -> Dict[str, Any]:
    """
    Normalize a provider response to a plain dict.

    Handles REST dicts and SDK objects (pydantic model_dump() or to_dict()).

    Raises:
        AuthenticationFailedError: If the body is a provider credential error
    """
    if response is None:
        return {}
    if isinstance(response, dict):
        data = response
    elif hasattr(response, "model_dump"):
        data = response.model_dump()
    elif hasattr(response, "to_dict"):
        data = response.to_dict()
    else:
        raise MalformedToolCallError(f"Unsupported provider response type: {type(response).__name__}")

    error = data.get("error")
    if isinstance(error, dict) and is_auth_error(error):
        raise AuthenticationFailedError(f"Provider rejected credentials: {error.get('message', 'unauthorized')}")
    return data


def is_auth_error(error: Dict[str, Any]) -> bool:
    """Whether a provider error body (OpenAI, Anthropic, Gemini shapes) is a credential failure."""
    markers = (error.get("type"), error.get("code"), error.get("status"))
    return any(isinstance(marker, (str, int)) and marker in AUTH_ERROR_MARKERS for marker in markers)


def parse_arguments(raw: Any, tool_name: Optional[str], call_id: Optional[str]) -> Dict[str, Any]:
    """
    Decode tool call arguments.

    Empty arguments ("" or None) mean no arguments. Anything that is not a JSON
    object is a malformed call, never silently replaced with {}.

    Args:
        raw: JSON string or already-decoded object
        tool_name: Tool the call targets, for the error message
        call_id: Provider call id, for the error message

    Returns:
        Arguments dict
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedToolCallError(
                f"Arguments for tool '{tool_name}' are not valid JSON: {e}",
                tool_name=tool_name,
                call_id=call_id,
            )
    if not isinstance(raw, dict):
        raise MalformedToolCallError(
            f"Arguments for tool '{tool_name}' must be a JSON object, got {type(raw).__name__}",
            tool_name=tool_name,
            call_id=call_id,
        )
    return raw


def build_request(name: Any, arguments: Any, call_id: Optional[str]) -> ToolCallRequest:
    """Build a ToolCallRequest, synthesizing a call id when the provider gives none."""
    if not name or not isinstance(name, str):
        raise MalformedToolCallError("Tool call is missing a function name", call_id=call_id)
    return ToolCallRequest(
        tool_name=name,
        arguments=parse_arguments(arguments, name, call_id),
        call_id=call_id or new_call_id(),
    )
