"""Gemini vendor adapter for function calling."""

import copy
import logging
from typing import List, Dict, Any, Optional

from toolhub.adapters.vendor_adapter_base import ProviderAdapter, response_data, build_request
from toolhub.models.tool import ToolDefinition
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

# Gemini models without function calling
GEMINI_MODELS_WITHOUT_TOOLS = ("gemini-2.0-flash-lite",)


def build_gemini_tools(tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
    """
    Convert canonical ToolDefinition objects to Gemini grouped function declarations.

    Args:
        tools: List of canonical ToolDefinition objects

    Returns:
        A single-element list holding every declaration, or [] for no tools
    """
    if not tools:
        return []
    declarations = [
        {
            "name": tool.name,
            "description": tool.description,
            "parameters": copy.deepcopy(tool.parameters_schema),
        }
        for tool in tools
    ]
    return [{"function_declarations": declarations}]


class GeminiAdapter(ProviderAdapter):
    """Reads functionCall parts of the first candidate; args arrive as an object."""

    provider_id = "gemini"

    def format_tools_for_wire(self, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return build_gemini_tools(definitions)

    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        if not model:
            return True
        name = model.lower().split("/")[-1]
        return not any(name.startswith(blocked) for blocked in GEMINI_MODELS_WITHOUT_TOOLS)

    def _raw_tool_calls(self, data: Dict[str, Any]) -> List[Any]:
        candidates = data.get("candidates") or []
        if not candidates:
            return []
        parts = (candidates[0].get("content") or {}).get("parts") or []
        calls = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            # REST uses camelCase, the SDK's model_dump() snake_case
            function_call = part.get("functionCall") or part.get("function_call")
            if function_call:
                calls.append(function_call)
        return calls

    def extract_tool_calls(self, response: Any) -> List[ToolCallRequest]:
        return [
            build_request(call.get("name"), call.get("args"), call.get("id"))
            for call in self._raw_tool_calls(response_data(response))
        ]

    def format_tool_result(self, result: ToolCallResult) -> Dict[str, Any]:
        if result.success and isinstance(result.output, dict) and not result.is_pending:
            response = result.output
        else:
            key = "result" if result.success else "error"
            response = {key: result.to_tool_message()}

        function_response: Dict[str, Any] = {"name": result.tool_name, "response": response}
        if result.call_id:
            function_response["id"] = result.call_id
        return {"role": "user", "parts": [{"functionResponse": function_response}]}
