"""OpenAI vendor adapters: Chat Completions and Responses API tool calling."""

import logging
from typing import List, Dict, Any, Optional

from toolhub.adapters.vendor_adapter_base import ProviderAdapter, response_data, build_request
from toolhub.models.tool import ToolDefinition
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

# Model families that accept the tools parameter
OPENAI_TOOL_MODEL_PREFIXES = ("gpt-3.5-turbo", "gpt-4", "gpt-5", "o1", "o3", "o4")


def build_openai_tools(tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
    """
    Convert canonical ToolDefinition objects to OpenAI tool schema.

    Args:
        tools: List of canonical ToolDefinition objects

    Returns:
        List of OpenAI tool dicts in OpenAI format
    """
    openai_tools = []
    for tool in tools:
        openai_tool = {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema,
            }
        }
        openai_tools.append(openai_tool)
    return openai_tools


def openai_model_supports_tools(model: Optional[str]) -> bool:
    if not model:
        return True
    return model.lower().startswith(OPENAI_TOOL_MODEL_PREFIXES)


class OpenAIChatAdapter(ProviderAdapter):
    """Chat Completions: choices[0].message.tool_calls, plus the legacy function_call."""

    provider_id = "openai"

    def format_tools_for_wire(self, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return build_openai_tools(definitions)

    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        return openai_model_supports_tools(model)

    def _message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        choices = data.get("choices") or []
        if not choices:
            return {}
        return choices[0].get("message") or {}

    def _raw_tool_calls(self, data: Dict[str, Any]) -> List[Any]:
        message = self._message(data)
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            return tool_calls
        # Legacy single function_call (no call id)
        if message.get("function_call"):
            return [{"id": None, "function": message["function_call"]}]
        return []

    def extract_tool_calls(self, response: Any) -> List[ToolCallRequest]:
        requests = []
        for tool_call in self._raw_tool_calls(response_data(response)):
            if tool_call.get("type", "function") != "function":
                logger.debug(f"Skipping non-function tool call type {tool_call.get('type')}")
                continue
            function = tool_call.get("function") or {}
            requests.append(build_request(function.get("name"), function.get("arguments"), tool_call.get("id")))
        return requests

    def format_tool_result(self, result: ToolCallResult) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": result.call_id,
            "content": result.to_tool_message(),
        }


class OpenAIResponsesAdapter(ProviderAdapter):
    """Responses API: flat function tools, function_call items in output[]."""

    provider_id = "openai_responses"

    def format_tools_for_wire(self, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema,
            }
            for tool in definitions
        ]

    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        return openai_model_supports_tools(model)

    def _raw_tool_calls(self, data: Dict[str, Any]) -> List[Any]:
        output = data.get("output") or []
        return [item for item in output if isinstance(item, dict) and item.get("type") == "function_call"]

    def extract_tool_calls(self, response: Any) -> List[ToolCallRequest]:
        return [
            build_request(item.get("name"), item.get("arguments"), item.get("call_id") or item.get("id"))
            for item in self._raw_tool_calls(response_data(response))
        ]

    def format_tool_result(self, result: ToolCallResult) -> Dict[str, Any]:
        return {
            "type": "function_call_output",
            "call_id": result.call_id,
            "output": result.to_tool_message(),
        }
