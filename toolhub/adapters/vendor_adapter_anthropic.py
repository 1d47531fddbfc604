"""Anthropic vendor adapter (Messages API tool use)."""

from typing import List, Dict, Any, Optional

from toolhub.adapters.vendor_adapter_base import ProviderAdapter, response_data, build_request
from toolhub.models.tool import ToolDefinition
from toolhub.models.tool_call import ToolCallRequest, ToolCallResult


class AnthropicAdapter(ProviderAdapter):
    """Name/input_schema tool pairs; tool_use content blocks carry an input object."""

    provider_id = "anthropic"

    def format_tools_for_wire(self, definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters_schema,
            }
            for tool in definitions
        ]

    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        if not model:
            return True
        return model.lower().startswith("claude")

    def _raw_tool_calls(self, data: Dict[str, Any]) -> List[Any]:
        content = data.get("content") or []
        return [block for block in content if isinstance(block, dict) and block.get("type") == "tool_use"]

    def extract_tool_calls(self, response: Any) -> List[ToolCallRequest]:
        return [
            build_request(block.get("name"), block.get("input"), block.get("id"))
            for block in self._raw_tool_calls(response_data(response))
        ]

    def format_tool_result(self, result: ToolCallResult) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": result.call_id,
            "content": result.to_tool_message(),
        }
        if not result.success:
            block["is_error"] = True
        return {"role": "user", "content": [block]}
