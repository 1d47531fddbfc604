"""xAI (Grok) vendor adapter. The wire format is OpenAI Chat Completions compatible."""

from typing import Optional

from toolhub.adapters.vendor_adapter_openai import OpenAIChatAdapter


class XAIAdapter(OpenAIChatAdapter):
    """Grok models only; tool payloads and tool_calls parsing are shared with OpenAI."""

    provider_id = "xai"

    def supports_tool_calling(self, model: Optional[str] = None) -> bool:
        if not model:
            return True
        return model.lower().startswith("grok")
