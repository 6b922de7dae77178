from typing import Any, Dict, Optional

import httpx

from aibridge.options import provider_payload
from aibridge.providers.base import ProviderAdapter
from aibridge.providers.openai import raise_for_transient_status

ANTHROPIC_VERSION = "2023-06-01"

# Chat options without an equivalent in the messages API.
UNSUPPORTED_FIELDS = ("frequency_penalty", "presence_penalty", "n", "stream", "response_format")


class AnthropicAdapter(ProviderAdapter):
    """Anthropic messages API. Streaming requests are served by a single call."""

    name = "anthropic"

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com/v1",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def shape_chat(self, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = provider_payload(options)
        for field in UNSUPPORTED_FIELDS:
            payload.pop(field, None)

        system_parts = []
        messages = []
        for msg in payload.get("messages", []):
            if msg.get("role") == "system":
                system_parts.append(msg["content"])
            else:
                role = "assistant" if msg.get("role") == "assistant" else "user"
                messages.append({"role": role, "content": msg["content"]})
        payload["messages"] = messages
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if "stop" in payload:
            stop = payload.pop("stop")
            payload["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        return payload

    async def invoke(self, credentials: str, payload: Dict[str, Any]) -> Any:
        headers = {
            "x-api-key": credentials,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/messages", headers=headers, json=payload)
            raise_for_transient_status(response)
            return response.json()

    def extract_text(self, raw: Any) -> Optional[str]:
        if not isinstance(raw, dict):
            return None
        blocks = raw.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        return text or None
