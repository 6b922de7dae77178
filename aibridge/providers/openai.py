# aibridge/providers/openai.py
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from aibridge.errors import ProviderContentError
from aibridge.options import provider_payload
from aibridge.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

# Statuses treated as transient transport failures rather than content errors.
RETRYABLE_STATUS = frozenset({408, 409, 429})


def raise_for_transient_status(response: httpx.Response) -> None:
    if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
        response.raise_for_status()


class OpenAIAdapter(ProviderAdapter):
    """OpenAI-compatible chat completions and embeddings over httpx."""

    name = "openai"
    supports_streaming = True
    supports_embeddings = True

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _headers(credentials: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials}",
            "Content-Type": "application/json",
        }

    # --- Chat ---

    def shape_chat(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return provider_payload(options)

    async def invoke(self, credentials: str, payload: Dict[str, Any]) -> Any:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(credentials),
                json=payload,
            )
            raise_for_transient_status(response)
            return response.json()

    async def invoke_stream(self, credentials: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        body = dict(payload, stream=True)
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=self._headers(credentials),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.warning("OpenAI stream request rejected (%s): %s", response.status_code, detail)
                    raise ProviderContentError(self.name, detail, response.status_code)
                async for chunk in response.aiter_bytes():
                    yield chunk

    def extract_text(self, raw: Any) -> Optional[str]:
        if not isinstance(raw, dict):
            return None
        choices = raw.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("content"):
            return message["content"]
        # legacy completion endpoint
        if choice.get("text"):
            return choice["text"]
        return None

    # --- Embeddings ---

    def shape_embedding(self, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = provider_payload(options)
        payload["input"] = payload.pop("prompt", payload.get("input"))
        return payload

    async def embed(self, credentials: str, payload: Dict[str, Any]) -> Any:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers=self._headers(credentials),
                json=payload,
            )
            raise_for_transient_status(response)
            return response.json()

    def extract_embedding(self, raw: Any) -> Optional[List[float]]:
        if not isinstance(raw, dict):
            return None
        data = raw.get("data") or []
        if not data or not data[0].get("embedding"):
            return None
        return [float(value) for value in data[0]["embedding"]]
