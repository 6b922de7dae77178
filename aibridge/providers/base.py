"""Provider adapter interface.

Adapters shape requests for one vendor, perform the raw call and parse the raw
response. They hold no credentials: the key is passed into every call.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from aibridge.dispatch import AttemptOutcome
from aibridge.errors import InvalidRequest


class ProviderAdapter(ABC):
    name = "provider"
    supports_streaming = False
    supports_embeddings = False

    @abstractmethod
    def shape_chat(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Turn normalized chat options into the vendor request body."""

    @abstractmethod
    async def invoke(self, credentials: str, payload: Dict[str, Any]) -> Any:
        """Perform one non-streaming chat call and return the raw JSON body."""

    @abstractmethod
    def extract_text(self, raw: Any) -> Optional[str]:
        """Completion text of a raw response, ``None`` if the response is malformed."""

    def extract_error(self, raw: Any) -> Optional[Any]:
        if isinstance(raw, dict) and raw.get("error"):
            return raw["error"]
        return None

    def invoke_stream(self, credentials: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        raise InvalidRequest(f"{self.name} does not support streaming responses.")

    def shape_embedding(self, options: Dict[str, Any]) -> Dict[str, Any]:
        raise InvalidRequest(f"{self.name} does not support embeddings.")

    async def embed(self, credentials: str, payload: Dict[str, Any]) -> Any:
        raise InvalidRequest(f"{self.name} does not support embeddings.")

    def extract_embedding(self, raw: Any) -> Optional[List[float]]:
        return None

    # One attempt each, as consumed by the dispatch queue.

    async def chat_attempt(self, credentials: str, payload: Dict[str, Any]) -> AttemptOutcome:
        raw = await self.invoke(credentials, payload)
        error = self.extract_error(raw)
        if error is not None:
            return AttemptOutcome(raw=raw, content_error=error)
        return AttemptOutcome(value=self.extract_text(raw), raw=raw)

    async def embedding_attempt(self, credentials: str, payload: Dict[str, Any]) -> AttemptOutcome:
        raw = await self.embed(credentials, payload)
        error = self.extract_error(raw)
        if error is not None:
            return AttemptOutcome(raw=raw, content_error=error)
        return AttemptOutcome(value=self.extract_embedding(raw), raw=raw)
