"""Deterministic derivation of :class:`CacheRequest` objects.

Prompts and options are serialized with :func:`canonical_json`, so two option
mappings with the same content but a different insertion order produce the same
key. Only the prompt is hashed; options are stored and compared by value.

Completion prompts are always JSON encoded, so a plain string and a message
list that happens to serialize to the same text never share a key. Embedding
prompts must be strings and are stored verbatim.
"""

import hashlib
import json
from typing import Any, Mapping, Optional, Union

from aibridge.errors import InvalidRequest
from aibridge.schemas import CacheRequest, RequestKind, canonical_json

# Option fields that never influence the generated content.
NON_CACHE_FIELDS = frozenset({"stream", "messages", "prompt", "raw_api"})


class CacheKeyBuilder:
    """Build cache lookup keys for completion and embedding requests."""

    def __init__(self, excluded_fields: Optional[frozenset] = None) -> None:
        self.excluded_fields = NON_CACHE_FIELDS if excluded_fields is None else excluded_fields

    def build(
        self,
        kind: Union[RequestKind, str],
        model: str,
        prompt: Any,
        raw_options: Optional[Mapping[str, Any]] = None,
        group: str = "default",
        partition_key: int = 0,
    ) -> CacheRequest:
        kind = RequestKind(kind)
        if not model:
            raise InvalidRequest("A model name is required to build a cache key.")
        if self._is_empty(prompt):
            raise InvalidRequest("Prompt cannot be empty.")
        if isinstance(partition_key, bool) or not isinstance(partition_key, int):
            raise InvalidRequest(f"Partition key must be an integer (received {partition_key!r}).")
        if partition_key < 0:
            raise InvalidRequest(f"Partition key must be non-negative (received {partition_key}).")

        if kind is RequestKind.EMBEDDING:
            if not isinstance(prompt, str):
                raise InvalidRequest("Embedding prompts must be strings.")
            prompt_text = prompt
        else:
            prompt_text = self._serialize(prompt, "prompt")
        options = self.clean_options(raw_options or {})
        options_text = self._serialize(options, "options")

        return CacheRequest(
            kind=kind,
            model=model,
            content_hash=hashlib.sha256(prompt_text.encode("utf-8")).hexdigest(),
            partition_key=0 if kind is RequestKind.EMBEDDING else int(partition_key),
            prompt=prompt_text,
            options=json.loads(options_text),
            group=group or "default",
        )

    def clean_options(self, raw_options: Mapping[str, Any]) -> dict:
        """Drop listener callables and fields that do not affect the output."""
        return {
            key: value
            for key, value in raw_options.items()
            if key not in self.excluded_fields and not callable(value)
        }

    @staticmethod
    def _is_empty(prompt: Any) -> bool:
        if prompt is None:
            return True
        if isinstance(prompt, str):
            return prompt.strip() == ""
        if isinstance(prompt, (list, tuple, dict)):
            return len(prompt) == 0
        return False

    @staticmethod
    def _serialize(value: Any, label: str) -> str:
        try:
            return canonical_json(value)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"The {label} is not JSON serializable: {exc}") from exc
