import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with a stable key order at every nesting level."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


class RequestKind(str, Enum):
    COMPLETION = "completion"
    EMBEDDING = "embedding"


# --- Cache lookup key ---


class CacheRequest(BaseModel):
    """Fully canonicalized lookup key handed to every cache layer."""

    model_config = ConfigDict(frozen=True)

    kind: RequestKind
    model: str
    content_hash: str = Field(description="sha256 hex digest of the canonical prompt.")
    partition_key: int = Field(
        default=0,
        ge=0,
        description="Sampling partition; 0 is the canonical entry. Always 0 for embeddings.",
    )
    prompt: str = Field(description="Canonical serialization of the prompt or messages.")
    options: Dict[str, Any] = Field(default_factory=dict)
    group: str = Field(default="default")

    @property
    def namespace(self) -> str:
        """Collection name shared by all records of one ``(kind, model)`` pair."""
        return f"{self.kind.value}_{self.model}"

    @property
    def options_json(self) -> str:
        return canonical_json(self.options)

    def identity(self) -> Tuple:
        if self.kind is RequestKind.EMBEDDING:
            return (self.kind.value, self.model, self.group, self.prompt, self.options_json)
        return (
            self.kind.value,
            self.model,
            self.group,
            self.content_hash,
            self.partition_key,
            self.prompt,
            self.options_json,
        )

    def digest(self) -> str:
        return hashlib.sha256(canonical_json(list(self.identity())).encode("utf-8")).hexdigest()


# --- Results returned to callers ---


class TokenUsage(BaseModel):
    """Token estimates attached to every result; ``cache`` marks a cache hit."""

    prompt: int = Field(default=0)
    completion: int = Field(default=0)
    embedding: int = Field(default=0)
    cache: bool = Field(default=False)


class CompletionResult(BaseModel):
    model: str
    completion: str
    token: TokenUsage = Field(default_factory=TokenUsage)


class EmbeddingResult(BaseModel):
    model: str
    embedding: List[float] = Field(default_factory=list)
    token: TokenUsage = Field(default_factory=TokenUsage)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.embedding, dtype="float32")
