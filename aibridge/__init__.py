from .bridge import AiBridge
from .schemas import CacheRequest, CompletionResult, EmbeddingResult, RequestKind, TokenUsage

__all__ = [
    "AiBridge",
    "CacheRequest",
    "CompletionResult",
    "EmbeddingResult",
    "RequestKind",
    "TokenUsage",
]
