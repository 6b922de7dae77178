"""Normalization of chat completion options before caching and dispatch."""

from typing import Any, Dict, List, Optional

from aibridge.errors import InvalidRequest

DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo-1106"
DEFAULT_ANTHROPIC_MODEL = "claude-v1-100k"
ECONOMY_ALIAS = "gpt-4e"
ECONOMY_LARGE_MODEL = "gpt-4-1106-preview"
ECONOMY_TOKEN_THRESHOLD = 14000

MIN_COMPLETION_TOKENS = 50

# Options consumed by the bridge itself and never sent to a provider.
INTERNAL_FIELDS = ("total_tokens", "raw_api")


def auto_total_tokens(model: str) -> int:
    if model.startswith("gpt-4"):
        return 128000
    if model.startswith("claude") and model.endswith("100k"):
        # 100k minus a margin for token miscounts
        return 90000
    return 16385


def normalize_chat_options(
    options: Dict[str, Any],
    prompt_token_count: int,
    messages: Optional[List[Dict[str, Any]]] = None,
    prefer_anthropic: bool = False,
) -> Dict[str, Any]:
    """Resolve the model alias and an ``auto`` max_tokens budget.

    Returns a new dict; ``options`` is left untouched.
    """
    opt = dict(options)

    model = opt.get("model")
    if not model:
        model = DEFAULT_ANTHROPIC_MODEL if prefer_anthropic else DEFAULT_OPENAI_MODEL
    if model == ECONOMY_ALIAS:
        model = DEFAULT_OPENAI_MODEL if prompt_token_count < ECONOMY_TOKEN_THRESHOLD else ECONOMY_LARGE_MODEL
    opt["model"] = model

    if opt.get("max_tokens") in (None, "auto"):
        total_tokens = opt.get("total_tokens") or auto_total_tokens(model)
        token_length = prompt_token_count
        if messages is not None:
            token_length += len(messages) * 2

        opt["max_tokens"] = int(total_tokens) - token_length
        if opt["max_tokens"] <= MIN_COMPLETION_TOKENS:
            raise InvalidRequest(
                f"Prompt is larger or nearly equal to total token count ({token_length}/{total_tokens})"
            )
    return opt


def provider_payload(options: Dict[str, Any]) -> Dict[str, Any]:
    """Strip internal fields and ``None`` values, which providers reject."""
    return {
        key: value
        for key, value in options.items()
        if key not in INTERNAL_FIELDS and value is not None and not callable(value)
    }
