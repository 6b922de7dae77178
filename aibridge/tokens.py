import math
import re
from typing import Any

from aibridge.schemas import canonical_json

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", re.UNICODE)


def get_token_count(prompt: Any) -> int:
    """Estimate the token length of a prompt, message list or completion.

    Used for diagnostics and ``max_tokens`` budgeting only; caching never
    consults it.
    """
    if prompt is None:
        return 0
    if not isinstance(prompt, str):
        prompt = canonical_json(prompt)
    if not prompt:
        return 0
    pieces = len(_TOKEN_PATTERN.findall(prompt))
    return max(pieces, math.ceil(len(prompt) / 4))
