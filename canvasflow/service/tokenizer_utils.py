from __future__ import annotations

import math

# Fixed approximation used for every budget decision in the worker
CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Lightweight token estimate: one token per CHARS_PER_TOKEN characters.

    Avoids tokenizer dependencies; monotonic in text length, which is all the
    budget enforcement relies on.
    """

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def max_chars_for_tokens(tokens: int) -> int:
    """Longest text whose estimate fits in ``tokens``."""
    if tokens <= 0:
        return 0
    return tokens * CHARS_PER_TOKEN
