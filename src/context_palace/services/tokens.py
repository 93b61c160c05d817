"""Token counting for budgets, chunk thresholds and ``token_count`` fields.

With an encoding name configured, counts come from tiktoken. Without one the
counter uses the 4-characters-per-token estimate, which keeps tests and
offline runs free of encoding downloads.
"""

import math

import tiktoken

from context_palace.core.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4


class TokenCounter:
    """Counts tokens with a tiktoken encoding or the character estimate."""

    def __init__(self, encoding_name: str | None = None):
        self.encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None
        if encoding_name:
            self._encoding = tiktoken.get_encoding(encoding_name)
            logger.info(f"TokenCounter initialized with {encoding_name} encoding")

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            return math.ceil(len(text) / CHARS_PER_TOKEN)
        return len(self._encoding.encode(text, disallowed_special=()))

    def count_many(self, texts: list[str]) -> list[int]:
        return [self.count(text) for text in texts]

    def fits(self, text: str, budget: int) -> bool:
        return self.count(text) <= budget
