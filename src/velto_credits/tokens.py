"""Token counting for quota pre-checks and usage accounting.

Counts are estimates. With a tiktoken encoding available they match OpenAI-style
tokenizers; otherwise they fall back to roughly 1 token per 4 characters. They are
good enough for pre-flight quota checks, not for billing-grade precision.
"""

import math
from collections.abc import Mapping
from typing import Any

import structlog
import tiktoken

from velto_credits.config import settings

logger = structlog.get_logger()

# Rule-of-thumb characters per token for English text
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Length-based estimate: ceil(len(text) / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter:
    """Token counter backed by tiktoken with a length-based fallback."""

    def __init__(self, encoding_name: str | None = None) -> None:
        """Initialize the counter.

        Args:
            encoding_name: tiktoken encoding (e.g. cl100k_base). None or empty
                disables the precise tokenizer.
        """
        self.encoding_name = encoding_name or None
        self._encoding: Any = None
        self._encoding_failed = False

    @property
    def is_precise(self) -> bool:
        """True when a tiktoken encoding is loaded and in use."""
        return self._get_encoding() is not None

    def _get_encoding(self) -> Any:
        if self.encoding_name is None or self._encoding_failed:
            return None
        if self._encoding is None:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception:
                # Encodings are fetched on first use; offline hosts fall back
                logger.warning(
                    "tiktoken encoding unavailable, using length estimate",
                    encoding=self.encoding_name,
                    exc_info=True,
                )
                self._encoding_failed = True
                return None
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """Count tokens in a text string."""
        if not isinstance(text, str) or not text:
            return 0
        encoding = self._get_encoding()
        if encoding is not None:
            try:
                return len(encoding.encode(text, disallowed_special=()))
            except Exception:
                logger.warning("tiktoken encode failed, using length estimate", exc_info=True)
        return estimate_tokens(text)

    def count_message_set_tokens(self, messages: Any) -> int:
        """Sum content tokens over chat messages.

        Malformed input (not a list, items without string content) counts as 0.
        """
        if not isinstance(messages, list | tuple):
            return 0
        total = 0
        for message in messages:
            if not isinstance(message, Mapping):
                continue
            content = message.get("content")
            if isinstance(content, str):
                total += self.count_tokens(content)
        return total


_default_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    """Get the process-wide counter configured from settings."""
    global _default_counter  # noqa: PLW0603
    if _default_counter is None:
        _default_counter = TokenCounter(settings.TOKENIZER_ENCODING)
    return _default_counter


def count_tokens(text: str) -> int:
    """Count tokens with the default counter."""
    return get_token_counter().count_tokens(text)


def count_message_set_tokens(messages: Any) -> int:
    """Count message tokens with the default counter."""
    return get_token_counter().count_message_set_tokens(messages)
