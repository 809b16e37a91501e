"""Token counting for context-window budgets."""

import logging
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class TokenCounter:
    """Counts and truncates text in tokenizer tokens with tiktoken."""

    def __init__(self, model: str = "gpt-4"):
        """Initialize token counter.

        Args:
            model: Model name used to pick the encoding
        """
        self.model = model
        self._encoder: tiktoken.Encoding | None = None

    @property
    def encoder(self) -> tiktoken.Encoding:
        """The tokenizer, loaded on first use."""
        if self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self._encoder = tiktoken.get_encoding(DEFAULT_ENCODING)
            logger.debug(f"Token counter initialized with {self._encoder.name}")
        return self._encoder

    def count(self, text: str) -> int:
        """Number of tokens in ``text``."""
        if not text:
            return 0
        return len(self.encoder.encode(text))

    def truncate_to_tokens(self, text: str, max_tokens: int, add_ellipsis: bool = False) -> str:
        """Cut text to at most ``max_tokens`` tokens.

        Args:
            text: Text to truncate
            max_tokens: Maximum tokens allowed
            add_ellipsis: Whether to end truncated text with "..."

        Returns:
            The text unchanged when it fits, otherwise its leading tokens
        """
        if not text or max_tokens <= 0:
            return ""

        tokens = self.encoder.encode(text)
        if len(tokens) <= max_tokens:
            return text

        if add_ellipsis:
            keep = max(0, max_tokens - 1)
            return self.encoder.decode(tokens[:keep]) + "..."
        return self.encoder.decode(tokens[:max_tokens])


@lru_cache(maxsize=1)
def get_token_counter() -> TokenCounter:
    """Shared token counter."""
    return TokenCounter()
