"""Text normalization, hashing and fuzzy comparison helpers."""

import hashlib
import re

from rapidfuzz.distance import Levenshtein

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]")
_UNSAFE_CONTENT = re.compile(r"[^\w\s.,!?\-:;]")
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def normalize_for_embedding(text: str, max_length: int = 8000) -> str:
    """Normalize text before embedding and cache-key hashing.

    Lowercases, replaces non-word punctuation with spaces, collapses
    whitespace and truncates to ``max_length``.
    """
    if not text or not isinstance(text, str):
        return ""
    normalized = _NON_WORD.sub(" ", text.lower())
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return normalized[:max_length]


def normalize_for_comparison(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    if not text:
        return ""
    normalized = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", normalized).strip()


def clean_content(content: str, max_length: int = 1000) -> str:
    """Collapse whitespace and strip characters outside a safe punctuation set."""
    if not content:
        return ""
    cleaned = _WHITESPACE.sub(" ", content)
    cleaned = _UNSAFE_CONTENT.sub(" ", cleaned).strip()
    return cleaned[:max_length]


def content_hash(text: str) -> str:
    """Deterministic hex digest of a string."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def semantic_hash(content: str) -> str:
    """Coarse fingerprint over a content's most distinctive words.

    Takes the sorted, de-duplicated set of words longer than 3 characters,
    keeps the first 10 and hashes them.
    """
    words = {word for word in normalize_for_comparison(content).split(" ") if len(word) > 3}
    key_words = sorted(words)[:10]
    return content_hash(" ".join(key_words))


def character_similarity(a: str, b: str, min_similarity: float = 0.0) -> float:
    """Edit-distance similarity in [0, 1] relative to the longer string.

    When ``min_similarity`` is given, pairs whose length difference alone makes
    that similarity unreachable return the length ratio without computing the
    distance, and pairs that fall below it after the distance return 0.0.
    """
    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    if not longer:
        return 1.0

    upper_bound = len(shorter) / len(longer)
    if upper_bound < min_similarity:
        return upper_bound

    return Levenshtein.normalized_similarity(longer, shorter, score_cutoff=min_similarity)


def filter_think_blocks(text: str) -> str:
    """Remove <think>...</think> reasoning blocks from model output."""
    if not text:
        return ""
    return _THINK_BLOCK.sub("", text).strip()
