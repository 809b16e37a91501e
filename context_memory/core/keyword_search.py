"""BM25 keyword retrieval over document chunks (rank-bm25)."""

import logging
import re
from typing import List, Sequence

from rank_bm25 import BM25Okapi

from context_memory.models.search import DocumentChunk

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from',
    'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on', 'that', 'the',
    'to', 'was', 'were', 'will', 'with', 'this', 'they', 'their',
    'what', 'when', 'where', 'which', 'while', 'who', 'whom', 'why',
    'would', 'could', 'should', 'have', 'had', 'been', 'being',
    'can', 'do', 'does', 'did', 'done', 'i', 'me', 'my', 'myself',
    'we', 'our', 'ours', 'you', 'your', 'yours', 'him', 'his',
    'she', 'her', 'hers', 'them', 'theirs',
})

MIN_TOKEN_LENGTH = 3
_WORD = re.compile(r'\b\w+\b')


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens without stopwords or words under three characters."""
    if not text:
        return []
    return [
        word for word in _WORD.findall(text.lower())
        if word not in STOPWORDS and len(word) >= MIN_TOKEN_LENGTH
    ]


class KeywordIndex:
    """A BM25 index over one fixed set of chunks.

    Chunks that tokenize to nothing are left out of the corpus, so they
    never affect document frequencies.
    """

    def __init__(self, chunks: Sequence[DocumentChunk], k1: float, b: float):
        self.chunks: List[DocumentChunk] = []
        corpus: List[List[str]] = []
        for chunk in chunks:
            tokens = tokenize(chunk.content)
            if tokens:
                corpus.append(tokens)
                self.chunks.append(chunk)

        self._bm25 = BM25Okapi(corpus, k1=k1, b=b) if corpus else None

    def __len__(self) -> int:
        return len(self.chunks)

    def score(self, query: str, limit: int) -> List[tuple[DocumentChunk, float]]:
        """(chunk, score) pairs with a positive BM25 score, best first."""
        query_tokens = tokenize(query)
        if self._bm25 is None or not query_tokens:
            return []

        scores = self._bm25.get_scores(query_tokens)
        matches = [
            (chunk, float(score))
            for chunk, score in zip(self.chunks, scores)
            if score > 0
        ]
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches[:limit]


class KeywordSearch:
    """Keyword retrieval with BM25 parameters shared by every index it builds."""

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        """Initialize keyword search.

        Args:
            k1: Term-frequency saturation
            b: Document length normalization
        """
        self.k1 = k1
        self.b = b

    def tokenize(self, text: str) -> List[str]:
        return tokenize(text)

    def build_index(self, chunks: Sequence[DocumentChunk]) -> KeywordIndex:
        index = KeywordIndex(chunks, self.k1, self.b)
        logger.debug(f"Built BM25 index over {len(index)} of {len(chunks)} chunks")
        return index

    def search(
        self,
        query: str,
        chunks: Sequence[DocumentChunk] | KeywordIndex,
        limit: int = 10,
    ) -> List[tuple[DocumentChunk, float]]:
        """Score chunks against a query with BM25.

        Args:
            query: Search query
            chunks: Candidate chunks, or an index already built over them
            limit: Maximum results to return

        Returns:
            (chunk, bm25 score) pairs with positive scores, best first
        """
        if not query or not chunks:
            return []

        index = chunks if isinstance(chunks, KeywordIndex) else self.build_index(chunks)
        results = index.score(query, limit)
        logger.debug(f"BM25 search: {len(results)} matching chunks for '{query[:50]}'")
        return results
