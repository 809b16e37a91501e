"""Hybrid search over chunked documents.

Per query, vector and BM25 retrieval run independently for the top 2k
chunks each. Candidates are unioned by chunk id and given a combined score:

    combined = vector_score * vector_weight + bm25_score * bm25_weight

The combined list is truncated to ``rerank_top_k`` and then either re-sorted
by a cross-encoder reranker or, with no reranker configured, ordered by
reciprocal-rank fusion of the two retrievers' rankings. A reranker failure
keeps the combined-score ordering.
"""

import asyncio
import logging
from typing import Any, List, Sequence

from context_memory.config import HybridSearchConfig
from context_memory.core.chunking import TextChunker
from context_memory.core.embeddings import EmbeddingClient
from context_memory.core.keyword_search import KeywordIndex, KeywordSearch
from context_memory.core.reranker import Reranker
from context_memory.core.vector_search import VectorIndex
from context_memory.models.search import (
    DocumentChunk,
    HybridCandidate,
    RelevantDocument,
    SourceDocument,
)
from context_memory.utils.logger import OperationLogger

logger = logging.getLogger(__name__)

RRF_K = 60


def _retriever_label(candidate: HybridCandidate) -> str:
    if candidate.vector_rank is not None and candidate.bm25_rank is not None:
        return "hybrid"
    return "vector" if candidate.vector_rank is not None else "bm25"


class HybridSearchEngine:
    """BM25 + vector search with optional cross-encoder reranking."""

    def __init__(
        self,
        embeddings: EmbeddingClient,
        vector_index: VectorIndex,
        reranker: Reranker | None = None,
        config: HybridSearchConfig | None = None,
    ):
        """Initialize the engine.

        Args:
            embeddings: Embedding client for chunks and queries
            vector_index: Chat-scoped vector index
            reranker: Optional cross-encoder reranker
            config: BM25, fusion and chunking parameters
        """
        self.embeddings = embeddings
        self.vector_index = vector_index
        self.reranker = reranker
        self.config = config or HybridSearchConfig()
        self.chunker = TextChunker(self.config.chunk_size, self.config.chunk_overlap)
        self.keyword_search = KeywordSearch(k1=self.config.bm25_k1, b=self.config.bm25_b)

        self._chunks: dict[str, dict[str, DocumentChunk]] = {}
        self._keyword_indexes: dict[str, KeywordIndex] = {}
        self._versions: dict[str, int] = {}
        self._last_error: str | None = None

    async def add_documents(
        self,
        chat_id: str,
        documents: Sequence[SourceDocument | str],
    ) -> List[DocumentChunk]:
        """Chunk, embed and index documents for a chat.

        Returns:
            The chunks that were indexed
        """
        chunks: List[DocumentChunk] = []
        for document in documents:
            if isinstance(document, str):
                document = SourceDocument(content=document)
            chunks.extend(self.chunker.split_document(chat_id, document))

        if not chunks:
            return []

        with OperationLogger(logger, "add_documents", chat_id=chat_id, level=logging.INFO):
            vectors = await self.embeddings.embed_batch([chunk.content for chunk in chunks])
            await self.vector_index.upsert(chunks, vectors)

            chat_chunks = self._chunks.setdefault(chat_id, {})
            for chunk in chunks:
                chat_chunks[chunk.id] = chunk
            self._keyword_indexes.pop(chat_id, None)
            self._versions[chat_id] = self._versions.get(chat_id, 0) + 1

        return chunks

    async def search(self, chat_id: str, query: str, top_k: int = 5) -> List[RelevantDocument]:
        """Retrieve the most relevant chunks for a query.

        Args:
            chat_id: Chat scope
            query: Query text
            top_k: Maximum results

        Returns:
            Ranked RelevantDocuments, best first
        """
        chunks = list(self._chunks.get(chat_id, {}).values())
        if not chunks or not query.strip():
            return []

        candidates = await self._retrieve(chat_id, query, chunks, top_k * 2)
        limit = self.config.rerank_top_k or top_k * 2
        candidates = candidates[:limit]
        if not candidates:
            return []

        if self.reranker is not None:
            return await self._rerank(chat_id, query, candidates, top_k)
        return self._fuse_reciprocal_rank(candidates, top_k)

    async def _retrieve(
        self,
        chat_id: str,
        query: str,
        chunks: List[DocumentChunk],
        k: int,
    ) -> List[HybridCandidate]:
        """Run both retrievers and union their results by chunk id."""
        query_embedding = await self.embeddings.embed(query)

        try:
            vector_results = await self.vector_index.similarity_search(chat_id, query_embedding, k)
        except Exception as e:
            self._last_error = str(e)
            logger.error(
                f"Vector search failed, continuing with BM25 only: {e}",
                extra={"chat_id": chat_id, "operation": "vector_search"},
            )
            vector_results = []

        index = await self._keyword_index(chat_id, chunks)
        bm25_results = await asyncio.to_thread(self.keyword_search.search, query, index, k)

        candidates: dict[str, HybridCandidate] = {}
        for rank, (chunk, score) in enumerate(vector_results, start=1):
            candidates[chunk.id] = HybridCandidate(chunk=chunk, vector_score=score, vector_rank=rank)

        for rank, (chunk, score) in enumerate(bm25_results, start=1):
            existing = candidates.get(chunk.id)
            if existing is not None:
                existing.bm25_score = score
                existing.bm25_rank = rank
            else:
                candidates[chunk.id] = HybridCandidate(chunk=chunk, bm25_score=score, bm25_rank=rank)

        for candidate in candidates.values():
            candidate.combined_score = self.combined_score(candidate.vector_score, candidate.bm25_score)

        return sorted(candidates.values(), key=lambda c: c.combined_score, reverse=True)

    async def _keyword_index(self, chat_id: str, chunks: List[DocumentChunk]) -> KeywordIndex:
        """The chat's BM25 index, rebuilt after its chunks change."""
        index = self._keyword_indexes.get(chat_id)
        if index is not None:
            return index

        version = self._versions.get(chat_id, 0)
        index = await asyncio.to_thread(self.keyword_search.build_index, chunks)
        # Chunks added while building make this index stale
        if self._versions.get(chat_id, 0) == version:
            self._keyword_indexes[chat_id] = index
        return index

    def combined_score(self, vector_score: float, bm25_score: float) -> float:
        return vector_score * self.config.vector_weight + bm25_score * self.config.bm25_weight

    async def _rerank(
        self,
        chat_id: str,
        query: str,
        candidates: List[HybridCandidate],
        top_k: int,
    ) -> List[RelevantDocument]:
        try:
            scores = await asyncio.wait_for(
                self.reranker.rerank(query, [c.chunk.content for c in candidates]),
                timeout=self.config.rerank_timeout_seconds,
            )
            if len(scores) != len(candidates):
                raise ValueError(f"Reranker returned {len(scores)} scores for {len(candidates)} documents")
        except Exception as e:
            self._last_error = str(e)
            logger.warning(
                f"Reranking failed, using combined-score ordering: {e}",
                extra={"chat_id": chat_id, "operation": "rerank"},
            )
            return self._to_results(candidates[:top_k], [c.combined_score for c in candidates[:top_k]])

        ranked = sorted(zip(candidates, scores), key=lambda item: item[1], reverse=True)[:top_k]
        return self._to_results(
            [candidate for candidate, _ in ranked],
            [score for _, score in ranked],
            rerank_scores=[score for _, score in ranked],
        )

    def _fuse_reciprocal_rank(self, candidates: List[HybridCandidate], top_k: int) -> List[RelevantDocument]:
        """Order candidates by the sum of 1 / (60 + rank) over both retrievers."""
        fused = []
        for candidate in candidates:
            rrf = 0.0
            if candidate.vector_rank is not None:
                rrf += 1.0 / (RRF_K + candidate.vector_rank)
            if candidate.bm25_rank is not None:
                rrf += 1.0 / (RRF_K + candidate.bm25_rank)
            fused.append((candidate, rrf))

        fused.sort(key=lambda item: item[1], reverse=True)
        fused = fused[:top_k]
        return self._to_results(
            [candidate for candidate, _ in fused],
            [score for _, score in fused],
            rrf_scores=[score for _, score in fused],
        )

    def _to_results(
        self,
        candidates: List[HybridCandidate],
        scores: List[float],
        rerank_scores: List[float] | None = None,
        rrf_scores: List[float] | None = None,
    ) -> List[RelevantDocument]:
        return [
            RelevantDocument(
                chunk=candidate.chunk,
                score=score,
                retriever=_retriever_label(candidate),
                rank=index + 1,
                vector_score=candidate.vector_score,
                bm25_score=candidate.bm25_score,
                combined_score=candidate.combined_score,
                rerank_score=rerank_scores[index] if rerank_scores else None,
                rrf_score=rrf_scores[index] if rrf_scores else None,
            )
            for index, (candidate, score) in enumerate(zip(candidates, scores))
        ]

    async def clear_chat(self, chat_id: str) -> None:
        """Drop a chat's chunks from both retrievers."""
        self._chunks.pop(chat_id, None)
        self._keyword_indexes.pop(chat_id, None)
        self._versions[chat_id] = self._versions.get(chat_id, 0) + 1
        await self.vector_index.delete_chat(chat_id)

    def statistics(self) -> dict[str, Any]:
        return {
            "chat_count": len(self._chunks),
            "total_chunks": sum(len(chunks) for chunks in self._chunks.values()),
            "reranker_enabled": self.reranker is not None,
            "configuration": self.config.model_dump(),
        }

    async def health_status(self) -> dict[str, Any]:
        """healthy, degraded (embeddings unavailable or a recent retriever error) or unhealthy."""
        try:
            embeddings_ok = await self.embeddings.health_check()
            stats = self.statistics()
        except Exception as e:
            return {"status": "unhealthy", "details": {"last_error": str(e)}}

        status = "healthy" if embeddings_ok and self._last_error is None else "degraded"
        details: dict[str, Any] = {
            "embeddings": embeddings_ok,
            "chat_count": stats["chat_count"],
            "total_chunks": stats["total_chunks"],
        }
        if self._last_error:
            details["last_error"] = self._last_error
        return {"status": status, "details": details}

    def update_config(self, **changes: Any) -> HybridSearchConfig:
        """Apply validated parameter changes at runtime."""
        self.config = self.config.updated(**changes)
        self.chunker = TextChunker(self.config.chunk_size, self.config.chunk_overlap)
        self.keyword_search.k1 = self.config.bm25_k1
        self.keyword_search.b = self.config.bm25_b
        self._keyword_indexes.clear()
        logger.info(f"Hybrid search config updated: {sorted(changes)}")
        return self.config
