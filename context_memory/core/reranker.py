"""Cross-encoder reranking using sentence-transformers."""

import asyncio
import logging
from typing import List, Protocol, Sequence

from context_memory.config import settings
from context_memory.exceptions import RerankFailure

logger = logging.getLogger(__name__)


class Reranker(Protocol):
    """Scores (query, document) pairs; higher is more relevant."""

    async def rerank(self, query: str, documents: Sequence[str]) -> List[float]: ...


class CrossEncoderReranker:
    """Reranker backed by a sentence-transformers CrossEncoder.

    The model is loaded lazily on first use and scored in a worker thread.
    """

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2", batch_size: int = 32):
        self.model_name = model_name
        self.batch_size = batch_size
        self.model = None

    def _ensure_initialized(self) -> None:
        if self.model is not None:
            return

        from sentence_transformers import CrossEncoder

        logger.info(f"Loading reranker model: {self.model_name}")
        self.model = CrossEncoder(self.model_name)

    def _predict(self, query: str, documents: Sequence[str]) -> List[float]:
        self._ensure_initialized()
        scores = self.model.predict(
            [(query, document) for document in documents],
            batch_size=self.batch_size,
            show_progress_bar=False,
        )
        return [float(score) for score in scores]

    async def rerank(self, query: str, documents: Sequence[str]) -> List[float]:
        """Score each document against the query.

        Raises:
            RerankFailure: If the model cannot be loaded or scoring fails
        """
        if not documents:
            return []
        try:
            return await asyncio.to_thread(self._predict, query, documents)
        except Exception as e:
            logger.error(f"Rerank error: {e}")
            raise RerankFailure(str(e)) from e


def get_reranker() -> Reranker | None:
    """Cross-encoder reranker when RERANKER_MODEL is configured, else None."""
    if not settings.reranker_model:
        return None
    return CrossEncoderReranker(settings.reranker_model)
