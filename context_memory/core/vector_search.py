"""Vector index over document chunks using Qdrant with chat_id PRE-filtering."""

import asyncio
import logging
from functools import lru_cache
from typing import List, Protocol, Sequence

from qdrant_client import QdrantClient
from qdrant_client.models import Distance, FieldCondition, Filter, MatchValue, PointStruct, VectorParams

from context_memory.config import settings
from context_memory.models.search import DocumentChunk

logger = logging.getLogger(__name__)


class VectorIndex(Protocol):
    """Chat-scoped vector storage for document chunks."""

    async def upsert(self, chunks: Sequence[DocumentChunk], embeddings: Sequence[List[float]]) -> None: ...

    async def similarity_search(
        self,
        chat_id: str,
        query_embedding: List[float],
        k: int,
    ) -> List[tuple[DocumentChunk, float]]: ...

    async def delete_chat(self, chat_id: str) -> None: ...


@lru_cache(maxsize=1)
def get_qdrant_client() -> QdrantClient:
    """Get Qdrant client instance.

    ``:memory:`` runs Qdrant in process; http(s) URLs and host:port
    connect to a server.
    """
    try:
        url = settings.qdrant_url

        if url == ":memory:":
            client = QdrantClient(location=":memory:")
        elif url.startswith("http://") or url.startswith("https://"):
            client = QdrantClient(
                url=url,
                api_key=settings.qdrant_api_key,
                timeout=30,
            )
        else:
            # Assume host:port format
            parts = url.split(":")
            host = parts[0]
            port = int(parts[1]) if len(parts) > 1 else 6333

            client = QdrantClient(
                host=host,
                port=port,
                api_key=settings.qdrant_api_key,
                timeout=30,
            )

        logger.info(f"Qdrant client initialized: {url}")
        return client

    except Exception as e:
        logger.error(f"Failed to initialize Qdrant client: {e}")
        raise


def _chat_filter(chat_id: str) -> Filter:
    return Filter(
        must=[
            FieldCondition(
                key="chat_id",
                match=MatchValue(value=chat_id),
            )
        ]
    )


class QdrantVectorIndex:
    """Vector index backed by a Qdrant collection.

    CRITICAL: every search uses chat_id as a PRE-filter so a chat only ever
    sees its own chunks. The collection is created on first upsert, sized
    from the first vector.
    """

    def __init__(self, client: QdrantClient | None = None, collection_name: str | None = None):
        """Initialize the index.

        Args:
            client: Optional pre-configured client
            collection_name: Collection name (default from settings)
        """
        self._client = client
        self.collection_name = collection_name or settings.qdrant_collection_name
        self._collection_ready = False

    @property
    def client(self) -> QdrantClient:
        """Get or create the client."""
        if self._client is None:
            self._client = get_qdrant_client()
        return self._client

    def _ensure_collection(self, vector_size: int) -> None:
        if self._collection_ready:
            return

        collections = self.client.get_collections()
        collection_names = [c.name for c in collections.collections]

        if self.collection_name not in collection_names:
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(
                    size=vector_size,
                    distance=Distance.COSINE,
                ),
            )
            logger.info(f"Created Qdrant collection: {self.collection_name}")

        self._collection_ready = True

    def _collection_exists(self) -> bool:
        if self._collection_ready:
            return True
        collections = self.client.get_collections()
        self._collection_ready = any(c.name == self.collection_name for c in collections.collections)
        return self._collection_ready

    def _upsert_sync(self, chunks: Sequence[DocumentChunk], embeddings: Sequence[List[float]]) -> None:
        self._ensure_collection(len(embeddings[0]))
        points = [
            PointStruct(
                id=chunk.id,
                vector=list(embedding),
                payload=chunk.model_dump(mode="json"),
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        batch_size = 100
        for i in range(0, len(points), batch_size):
            self.client.upsert(
                collection_name=self.collection_name,
                points=points[i:i + batch_size],
            )

    async def upsert(self, chunks: Sequence[DocumentChunk], embeddings: Sequence[List[float]]) -> None:
        """Upsert chunk vectors with the chunk as payload."""
        if not chunks:
            return
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        await asyncio.to_thread(self._upsert_sync, chunks, embeddings)

    def _search_sync(self, chat_id: str, query_embedding: List[float], k: int) -> List[tuple[DocumentChunk, float]]:
        if not self._collection_exists():
            return []

        results = self.client.query_points(
            collection_name=self.collection_name,
            query=query_embedding,
            query_filter=_chat_filter(chat_id),
            limit=k,
            with_payload=True,
        )
        return [
            (DocumentChunk.model_validate(point.payload), float(point.score))
            for point in results.points
        ]

    async def similarity_search(
        self,
        chat_id: str,
        query_embedding: List[float],
        k: int,
    ) -> List[tuple[DocumentChunk, float]]:
        """Search a chat's chunks by cosine similarity.

        Args:
            chat_id: Chat scope (REQUIRED)
            query_embedding: Query vector
            k: Maximum results

        Returns:
            (chunk, score) pairs, most similar first
        """
        results = await asyncio.to_thread(self._search_sync, chat_id, query_embedding, k)
        logger.debug(f"Vector search for chat {chat_id}: {len(results)} results")
        return results

    def _delete_sync(self, chat_id: str) -> None:
        if not self._collection_exists():
            return
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=_chat_filter(chat_id),
        )

    async def delete_chat(self, chat_id: str) -> None:
        """Delete every chunk vector belonging to a chat."""
        await asyncio.to_thread(self._delete_sync, chat_id)
