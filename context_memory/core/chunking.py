"""Sliding-window document chunking."""

import logging
import uuid
from typing import List

from context_memory.models.search import DocumentChunk, SourceDocument

logger = logging.getLogger(__name__)

SEPARATORS = ("\n\n", "\n", " ")


class TextChunker:
    """Splits documents into fixed-size windows with overlap.

    A window ends at the last paragraph, line or word break inside its second
    half when there is one, so chunks rarely cut words in two.
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200):
        """Initialize the chunker.

        Args:
            chunk_size: Maximum characters per chunk
            chunk_overlap: Characters shared by consecutive chunks
        """
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def _window_end(self, text: str, start: int) -> int:
        end = min(start + self.chunk_size, len(text))
        if end == len(text):
            return end

        floor = start + self.chunk_size // 2
        for separator in SEPARATORS:
            position = text.rfind(separator, floor, end)
            if position != -1:
                return position + len(separator)
        return end

    def split_text(self, text: str) -> List[tuple[int, int]]:
        """Return (start, end) offsets of each window."""
        if not text:
            return []

        spans = []
        start = 0
        while start < len(text):
            end = self._window_end(text, start)
            spans.append((start, end))
            if end >= len(text):
                break
            start = max(end - self.chunk_overlap, start + 1)
        return spans

    def split_document(self, chat_id: str, document: SourceDocument) -> List[DocumentChunk]:
        """Chunk one document into stable, chat-scoped chunks.

        Chunk ids are derived from the chat, document and position, so
        re-adding the same document replaces its chunks.
        """
        document_id = document.document_id
        spans = self.split_text(document.content)

        chunks = []
        for index, (start, end) in enumerate(spans):
            content = document.content[start:end].strip()
            if not content:
                continue
            chunks.append(DocumentChunk(
                id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{chat_id}/{document_id}/{index}")),
                chat_id=chat_id,
                document_id=document_id,
                content=content,
                chunk_index=index,
                start=start,
                end=end,
                metadata={
                    **document.metadata,
                    "chunk_index": index,
                    "total_chunks": len(spans),
                    "original_length": len(document.content),
                },
            ))

        logger.debug(f"Split document {document_id[:30]!r} into {len(chunks)} chunks")
        return chunks
