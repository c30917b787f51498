"""
Sliding-Window Chunker

Splits document text into overlapping character windows for embedding.

Chunk i starts at i * (chunk_size - chunk_overlap) and spans up to
chunk_size characters; windows are produced while the start is inside
the text, so the final chunk may be shorter. Text is never trimmed or
normalised, which keeps the concatenation property:

    chunks[0] + chunks[1][overlap:] + ... + chunks[-1][overlap:] == text
"""

import uuid
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Chunk:
    """A window of document text with its position in the source."""
    chunk_id: str
    document_id: str
    content: str
    position: int
    start_char: int
    end_char: int  # exclusive

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "content": self.content,
            "position": self.position,
            "start_char": self.start_char,
            "end_char": self.end_char,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (in characters)."""
    chunk_size: int = 1000
    chunk_overlap: int = 200

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ValidationError(f"chunk_overlap must be >= 0, got {self.chunk_overlap}")
        if self.chunk_size <= self.chunk_overlap:
            raise ValidationError(
                f"chunk_size ({self.chunk_size}) must be greater than "
                f"chunk_overlap ({self.chunk_overlap})"
            )

    @property
    def step(self) -> int:
        return self.chunk_size - self.chunk_overlap


def chunk_id_for(document_id: str, position: int) -> str:
    """Stable chunk id, so re-indexing the same position is idempotent."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{document_id}#{position}"))


class TextChunker:
    """
    Character-window chunker.

    Usage:
        chunker = TextChunker(ChunkConfig(chunk_size=1000, chunk_overlap=200))
        chunks = chunker.chunk("doc-1", text)
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()
        self.config.validate()

    def split(self, text: str) -> list[str]:
        """Return just the chunk texts."""
        return [c.content for c in self.chunk("", text)]

    def chunk(self, document_id: str, text: str) -> list[Chunk]:
        """
        Split text into overlapping chunks.

        Args:
            document_id: Parent document id (used for chunk ids)
            text: Full document text

        Returns:
            Chunks in document order; empty list for empty text
        """
        if not text:
            return []

        size = self.config.chunk_size
        step = self.config.step
        chunks = []

        position = 0
        start = 0
        while start < len(text):
            end = min(start + size, len(text))
            chunks.append(Chunk(
                chunk_id=chunk_id_for(document_id, position),
                document_id=document_id,
                content=text[start:end],
                position=position,
                start_char=start,
                end_char=end,
            ))
            position += 1
            start = position * step

        logger.debug(f"Chunked document {document_id or '<anon>'}: {len(text)} chars -> {len(chunks)} chunks")
        return chunks

    @staticmethod
    def reassemble(chunks: list[str], overlap: int) -> str:
        """Inverse of split() for chunks produced with the given overlap."""
        if not chunks:
            return ""
        return chunks[0] + "".join(c[overlap:] for c in chunks[1:])
