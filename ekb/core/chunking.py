# core/chunking.py
"""Sentence-aware text chunking for CJK and Latin text"""
import re
from typing import List

from ekb.core.domain import TextChunk

DEFAULT_MAX_CHARS = 200

# CJK and Latin sentence terminators plus line breaks
_SENTENCE_BOUNDARY = re.compile(r"[。！？；;!?\n\r]+")


def split_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> List[str]:
    """
    Split text into chunks of at most `max_chars` code points.

    Sentences are packed greedily into a buffer (joined by a single space) and
    the buffer is flushed when the next sentence would not fit. A sentence
    longer than `max_chars` is cut into fixed-size slices. Blank sentences are
    dropped, so whitespace-only input yields no chunks.
    """
    if max_chars <= 0:
        max_chars = DEFAULT_MAX_CHARS
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    buffer: List[str] = []
    buffer_len = 0

    for sentence in _SENTENCE_BOUNDARY.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue

        if len(sentence) > max_chars:
            # Oversized sentence: flush first to keep text order, then hard split
            if buffer:
                chunks.append(" ".join(buffer))
                buffer, buffer_len = [], 0
            chunks.extend(
                sentence[i:i + max_chars] for i in range(0, len(sentence), max_chars)
            )
            continue

        # buffer_len includes the joining spaces so chunks never exceed max_chars
        if buffer and buffer_len + 1 + len(sentence) > max_chars:
            chunks.append(" ".join(buffer))
            buffer, buffer_len = [], 0

        buffer_len += len(sentence) + (1 if buffer else 0)
        buffer.append(sentence)

    if buffer:
        chunks.append(" ".join(buffer))

    return chunks


def build_chunks(document_id: str, text: str, max_chars: int = DEFAULT_MAX_CHARS) -> List[TextChunk]:
    """Chunk `text` into TextChunk records with contiguous chunk_index from 0."""
    chunks = []
    for content in split_text(text, max_chars):
        length = len(content)  # character count, uniform for CJK and Latin
        chunks.append(TextChunk(
            document_id=document_id,
            content=content,
            chunk_index=len(chunks),
            start_pos=0,
            end_pos=length,
            word_count=length,
        ))
    return chunks


class ChunkEngine:
    """Stateless chunker with a configurable default chunk size."""

    def __init__(self, default_max_chars: int = DEFAULT_MAX_CHARS):
        self.default_max_chars = default_max_chars if default_max_chars > 0 else DEFAULT_MAX_CHARS

    def chunk(self, document_id: str, text: str, max_chars: int = 0) -> List[TextChunk]:
        return build_chunks(document_id, text, max_chars if max_chars > 0 else self.default_max_chars)
