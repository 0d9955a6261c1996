"""Chunking utilities."""

from __future__ import annotations

from dataclasses import dataclass

from ragforge.utils.text import normalize


@dataclass(slots=True)
class TextChunk:
    index: int
    text: str
    start_char: int
    end_char: int


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[TextChunk]:
    """Split text into overlapping fixed-width windows.

    Each window after the first repeats the trailing ``overlap`` characters of
    the previous one and the window start advances by ``chunk_size - overlap``.
    Offsets index into the normalized text, which is what the chunks contain.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0:
        raise ValueError("overlap must not be negative")
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")

    normalized = normalize(text)
    if not normalized:
        return []

    length = len(normalized)
    step = chunk_size - overlap
    chunks: list[TextChunk] = []
    start = 0
    while True:
        end = min(start + chunk_size, length)
        chunks.append(TextChunk(index=len(chunks), text=normalized[start:end], start_char=start, end_char=end))
        if end >= length:
            break
        start += step
    return chunks


__all__ = ["TextChunk", "chunk_text"]
