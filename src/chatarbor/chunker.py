"""Chunking utilities for preparing knowledge sources for embedding."""

from __future__ import annotations

from typing import List, Sequence

from .models import Chunk

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200
DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")


def _pick_separator(text: str, separators: Sequence[str]) -> str:
    for separator in separators:
        if separator == "" or separator in text:
            return separator
    return separators[-1] if separators else ""


def _split_on(text: str, separator: str) -> List[str]:
    if separator == "":
        return list(text)
    return text.split(separator)


def split_text(
    text: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    separators: Sequence[str] = DEFAULT_SEPARATORS,
) -> List[str]:
    """Split ``text`` into overlapping windows of at most ``chunk_size`` characters.

    The first separator present in the text is used to cut it into pieces which
    are packed greedily. When a chunk closes, the next one is seeded with the
    trailing pieces whose joined length fits in ``chunk_overlap``, so a chunk may
    exceed ``chunk_size`` by at most the carried overlap. A single piece longer
    than ``chunk_size`` becomes its own oversized chunk.
    """

    if not text:
        return []
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must not be negative")

    separator = _pick_separator(text, separators)
    pieces = _split_on(text, separator)

    chunks: List[str] = []
    current: List[str] = []
    current_length = 0

    for piece in pieces:
        joiner = len(separator) if current else 0
        if current and current_length + joiner + len(piece) > chunk_size:
            chunks.append(separator.join(current))
            while current and current_length > chunk_overlap:
                current.pop(0)
                current_length = len(separator.join(current))
        current.append(piece)
        current_length = len(separator.join(current))

    if current:
        chunks.append(separator.join(current))
    return chunks


def build_chunks(
    source_id: str,
    text: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[Chunk]:
    """Chunk a source's text and attach deterministic ``source_id:ordinal`` ids."""

    pieces = [
        piece
        for piece in split_text(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        if piece.strip()
    ]
    total = len(pieces)
    return [
        Chunk(source_id=source_id, ordinal=index, total_chunks=total, text=piece)
        for index, piece in enumerate(pieces)
    ]


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_CHUNK_OVERLAP",
    "DEFAULT_SEPARATORS",
    "split_text",
    "build_chunks",
]
