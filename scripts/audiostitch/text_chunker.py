#!/usr/bin/env python3
from __future__ import annotations

"""Split narration text into provider-sized chunks on sentence boundaries."""

import html
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .logging_utils import Logger

DEFAULT_MAX_CHUNK_CHARS = 2800

_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class TextChunk:
    text: str
    chunk_number: int
    total_chunks: int
    length: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "text": self.text,
            "chunk_number": self.chunk_number,
            "total_chunks": self.total_chunks,
            "length": self.length,
        }


def normalize_text(text: str) -> str:
    """Strip markup, decode entities and collapse whitespace."""
    stripped = _TAG_RE.sub(" ", str(text or ""))
    decoded = html.unescape(stripped)
    return _SPACE_RE.sub(" ", decoded).strip()


def _pack_greedy(pieces: List[str], max_chars: int) -> List[str]:
    out: List[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
            continue
        # +1 accounts for the joining space.
        if len(current) + 1 + len(piece) <= max_chars:
            current = f"{current} {piece}"
        else:
            out.append(current)
            current = piece
    if current:
        out.append(current)
    return out


def _split_long_sentence(sentence: str, max_chars: int) -> List[str]:
    # A single word longer than the limit is emitted on its own, never truncated.
    return _pack_greedy(sentence.split(" "), max_chars)


def split_text(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> List[str]:
    normalized = normalize_text(text)
    if not normalized:
        return []
    limit = max(1, int(max_chars))
    if len(normalized) <= limit:
        return [normalized]

    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(normalized) if s.strip()]
    out: List[str] = []
    current: List[str] = []
    for sentence in sentences:
        if len(sentence) > limit:
            # Flush packed context, then split the long sentence by words.
            if current:
                out.extend(_pack_greedy(current, limit))
                current = []
            out.extend(_split_long_sentence(sentence, limit))
            continue
        current.append(sentence)
    if current:
        out.extend(_pack_greedy(current, limit))
    return [chunk for chunk in out if chunk]


def plan_chunks(
    text: str,
    max_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    *,
    logger: Optional[Logger] = None,
) -> List[TextChunk]:
    """Plan ordered chunks, each at most `max_chars` unless a single word is longer.

    Concatenating the chunk texts with single spaces reproduces the normalized
    input exactly.
    """
    pieces = split_text(text, max_chars)
    total = len(pieces)
    chunks = [
        TextChunk(text=piece, chunk_number=i + 1, total_chunks=total, length=len(piece))
        for i, piece in enumerate(pieces)
    ]
    if logger is not None:
        logger.info(
            "chunk_plan_ready",
            chunks=total,
            max_chars=int(max_chars),
            lengths=[c.length for c in chunks],
        )
    return chunks
