"""Sentence-aware document chunking for embedding."""

import re
from typing import List, Optional, Tuple

from .errors import ConfigurationError
from .models import Chunk, Document

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+|\n")
_WHITESPACE = re.compile(r"\s+")


def _last_boundary(pattern: "re.Pattern[str]", text: str, lo: int, hi: int) -> Optional[int]:
    """Return the end offset of the last ``pattern`` match ending in ``(lo, hi]``."""
    best = None
    for match in pattern.finditer(text, lo, hi):
        if match.end() > lo:
            best = match.end()
    return best


class DocumentChunker:
    """
    Splits document bodies into overlapping windows.

    Bodies up to ``threshold`` characters become a single chunk. Longer bodies
    are cut into ``chunk_size`` windows where consecutive windows share exactly
    ``overlap`` characters. The end of every window except the last is pulled
    back (by at most ``slack`` characters) to a paragraph break, a sentence end
    or whitespace, in that order of preference.
    """

    def __init__(
        self,
        chunk_size: int = 2000,
        overlap: int = 200,
        threshold: Optional[int] = None,
        slack: int = 100,
    ):
        if chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
        if overlap < 0 or overlap >= chunk_size:
            raise ConfigurationError(
                f"overlap must be in [0, chunk_size), got {overlap} for chunk_size {chunk_size}"
            )
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.threshold = chunk_size if threshold is None else threshold
        # Every window must end past the next window's start, so the
        # boundary search may only give back part of the stride.
        self.slack = max(0, min(slack, (chunk_size - overlap - 1) // 2))

    def spans(self, text: str) -> List[Tuple[int, int]]:
        """Compute ``[start, end)`` spans for ``text``."""
        n = len(text)
        if n <= self.threshold:
            return [(0, n)]

        spans: List[Tuple[int, int]] = []
        start = 0
        while True:
            target = start + self.chunk_size
            if target >= n:
                spans.append((start, n))
                return spans
            end = self._find_break(text, target)
            spans.append((start, end))
            start = end - self.overlap

    def _find_break(self, text: str, target: int) -> int:
        lo = target - self.slack
        for pattern in (_PARAGRAPH_BREAK, _SENTENCE_END, _WHITESPACE):
            boundary = _last_boundary(pattern, text, lo, target)
            if boundary is not None:
                return boundary
        return target

    def chunk(self, doc: Document) -> List[Chunk]:
        """Split ``doc.body`` into chunks with ids ``<doc.id>#<ordinal>``."""
        body = doc.body
        return [
            Chunk(parent_id=doc.id, ordinal=i, text=body[start:end], char_start=start, char_end=end)
            for i, (start, end) in enumerate(self.spans(body))
        ]


def chunk_document(
    doc: Document,
    *,
    chunk_size: int = 2000,
    overlap: int = 200,
    threshold: Optional[int] = None,
    slack: int = 100,
) -> List[Chunk]:
    """
    Split a document into overlapping, boundary-aware chunks.

    Args:
        doc: Document to split
        chunk_size: Window size in characters
        overlap: Characters shared by consecutive windows
        threshold: Bodies this long or shorter stay whole (default: chunk_size)
        slack: How far back a window end may move to reach a boundary

    Returns:
        List of Chunk objects covering the whole body
    """
    return DocumentChunker(chunk_size, overlap, threshold, slack).chunk(doc)
