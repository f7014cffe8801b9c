"""Semantic note search on top of the embedding correlator."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from lumina_ai.errors import AIError

_logger = logging.getLogger(__name__)

# Title + content is truncated before embedding to bound worker cost
_INDEX_CHAR_LIMIT = 1000

EmbedFn = Callable[[str], Awaitable[Any]]


@dataclass
class Note:
    id: str
    title: str
    content: str = ""


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine of the angle between *a* and *b*; 0 for missing or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    mag_a = math.sqrt(sum(x * x for x in a))
    mag_b = math.sqrt(sum(y * y for y in b))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


class VaultIndex:
    """In-memory note-id → vector cache with threshold search.

    *embed* is usually ``TaskCorrelator.request_embedding``.
    """

    def __init__(self, embed: EmbedFn) -> None:
        self._embed = embed
        self.vectors: dict[str, list[float]] = {}

    async def index_notes(self, notes: Iterable[Note]) -> int:
        """Embed notes that are not cached yet.  Returns how many were added.

        Notes are processed sequentially; a failed note is logged and skipped.
        """
        added = 0
        for note in notes:
            if note.id in self.vectors:
                continue
            text = f"{note.title}\n{note.content or ''}"[:_INDEX_CHAR_LIMIT]
            try:
                vector = await self._embed(text)
            except AIError as e:
                _logger.error("Embedding failed for note %s: %s", note.id, e)
                continue
            self.vectors[note.id] = list(vector)
            added += 1
        return added

    async def search(self, query: str, threshold: float = 0.5) -> list[tuple[str, float]]:
        """Return ``(note_id, score)`` pairs above *threshold*, best first."""
        if not query or not query.strip():
            return []
        try:
            query_vec = await self._embed(query)
        except AIError as e:
            _logger.error("Semantic search failed: %s", e)
            return []

        results = []
        for note_id, vector in self.vectors.items():
            score = cosine_similarity(query_vec, vector)
            if score > threshold:
                results.append((note_id, score))
        results.sort(key=lambda r: r[1], reverse=True)
        return results

    def forget(self, note_id: str) -> None:
        self.vectors.pop(note_id, None)
