"""Deterministic secondary ranking applied on top of cosine similarity.

Primary order is always descending similarity with ascending record id as the
tie-break. A :class:`Reranker` may refine that order, but only among hits the
primary score cannot tell apart, so the relevance contract is preserved.
"""

from __future__ import annotations

from itertools import groupby
from typing import Any, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .types import SearchHit

# --- Globals ---

__all__ = (
    "PayloadTieBreakReranker",
    "Reranker",
    "order_hits",
)


# --- Public Functions ---


def order_hits(hits: Sequence[SearchHit]) -> List[SearchHit]:
    """Return ``hits`` sorted by descending score, ties by ascending id."""

    return sorted(hits, key=lambda hit: (-hit.score, hit.record_id))


# --- Public Classes ---


@runtime_checkable
class Reranker(Protocol):
    """Reorders an already ranked hit list without adding or removing hits."""

    def rerank(self, hits: Sequence[SearchHit]) -> List[SearchHit]:
        """Return ``hits`` in their final order."""


class PayloadTieBreakReranker:
    """Break similarity ties using a payload field such as ``modified``.

    Hits whose scores are equal once rounded to ``precision`` decimal places
    form a tie group. Within a group, hits are ordered by the payload value of
    ``field`` (descending by default), hits without the field go last, and any
    remaining ties fall back to ascending id. Numbers and strings sort in
    separate bands, so mixed payloads never compare directly.

    Examples:
        >>> hits = [
        ...     SearchHit("a", 0.5, {"modified": "2020-01-01"}),
        ...     SearchHit("b", 0.5, {"modified": "2023-06-01"}),
        ...     SearchHit("c", 0.9, {}),
        ... ]
        >>> [hit.record_id for hit in PayloadTieBreakReranker("modified").rerank(hits)]
        ['c', 'b', 'a']
    """

    def __init__(self, field: str, *, precision: int = 6, descending: bool = True) -> None:
        if precision < 0:
            raise ValueError("precision must be non-negative")
        self.field = field
        self.precision = precision
        self.descending = descending

    def rerank(self, hits: Sequence[SearchHit]) -> List[SearchHit]:
        ordered = order_hits(hits)
        result: List[SearchHit] = []
        for _, group in groupby(ordered, key=lambda hit: round(hit.score, self.precision)):
            members = list(group)
            present = [hit for hit in members if self._value(hit) is not None]
            missing = [hit for hit in members if self._value(hit) is None]
            present.sort(key=lambda hit: hit.record_id)
            present.sort(key=lambda hit: self._sort_key(self._value(hit)), reverse=self.descending)
            result.extend(present)
            result.extend(missing)
        return result

    def _value(self, hit: SearchHit) -> Optional[Any]:
        value = hit.payload.get(self.field)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        return value

    @staticmethod
    def _sort_key(value: Any) -> Tuple[int, Any]:
        if isinstance(value, (int, float)):
            return (0, float(value))
        return (1, str(value))
