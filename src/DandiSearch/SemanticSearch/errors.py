"""Exception hierarchy shared across ingestion, embedding, indexing, and search.

Failures in the derived layers (embeddings, the vector index) are always
recoverable because the corpus is the system of record; the hierarchy lets the
refresh scheduler react to categories (retry, mark stale, rebuild) while only
``InvalidQueryError`` ever crosses the public search boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

__all__ = [
    "SemanticSearchError",
    "TransientFetchError",
    "EmbeddingProviderError",
    "IngestFailure",
    "PartialIngestionError",
    "InvalidQueryError",
    "SearchTimeoutError",
    "IndexCorruptionError",
    "ModelMismatchError",
]


class SemanticSearchError(RuntimeError):
    """Base exception for semantic search failures."""


class TransientFetchError(SemanticSearchError):
    """Retryable archive I/O failure raised while pulling changes."""


class EmbeddingProviderError(SemanticSearchError):
    """Raised when an embedding provider fails to produce vectors.

    ``category`` is one of ``"network"``, ``"timeout"``, ``"validation"`` or
    ``"runtime"``; ``retryable`` tells the generator's retry policy whether
    another attempt can help.

    Examples:
        >>> raise EmbeddingProviderError("timed out", provider="hashing", category="timeout")
        Traceback (most recent call last):
        ...
        EmbeddingProviderError: [hashing] timeout: timed out (retryable)
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        category: str = "runtime",
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.category = category
        self.retryable = retryable
        self.detail = message

    def __str__(self) -> str:
        base = f"[{self.provider}] {self.category}: {self.detail}"
        if self.retryable:
            base += " (retryable)"
        return base


@dataclass(frozen=True, slots=True)
class IngestFailure:
    """A single change that could not be normalised or ingested."""

    record_id: Optional[str]
    reason: str


class PartialIngestionError(SemanticSearchError):
    """Summary of changes skipped within an otherwise successful batch.

    The ingestor returns this as part of the batch instead of raising it, so
    the remaining changes keep flowing. Callers may raise it explicitly when
    they need strict ingestion.
    """

    def __init__(self, failures: Sequence[IngestFailure], *, total: int) -> None:
        self.failures: Tuple[IngestFailure, ...] = tuple(failures)
        self.total = int(total)
        super().__init__(
            f"{len(self.failures)} of {self.total} change(s) failed to ingest"
        )

    @property
    def failed_ids(self) -> Tuple[Optional[str], ...]:
        """Return the record identifiers (where known) of the skipped changes."""

        return tuple(failure.record_id for failure in self.failures)


class InvalidQueryError(SemanticSearchError, ValueError):
    """Raised when a caller submits an empty, blank, or oversized query."""


class SearchTimeoutError(SemanticSearchError):
    """Raised when a search does not finish within its caller-supplied timeout."""


class IndexCorruptionError(SemanticSearchError):
    """Raised when an index generation fails integrity checks.

    Fatal for the generation being built or verified; the previously published
    generation keeps serving until a rebuild from the corpus succeeds.
    """


class ModelMismatchError(SemanticSearchError):
    """Raised when no registered model produces vectors of the index's size."""

