"""
Core typed structures for semantic search components.

This module defines the data structures exchanged between the corpus ingestor,
embedding generator, vector index, and query processor: records and their
change events, model versions, embeddings, index entries, and search hits.

Key Features:
- Immutable records so updates replace rather than mutate prior text
- Explicit model version tags threaded through every embedding
- Small result containers shared by the service and the API facade
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import PartialIngestionError


class ChangeOp(str, Enum):
    """Kind of corpus mutation carried by a :class:`RecordChange`."""

    UPSERT = "upsert"
    DELETE = "delete"


class EmbeddingRole(str, Enum):
    """Selects the text template used before embedding."""

    DOCUMENT = "document"
    QUERY = "query"


@dataclass(frozen=True, slots=True)
class Record:
    """Normalised metadata document subject to search.

    Attributes:
        id: Stable archive identifier (e.g. ``"000026"``).
        version: Opaque version token reported by the archive.
        text: Normalised searchable text derived from title/description/keywords.
        payload: Auxiliary fields used for filtering and reranking.

    Examples:
        >>> record = Record(id="000026", version="draft", text="rat olfactory bulb")
        >>> record.digest == Record(id="x", version="y", text="rat olfactory bulb").digest
        True
    """

    id: str
    version: str
    text: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def digest(self) -> str:
        """Return a SHA-256 digest of :attr:`text` used to detect text changes."""

        return text_digest(self.text)


@dataclass(frozen=True, slots=True)
class RecordChange:
    """A single upsert/delete event produced by the corpus ingestor."""

    record_id: str
    op: ChangeOp
    record: Optional[Record] = None
    cursor: Optional[str] = None

    def __post_init__(self) -> None:
        if self.op is ChangeOp.UPSERT and self.record is None:
            raise ValueError("upsert changes require a record")
        if self.record is not None and self.record.id != self.record_id:
            raise ValueError("record id does not match change record_id")


@dataclass(frozen=True, slots=True)
class ModelVersion:
    """Identity of an embedding model, used to tag embeddings and index generations.

    Examples:
        >>> ModelVersion(name="hashing", revision="1", dim=384).tag
        'hashing@1'
    """

    name: str
    revision: str
    dim: int

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise ValueError("ModelVersion.dim must be positive")

    @property
    def tag(self) -> str:
        """Return the ``name@revision`` string stored alongside vectors."""

        return f"{self.name}@{self.revision}"


@dataclass(frozen=True, slots=True)
class Embedding:
    """Unit-normalised dense vector tagged with its record and model version."""

    record_id: str
    model_version: str
    vector: NDArray[np.float32]
    text_digest: str


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Vector plus payload stored in the vector index for ``record_id``."""

    record_id: str
    vector: NDArray[np.float32]
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SearchQuery:
    """Ephemeral query triple; never persisted."""

    text: str
    top_k: int = 10
    filters: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True, slots=True)
class SearchHit:
    """Ranked search hit exposed only when callers ask for scores."""

    record_id: str
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestBatch:
    """Changes pulled in one ingestor call.

    Attributes:
        changes: Ordered, normalised changes ready to apply to the corpus.
        cursor: Cursor to pass as ``since`` on the next incremental pull.
        full: ``True`` when the batch is a complete corpus listing.
        error: Summary of skipped changes, if any failed to normalise.
    """

    changes: Sequence[RecordChange]
    cursor: Optional[str]
    full: bool = False
    error: Optional[PartialIngestionError] = None

    @property
    def failed(self) -> int:
        """Return the number of changes skipped during normalisation."""

        return len(self.error.failures) if self.error is not None else 0


@dataclass(slots=True)
class EmbeddingOutcome:
    """Per-record result of a document embedding pass."""

    embeddings: Mapping[str, Embedding]
    stale: Mapping[str, str]

    @property
    def succeeded(self) -> Tuple[str, ...]:
        """Return record ids embedded successfully, in insertion order."""

        return tuple(self.embeddings.keys())


def text_digest(text: str) -> str:
    """Return the hex SHA-256 digest of ``text`` (UTF-8)."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()
