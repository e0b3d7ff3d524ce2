"""Synthetic reference corpora for recall validation.

Vectors are drawn around a handful of random unit centres so the corpus has
the clustered structure ANN structures are tuned for, and queries are
perturbed copies of stored vectors so every query has a meaningful
neighbourhood. Everything is seeded and reproducible.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from numpy.typing import NDArray

from ..providers import normalize_rows
from ..types import IndexEntry

__all__ = ("ReferenceCorpus", "make_reference_corpus", "perturbed_queries")


@dataclass(frozen=True)
class ReferenceCorpus:
    """Generated entries plus the cluster each one was drawn from."""

    entries: Sequence[IndexEntry]
    centres: NDArray[np.float32]
    labels: NDArray[np.int64]

    @property
    def matrix(self) -> NDArray[np.float32]:
        return np.stack([np.asarray(entry.vector, dtype=np.float32) for entry in self.entries])


def make_reference_corpus(
    count: int,
    dim: int,
    *,
    clusters: int = 16,
    spread: float = 0.35,
    seed: int = 0,
    id_prefix: str = "ref",
) -> ReferenceCorpus:
    """Return ``count`` unit vectors grouped into ``clusters`` clusters.

    Each entry's payload carries its ``cluster`` label so filter paths can be
    validated against the same corpus.

    Examples:
        >>> corpus = make_reference_corpus(20, 8, clusters=2, seed=1)
        >>> len(corpus.entries), corpus.matrix.shape
        (20, (20, 8))
    """

    if count <= 0 or dim <= 0 or clusters <= 0:
        raise ValueError("count, dim and clusters must be positive")
    rng = np.random.default_rng(seed)
    centres = normalize_rows(rng.standard_normal((clusters, dim)).astype(np.float32))
    labels = rng.integers(0, clusters, size=count)
    noise = rng.standard_normal((count, dim)).astype(np.float32) * (spread / np.sqrt(dim))
    matrix = normalize_rows(centres[labels] + noise)
    width = len(str(count - 1))
    entries: List[IndexEntry] = [
        IndexEntry(
            record_id=f"{id_prefix}-{row:0{width}d}",
            vector=matrix[row],
            payload={"cluster": int(labels[row])},
        )
        for row in range(count)
    ]
    return ReferenceCorpus(entries=entries, centres=centres, labels=labels.astype(np.int64))


def perturbed_queries(
    matrix: NDArray[np.float32],
    count: int,
    *,
    noise: float = 0.1,
    seed: int = 1,
) -> NDArray[np.float32]:
    """Sample ``count`` rows of ``matrix`` and add Gaussian noise (unit-normalised)."""

    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise ValueError("matrix must be a non-empty 2-D array")
    rng = np.random.default_rng(seed)
    rows = rng.integers(0, matrix.shape[0], size=count)
    jitter = rng.standard_normal((count, matrix.shape[1])).astype(np.float32)
    jitter *= noise / np.sqrt(matrix.shape[1])
    return normalize_rows(matrix[rows] + jitter)
