# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.vectorstore",
#   "purpose": "Generation-based FAISS vector index, exact search helpers, and persistence",
#   "sections": [
#     {
#       "id": "matches-filters",
#       "name": "matches_filters",
#       "anchor": "function-matches-filters",
#       "kind": "function"
#     },
#     {
#       "id": "basearena",
#       "name": "BaseArena",
#       "anchor": "class-basearena",
#       "kind": "class"
#     },
#     {
#       "id": "shardoverlay",
#       "name": "ShardOverlay",
#       "anchor": "class-shardoverlay",
#       "kind": "class"
#     },
#     {
#       "id": "indexsnapshot",
#       "name": "IndexSnapshot",
#       "anchor": "class-indexsnapshot",
#       "kind": "class"
#     },
#     {
#       "id": "vectorindex",
#       "name": "VectorIndex",
#       "anchor": "class-vectorindex",
#       "kind": "class"
#     },
#     {
#       "id": "exact-topk",
#       "name": "exact_topk",
#       "anchor": "function-exact-topk",
#       "kind": "function"
#     },
#     {
#       "id": "serialize-state",
#       "name": "serialize_state",
#       "anchor": "function-serialize-state",
#       "kind": "function"
#     },
#     {
#       "id": "restore-state",
#       "name": "restore_state",
#       "anchor": "function-restore-state",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Generation-based vector index backed by FAISS.

Every published state of the index is an immutable :class:`IndexSnapshot`:

- a *base arena* holding sorted ids, a read-only matrix of unit vectors, their
  payloads, and the FAISS structure built over that matrix
  (``IndexFlatIP``, ``IndexHNSWFlat`` or ``IndexIVFFlat``, all inner product);
- one :class:`ShardOverlay` per id-hash shard carrying entries written since
  the base was built, plus tombstones hiding base rows that were deleted or
  superseded.

Readers grab the current snapshot pointer without taking a lock and run the
whole query against that one generation, so a query never observes a half
applied write. Writers serialise per shard: they build the replacement
overlay off to the side and then swap the snapshot pointer under a short
publish lock. Compaction (overlay grew past ``compaction_threshold``) and full
rebuilds hold every shard lock, build a fresh base, and publish it through the
same swap.

Query results are cosine similarities (vectors are unit length, so cosine is
the inner product) clipped to ``[-1, 1]`` and ordered by descending score with
ties broken by ascending id. ANN candidates are over-fetched to survive
filters and tombstones, and the query falls back to an exact scan when the
candidate list still comes up short.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import threading
import zlib
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import faiss
import numpy as np
from numpy.typing import NDArray

from .config import DenseIndexConfig
from .errors import IndexCorruptionError
from .observability import Observability
from .types import IndexEntry

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = (
    "BaseArena",
    "IndexSnapshot",
    "ShardOverlay",
    "VectorIndex",
    "exact_topk",
    "expected_kind",
    "load_index",
    "matches_filters",
    "restore_state",
    "save_index",
    "serialize_state",
    "shard_for",
)

STATE_FORMAT_VERSION = 1
# FAISS warns below roughly 39 training points per IVF centroid
_MIN_POINTS_PER_CENTROID = 39
# Scores are rounded so identical vectors tie wherever they are stored
SCORE_DECIMALS = 7

ScoredId = Tuple[str, float]


# --- Public Functions ---


def matches_filters(payload: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    """Return ``True`` when ``payload`` satisfies every filter.

    A filter value may be a scalar (equality) or a list/tuple/set of accepted
    values (membership). List-valued payload fields match when any element is
    accepted.

    Examples:
        >>> matches_filters({"species": ["rat", "mouse"]}, {"species": "rat"})
        True
        >>> matches_filters({"name": "x"}, {"name": ["y", "z"]})
        False
    """

    if not filters:
        return True
    for key, expected in filters.items():
        if key not in payload:
            return False
        value = payload[key]
        accepted = list(expected) if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
        values = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
        if not any(candidate == option for candidate in values for option in accepted):
            return False
    return True


def shard_for(record_id: str, shards: int) -> int:
    """Return the stable shard number for ``record_id``."""

    return zlib.crc32(record_id.encode("utf-8")) % shards


def _as_unit_vector(vector: Any, dim: int) -> NDArray[np.float32]:
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    if array.shape[0] != dim:
        raise ValueError(f"expected vector of dim {dim}, received {array.shape[0]}")
    if not np.all(np.isfinite(array)):
        raise ValueError("vector contains non-finite values")
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        raise ValueError("vector has zero norm")
    unit = (array / norm).astype(np.float32)
    unit.setflags(write=False)
    return unit


def _score_rows(matrix: NDArray[np.float32], query: NDArray[np.float32]) -> NDArray[np.float64]:
    scores = np.asarray(matrix, dtype=np.float64) @ np.asarray(query, dtype=np.float64)
    return np.round(scores, SCORE_DECIMALS)


def _order(candidates: Iterable[ScoredId], k: int) -> List[ScoredId]:
    clipped = [(rid, float(min(1.0, max(-1.0, score)))) for rid, score in candidates]
    clipped.sort(key=lambda item: (-item[1], item[0]))
    return clipped[:k]


def exact_topk(
    entries: Iterable[IndexEntry],
    vector: Any,
    k: int,
    filters: Optional[Mapping[str, Any]] = None,
) -> List[ScoredId]:
    """Brute-force reference top-``k`` used for recall validation.

    Args:
        entries: Candidate entries (vectors need not be normalised).
        vector: Query vector.
        k: Number of results.
        filters: Optional payload filters.

    Returns:
        ``(record_id, score)`` pairs ordered like :meth:`VectorIndex.query`.
    """

    pool = [entry for entry in entries if matches_filters(entry.payload, filters)]
    if not pool or k <= 0:
        return []
    dim = int(np.asarray(pool[0].vector).reshape(-1).shape[0])
    query = _as_unit_vector(vector, dim)
    matrix = np.stack([_as_unit_vector(entry.vector, dim) for entry in pool])
    scores = _score_rows(matrix, query)
    return _order(((entry.record_id, float(score)) for entry, score in zip(pool, scores)), k)


# --- Public Classes ---


@dataclass(frozen=True)
class BaseArena:
    """Immutable base layer of a snapshot.

    Attributes:
        ids: Record ids in ascending order.
        matrix: ``(len(ids), dim)`` read-only matrix of unit vectors.
        payloads: Payload for each row.
        positions: ``record_id -> row`` lookup.
        ann: FAISS index over ``matrix`` (``None`` when empty).
        kind: ``"empty"``, ``"flat"``, ``"hnsw"`` or ``"ivf_flat"``.
    """

    ids: Tuple[str, ...]
    matrix: NDArray[np.float32]
    payloads: Tuple[Mapping[str, Any], ...]
    positions: Mapping[str, int]
    ann: Optional[Any] = None
    kind: str = "empty"
    # The IVF coarse quantizer must outlive the index that references it
    keepalive: Tuple[Any, ...] = ()

    @classmethod
    def empty(cls, dim: int) -> BaseArena:
        matrix = np.zeros((0, dim), dtype=np.float32)
        matrix.setflags(write=False)
        return cls(ids=(), matrix=matrix, payloads=(), positions={})

    @classmethod
    def build(
        cls,
        entries: Sequence[IndexEntry],
        dim: int,
        config: DenseIndexConfig,
        *,
        ann: Optional[Any] = None,
    ) -> BaseArena:
        """Build a base arena from normalised ``entries``.

        When ``ann`` is given (a FAISS structure restored from disk, rows in
        ascending id order) it is adopted instead of building a new one.
        """

        if not entries:
            return cls.empty(dim)
        ordered = sorted(entries, key=lambda entry: entry.record_id)
        ids = tuple(entry.record_id for entry in ordered)
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate record ids in base arena")
        matrix = np.ascontiguousarray(np.stack([entry.vector for entry in ordered]), dtype=np.float32)
        matrix.setflags(write=False)
        if ann is None:
            ann, kind, keepalive = _build_ann(matrix, config)
        else:
            kind, keepalive = expected_kind(len(ids), config), ()
            _tune_ann(ann, kind, config)
        return cls(
            ids=ids,
            matrix=matrix,
            payloads=tuple(dict(entry.payload) for entry in ordered),
            positions={rid: row for row, rid in enumerate(ids)},
            ann=ann,
            kind=kind,
            keepalive=keepalive,
        )

    def __len__(self) -> int:
        return len(self.ids)


def expected_kind(count: int, config: DenseIndexConfig) -> str:
    """Return the FAISS layout a base of ``count`` vectors gets under ``config``."""

    if count == 0:
        return "empty"
    if config.index_type == "flat" or count < config.min_ann_size:
        return "flat"
    return config.index_type


def _tune_ann(ann: Any, kind: str, config: DenseIndexConfig) -> None:
    if kind == "hnsw":
        faiss.downcast_index(ann).hnsw.efSearch = int(config.ef_search)
    elif kind == "ivf_flat":
        ivf = faiss.extract_index_ivf(ann)
        ivf.nprobe = min(int(config.nprobe), int(ivf.nlist))


def _build_ann(
    matrix: NDArray[np.float32], config: DenseIndexConfig
) -> Tuple[Any, str, Tuple[Any, ...]]:
    count, dim = matrix.shape
    data = np.array(matrix, dtype=np.float32, order="C")
    kind = expected_kind(count, config)
    keepalive: Tuple[Any, ...] = ()
    if kind == "flat":
        index = faiss.IndexFlatIP(dim)
    elif kind == "hnsw":
        index = faiss.IndexHNSWFlat(dim, int(config.hnsw_m), faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = int(config.ef_construction)
    else:
        nlist = max(1, min(int(config.nlist), count // _MIN_POINTS_PER_CENTROID))
        quantizer = faiss.IndexFlatIP(dim)
        index = faiss.IndexIVFFlat(quantizer, dim, nlist, faiss.METRIC_INNER_PRODUCT)
        index.train(data)
        keepalive = (quantizer,)
    index.add(data)
    _tune_ann(index, kind, config)
    return index, kind, keepalive


@dataclass(frozen=True)
class ShardOverlay:
    """Entries written to one shard since the base arena was built.

    Attributes:
        upserts: ``record_id -> IndexEntry`` for live overlay entries.
        tombstones: Base ids hidden by a delete or a newer overlay entry.
        ids: Sorted overlay ids (row order of ``matrix``).
        matrix: Stacked overlay vectors for exact scoring.
    """

    upserts: Mapping[str, IndexEntry] = field(default_factory=dict)
    tombstones: frozenset = frozenset()
    ids: Tuple[str, ...] = ()
    matrix: Optional[NDArray[np.float32]] = None

    @classmethod
    def build(cls, upserts: Mapping[str, IndexEntry], tombstones: Iterable[str]) -> ShardOverlay:
        ids = tuple(sorted(upserts))
        matrix = np.stack([upserts[rid].vector for rid in ids]) if ids else None
        if matrix is not None:
            matrix.setflags(write=False)
        return cls(upserts=dict(upserts), tombstones=frozenset(tombstones), ids=ids, matrix=matrix)

    @property
    def size(self) -> int:
        """Return overlay entries plus tombstones (the compaction pressure)."""
        return len(self.upserts) + len(self.tombstones)


@dataclass(frozen=True)
class IndexSnapshot:
    """One published, immutable generation of the vector index.

    Examples:
        >>> snap = IndexSnapshot.empty(dim=4, shards=2, model_version="m@1")
        >>> len(snap), snap.generation
        (0, 0)
    """

    generation: int
    model_version: str
    dim: int
    base: BaseArena
    shards: Tuple[ShardOverlay, ...]

    @classmethod
    def empty(cls, *, dim: int, shards: int, model_version: str, generation: int = 0) -> IndexSnapshot:
        return cls(
            generation=generation,
            model_version=model_version,
            dim=dim,
            base=BaseArena.empty(dim),
            shards=tuple(ShardOverlay() for _ in range(shards)),
        )

    # --- Lookups ---

    def shard_of(self, record_id: str) -> int:
        return shard_for(record_id, len(self.shards))

    def _hidden(self, record_id: str) -> bool:
        return record_id in self.shards[self.shard_of(record_id)].tombstones

    def __contains__(self, record_id: object) -> bool:
        if not isinstance(record_id, str):
            return False
        overlay = self.shards[self.shard_of(record_id)]
        if record_id in overlay.upserts:
            return True
        return record_id in self.base.positions and record_id not in overlay.tombstones

    def __len__(self) -> int:
        hidden = sum(len(overlay.tombstones) for overlay in self.shards)
        extra = sum(len(overlay.upserts) for overlay in self.shards)
        return len(self.base) - hidden + extra

    def get(self, record_id: str) -> Optional[IndexEntry]:
        """Return the live entry for ``record_id`` in this generation."""
        overlay = self.shards[self.shard_of(record_id)]
        if record_id in overlay.upserts:
            return overlay.upserts[record_id]
        row = self.base.positions.get(record_id)
        if row is None or record_id in overlay.tombstones:
            return None
        return IndexEntry(record_id, self.base.matrix[row], self.base.payloads[row])

    def ids(self) -> List[str]:
        """Return live ids in ascending order."""
        live = [rid for rid in self.base.ids if not self._hidden(rid)]
        for overlay in self.shards:
            live.extend(overlay.ids)
        return sorted(live)

    def entries(self) -> Iterator[IndexEntry]:
        """Iterate live entries in ascending id order."""
        for rid in self.ids():
            entry = self.get(rid)
            if entry is not None:
                yield entry

    @property
    def overlay_size(self) -> int:
        return sum(overlay.size for overlay in self.shards)

    # --- Search ---

    def query(
        self,
        vector: NDArray[np.float32],
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        oversample: int = 2,
    ) -> List[ScoredId]:
        """Return the top ``k`` live ``(record_id, score)`` pairs."""

        if k <= 0:
            raise ValueError("k must be positive")
        query = _as_unit_vector(vector, self.dim)
        candidates: List[ScoredId] = self._overlay_candidates(query, filters)
        candidates.extend(self._base_candidates(query, k, filters, oversample))
        return _order(candidates, k)

    def _overlay_candidates(
        self, query: NDArray[np.float32], filters: Optional[Mapping[str, Any]]
    ) -> List[ScoredId]:
        found: List[ScoredId] = []
        for overlay in self.shards:
            if overlay.matrix is None:
                continue
            scores = _score_rows(overlay.matrix, query)
            for rid, score in zip(overlay.ids, scores):
                if matches_filters(overlay.upserts[rid].payload, filters):
                    found.append((rid, float(score)))
        return found

    def _eligible(self, row: int, filters: Optional[Mapping[str, Any]]) -> bool:
        return not self._hidden(self.base.ids[row]) and matches_filters(
            self.base.payloads[row], filters
        )

    def _base_candidates(
        self,
        query: NDArray[np.float32],
        k: int,
        filters: Optional[Mapping[str, Any]],
        oversample: int,
    ) -> List[ScoredId]:
        total = len(self.base)
        if total == 0:
            return []
        hidden = sum(len(overlay.tombstones) for overlay in self.shards)
        rows: List[int] = []
        if self.base.ann is not None:
            fetch = min(total, max(k * oversample, k + hidden))
            search_input = query.reshape(1, -1)
            while True:
                _, found = self.base.ann.search(search_input, fetch)
                rows = [int(row) for row in found[0] if row >= 0 and self._eligible(int(row), filters)]
                if len(rows) >= k or fetch >= total:
                    break
                fetch = min(total, fetch * 2)
        if len(rows) < k:
            # Exact fallback over the whole base when filters/tombstones starve the ANN
            rows = [row for row in range(total) if self._eligible(row, filters)]
        if not rows:
            return []
        # Rescore exactly so every path yields identical scores for identical vectors
        scores = _score_rows(self.base.matrix[rows], query)
        return [(self.base.ids[row], float(score)) for row, score in zip(rows, scores)]


class VectorIndex:
    """Thread-safe vector index publishing immutable generations.

    Attributes:
        dim: Vector dimensionality of the published generation; a rebuild
            with a new ``dim`` changes it.
        config: Dense index configuration.

    Examples:
        >>> index = VectorIndex(3, DenseIndexConfig(index_type="flat", shards=2))
        >>> index.upsert("a", [1.0, 0.0, 0.0], {"species": "rat"})
        True
        >>> index.upsert("b", [0.0, 1.0, 0.0])
        True
        >>> [rid for rid, _ in index.query([1.0, 0.1, 0.0], k=2)]
        ['a', 'b']
    """

    def __init__(
        self,
        dim: int,
        config: Optional[DenseIndexConfig] = None,
        *,
        model_version: str = "unversioned",
        observability: Optional[Observability] = None,
    ) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim
        self.config = config or DenseIndexConfig()
        self._observability = observability or Observability()
        self._publish_lock = threading.Lock()
        self._shard_locks = tuple(threading.Lock() for _ in range(self.config.shards))
        self._snapshot = IndexSnapshot.empty(
            dim=dim, shards=self.config.shards, model_version=model_version
        )

    # --- Read side ---

    def snapshot(self) -> IndexSnapshot:
        """Return the currently published generation (no locking)."""
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    @property
    def model_version(self) -> str:
        return self._snapshot.model_version

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._snapshot

    def get(self, record_id: str) -> Optional[IndexEntry]:
        return self._snapshot.get(record_id)

    def query(
        self,
        vector: Any,
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[ScoredId]:
        """Return the top ``k`` ``(record_id, score)`` pairs from one generation.

        Args:
            vector: Query vector of length ``dim`` (normalised internally).
            k: Number of results (positive).
            filters: Optional payload filters (see :func:`matches_filters`).

        Returns:
            Up to ``k`` pairs ordered by descending score, ties by ascending id.

        Raises:
            ValueError: If ``k`` is not positive or ``vector`` is malformed.
        """
        snapshot = self._snapshot
        with self._observability.trace("index_query"):
            return snapshot.query(vector, k, filters, oversample=self.config.oversample)

    # --- Write side ---

    def upsert(self, record_id: str, vector: Any, payload: Optional[Mapping[str, Any]] = None) -> bool:
        """Insert or replace one entry; return ``True`` if a new generation was published."""
        return self.upsert_many([IndexEntry(record_id, vector, payload or {})]) > 0

    def upsert_many(self, entries: Iterable[IndexEntry]) -> int:
        """Insert or replace entries atomically per call; return the number written.

        Raises:
            ValueError: If any vector has the wrong dimension, is non-finite, or
                has zero norm. Nothing is written in that case.
        """
        written, _ = self.apply(entries, ())
        return written

    def delete(self, record_id: str) -> bool:
        """Remove ``record_id``; return ``True`` if it was present."""
        return self.delete_many([record_id]) > 0

    def delete_many(self, record_ids: Iterable[str]) -> int:
        """Remove entries; absent ids are ignored. Return the number removed."""
        _, removed = self.apply((), record_ids)
        return removed

    def apply(
        self, upserts: Iterable[IndexEntry], deletes: Iterable[str]
    ) -> Tuple[int, int]:
        """Publish upserts and deletes together as a single new generation.

        An id present in both ``upserts`` and ``deletes`` ends up deleted.

        Returns:
            ``(written, removed)`` counts.

        Raises:
            ValueError: If any upsert vector is malformed. Nothing is written.
        """
        doomed = list(dict.fromkeys(deletes))
        dim = self.dim
        normalised: Dict[str, IndexEntry] = {}
        for entry in upserts:
            normalised[entry.record_id] = IndexEntry(
                entry.record_id, _as_unit_vector(entry.vector, dim), dict(entry.payload)
            )
        for rid in doomed:
            normalised.pop(rid, None)
        shards = self.config.shards
        touched = {shard_for(rid, shards) for rid in normalised}
        touched.update(shard_for(rid, shards) for rid in doomed)
        if not touched:
            return 0, 0

        removed = 0
        with self._hold_shards(touched):
            current = self._snapshot
            if normalised and current.dim != dim:
                raise ValueError(f"index dim changed to {current.dim} while writing dim {dim}")
            replacements: Dict[int, ShardOverlay] = {}
            for shard in touched:
                overlay = current.shards[shard]
                upserted = dict(overlay.upserts)
                tombstones = set(overlay.tombstones)
                changed = False
                for rid, entry in normalised.items():
                    if shard_for(rid, shards) != shard:
                        continue
                    upserted[rid] = entry
                    if rid in current.base.positions:
                        tombstones.add(rid)
                    changed = True
                for rid in doomed:
                    if shard_for(rid, shards) != shard or rid not in current:
                        continue
                    upserted.pop(rid, None)
                    if rid in current.base.positions:
                        tombstones.add(rid)
                    removed += 1
                    changed = True
                if changed:
                    replacements[shard] = ShardOverlay.build(upserted, tombstones)
            if replacements:
                self._publish_shards(replacements)
        metrics = self._observability.metrics
        if normalised:
            metrics.increment("index_upserts", float(len(normalised)))
        if removed:
            metrics.increment("index_deletes", float(removed))
        if normalised or removed:
            self._maybe_compact()
        return len(normalised), removed

    def rebuild(
        self,
        entries: Iterable[IndexEntry],
        *,
        model_version: Optional[str] = None,
        dim: Optional[int] = None,
    ) -> IndexSnapshot:
        """Build a fresh generation from ``entries`` and publish it atomically.

        The previous generation keeps serving queries until the swap. If the
        build fails nothing is published. Passing ``dim`` switches the index to
        a new vector size, as needed when migrating to another model.
        """
        target = self.dim if dim is None else dim
        if target <= 0:
            raise ValueError("dim must be positive")
        normalised = self._normalise_unique(entries, dim=target)
        with self._hold_shards(range(self.config.shards)):
            with self._observability.trace("index_rebuild"):
                base = BaseArena.build(normalised, target, self.config)
            snapshot = self._publish_base(base, model_version=model_version, dim=target)
        logger.info(
            "index-rebuilt",
            extra={
                "event": {
                    "generation": snapshot.generation,
                    "model_version": snapshot.model_version,
                    "size": len(snapshot),
                    "dim": snapshot.dim,
                    "kind": base.kind,
                }
            },
        )
        return snapshot

    def compact(self) -> IndexSnapshot:
        """Merge overlays into a new base arena and publish it."""
        with self._hold_shards(range(self.config.shards)):
            current = self._snapshot
            if current.overlay_size == 0:
                return current
            with self._observability.trace("index_compact"):
                base = BaseArena.build(list(current.entries()), current.dim, self.config)
            snapshot = self._publish_base(
                base, model_version=current.model_version, dim=current.dim
            )
        self._observability.metrics.increment("index_compactions")
        logger.info(
            "index-compacted",
            extra={"event": {"generation": snapshot.generation, "size": len(snapshot)}},
        )
        return snapshot

    def revert(self, snapshot: IndexSnapshot) -> IndexSnapshot:
        """Republish the contents of an earlier ``snapshot`` as a new generation.

        Used to back out a generation that failed verification; the
        generation counter keeps increasing. The index takes back the
        snapshot's vector size.
        """
        if len(snapshot.shards) != self.config.shards:
            raise ValueError("snapshot layout does not match this index")
        with self._hold_shards(range(self.config.shards)):
            with self._publish_lock:
                restored = IndexSnapshot(
                    generation=self._snapshot.generation + 1,
                    model_version=snapshot.model_version,
                    dim=snapshot.dim,
                    base=snapshot.base,
                    shards=snapshot.shards,
                )
                self.dim = snapshot.dim
                self._snapshot = restored
        logger.warning(
            "index-reverted",
            extra={
                "event": {
                    "generation": restored.generation,
                    "restored_from": snapshot.generation,
                }
            },
        )
        return restored

    # --- Integrity ---

    def verify(self, snapshot: Optional[IndexSnapshot] = None) -> None:
        """Check structural invariants of ``snapshot`` (default: current).

        Raises:
            IndexCorruptionError: On any mismatch between ids, vectors, payloads,
                the FAISS structure, or overlays.
        """
        snap = snapshot or self._snapshot
        base = snap.base
        tolerance = self.config.norm_tolerance
        if snap.dim != self.dim:
            raise IndexCorruptionError(f"snapshot dim {snap.dim} != index dim {self.dim}")
        if base.matrix.shape != (len(base.ids), snap.dim):
            raise IndexCorruptionError(
                f"base matrix shape {base.matrix.shape} does not match {len(base.ids)} ids"
            )
        if len(base.payloads) != len(base.ids) or len(base.positions) != len(base.ids):
            raise IndexCorruptionError("base payloads/positions do not match ids")
        if list(base.ids) != sorted(set(base.ids)):
            raise IndexCorruptionError("base ids are not unique and sorted")
        if len(base.ids):
            if not np.all(np.isfinite(base.matrix)):
                raise IndexCorruptionError("base matrix contains non-finite values")
            norms = np.linalg.norm(base.matrix, axis=1)
            if np.any(np.abs(norms - 1.0) > tolerance):
                raise IndexCorruptionError("base matrix contains non-unit vectors")
            if base.ann is None or int(base.ann.ntotal) != len(base.ids):
                raise IndexCorruptionError("FAISS structure does not cover the base arena")
        for number, overlay in enumerate(snap.shards):
            for rid, entry in overlay.upserts.items():
                if shard_for(rid, len(snap.shards)) != number:
                    raise IndexCorruptionError(f"overlay entry {rid!r} stored in wrong shard")
                vector = np.asarray(entry.vector)
                if vector.shape != (snap.dim,) or not np.all(np.isfinite(vector)):
                    raise IndexCorruptionError(f"overlay entry {rid!r} has an invalid vector")
                if abs(float(np.linalg.norm(vector)) - 1.0) > tolerance:
                    raise IndexCorruptionError(f"overlay entry {rid!r} is not unit length")
            if not overlay.tombstones <= set(base.positions):
                raise IndexCorruptionError("tombstone refers to an id missing from the base")

    def stats(self) -> Dict[str, Any]:
        """Return size and layout statistics for the current generation."""
        snap = self._snapshot
        return {
            "generation": snap.generation,
            "model_version": snap.model_version,
            "dim": snap.dim,
            "size": len(snap),
            "base_size": len(snap.base),
            "base_kind": snap.base.kind,
            "overlay_entries": sum(len(overlay.upserts) for overlay in snap.shards),
            "tombstones": sum(len(overlay.tombstones) for overlay in snap.shards),
            "shards": len(snap.shards),
        }

    # --- Internals ---

    def _normalise_unique(
        self, entries: Iterable[IndexEntry], *, dim: Optional[int] = None
    ) -> List[IndexEntry]:
        size = self.dim if dim is None else dim
        unique: Dict[str, IndexEntry] = {}
        for entry in entries:
            unique[entry.record_id] = IndexEntry(
                entry.record_id, _as_unit_vector(entry.vector, size), dict(entry.payload)
            )
        return list(unique.values())

    def _hold_shards(self, shards: Iterable[int]) -> ExitStack:
        stack = ExitStack()
        for shard in sorted(set(shards)):
            stack.enter_context(self._shard_locks[shard])
        return stack

    def _publish_shards(self, replacements: Mapping[int, ShardOverlay]) -> IndexSnapshot:
        with self._publish_lock:
            current = self._snapshot
            shards = list(current.shards)
            for number, overlay in replacements.items():
                shards[number] = overlay
            snapshot = IndexSnapshot(
                generation=current.generation + 1,
                model_version=current.model_version,
                dim=current.dim,
                base=current.base,
                shards=tuple(shards),
            )
            self._snapshot = snapshot
        return snapshot

    def _publish_base(
        self, base: BaseArena, *, model_version: Optional[str], dim: int
    ) -> IndexSnapshot:
        with self._publish_lock:
            current = self._snapshot
            snapshot = IndexSnapshot(
                generation=current.generation + 1,
                model_version=model_version or current.model_version,
                dim=dim,
                base=base,
                shards=tuple(ShardOverlay() for _ in range(self.config.shards)),
            )
            self.dim = dim
            self._snapshot = snapshot
        self._observability.metrics.increment("index_generations")
        return snapshot

    def _publish_snapshot(self, snapshot: IndexSnapshot) -> None:
        with self._publish_lock:
            self._snapshot = snapshot

    def _maybe_compact(self) -> None:
        threshold = self.config.compaction_threshold
        if threshold and self._snapshot.overlay_size > threshold:
            self.compact()


# --- Persistence ---


def _encode_matrix(matrix: NDArray[np.float32]) -> str:
    return base64.b64encode(np.ascontiguousarray(matrix, dtype="<f4").tobytes()).decode("ascii")


def _checksum(encoded_vectors: str, ids: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(encoded_vectors.encode("ascii"))
    for rid in ids:
        digest.update(b"\x00")
        digest.update(rid.encode("utf-8"))
    return digest.hexdigest()


def serialize_state(index: VectorIndex) -> Dict[str, Any]:
    """Serialize the current generation to a JSON-safe payload.

    The payload stores the live entries as a compacted base (ids, base64 float32
    vectors, payloads), a SHA-256 checksum of the vector bytes, and the
    base64-encoded FAISS structure when the base has no overlay.
    """
    snap = index.snapshot()
    entries = list(snap.entries())
    matrix = (
        np.stack([entry.vector for entry in entries]).astype(np.float32)
        if entries
        else np.zeros((0, snap.dim), dtype=np.float32)
    )
    encoded = _encode_matrix(matrix)
    faiss_blob: Optional[str] = None
    if snap.overlay_size == 0 and snap.base.ann is not None:
        faiss_blob = base64.b64encode(faiss.serialize_index(snap.base.ann).tobytes()).decode("ascii")
    return {
        "format": STATE_FORMAT_VERSION,
        "model_version": snap.model_version,
        "dim": snap.dim,
        "generation": snap.generation,
        "kind": snap.base.kind if snap.overlay_size == 0 else None,
        "ids": [entry.record_id for entry in entries],
        "payloads": [dict(entry.payload) for entry in entries],
        "vectors": encoded,
        "checksum": _checksum(encoded, [entry.record_id for entry in entries]),
        "faiss": faiss_blob,
    }


def restore_state(
    payload: Mapping[str, Any],
    config: Optional[DenseIndexConfig] = None,
    *,
    observability: Optional[Observability] = None,
) -> VectorIndex:
    """Rebuild a :class:`VectorIndex` from :func:`serialize_state` output.

    Raises:
        IndexCorruptionError: If metadata is missing or inconsistent, the
            checksum fails, or vectors are non-finite.
    """
    config = config or DenseIndexConfig()
    try:
        if int(payload["format"]) != STATE_FORMAT_VERSION:
            raise IndexCorruptionError(f"unsupported index state format {payload['format']!r}")
        dim = int(payload["dim"])
        ids = [str(rid) for rid in payload["ids"]]
        payloads = list(payload["payloads"])
        encoded = str(payload["vectors"])
        model_version = str(payload["model_version"])
        generation = int(payload.get("generation", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise IndexCorruptionError(f"index state is missing metadata: {exc}") from exc
    if dim <= 0:
        raise IndexCorruptionError(f"invalid dim {dim}")
    if _checksum(encoded, ids) != payload.get("checksum"):
        raise IndexCorruptionError("vector checksum mismatch")
    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except ValueError as exc:
        raise IndexCorruptionError(f"vector block is not valid base64: {exc}") from exc
    if len(raw) != len(ids) * dim * 4:
        raise IndexCorruptionError(
            f"vector block holds {len(raw)} bytes, expected {len(ids) * dim * 4}"
        )
    if len(payloads) != len(ids) or len(set(ids)) != len(ids):
        raise IndexCorruptionError("ids and payloads are inconsistent")
    matrix = np.frombuffer(raw, dtype="<f4").astype(np.float32).reshape(len(ids), dim)
    if not np.all(np.isfinite(matrix)):
        raise IndexCorruptionError("vector block contains non-finite values")

    index = VectorIndex(dim, config, model_version=model_version, observability=observability)
    entries = [
        IndexEntry(rid, matrix[row], payloads[row] or {}) for row, rid in enumerate(ids)
    ]
    try:
        normalised = index._normalise_unique(entries)
    except ValueError as exc:
        raise IndexCorruptionError(f"invalid stored vector: {exc}") from exc
    base = _restore_base(normalised, dim, config, payload)
    index._publish_snapshot(
        IndexSnapshot(
            generation=generation,
            model_version=model_version,
            dim=dim,
            base=base,
            shards=tuple(ShardOverlay() for _ in range(config.shards)),
        )
    )
    index.verify()
    return index


def _restore_base(
    entries: List[IndexEntry],
    dim: int,
    config: DenseIndexConfig,
    payload: Mapping[str, Any],
) -> BaseArena:
    blob = payload.get("faiss")
    kind = expected_kind(len(entries), config)
    if not blob or payload.get("kind") != kind:
        # Layout changed (or was never stored); rebuild from the vectors
        return BaseArena.build(entries, dim, config)
    try:
        ann = faiss.deserialize_index(
            np.frombuffer(base64.b64decode(str(blob).encode("ascii")), dtype=np.uint8)
        )
    except (RuntimeError, ValueError) as exc:
        raise IndexCorruptionError(f"FAISS structure could not be decoded: {exc}") from exc
    if int(ann.ntotal) != len(entries) or int(ann.d) != dim:
        raise IndexCorruptionError(
            f"FAISS structure holds {ann.ntotal} vectors of dim {ann.d}, "
            f"expected {len(entries)} of dim {dim}"
        )
    return BaseArena.build(entries, dim, config, ann=ann)


def save_index(index: VectorIndex, path: Path) -> Path:
    """Write :func:`serialize_state` output to ``path`` atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(serialize_state(index)), encoding="utf-8")
    os.replace(tmp, path)
    logger.info(
        "index-saved",
        extra={"event": {"path": str(path), "size": len(index), "generation": index.generation}},
    )
    return path


def load_index(
    path: Path,
    config: Optional[DenseIndexConfig] = None,
    *,
    observability: Optional[Observability] = None,
) -> VectorIndex:
    """Load an index written by :func:`save_index`.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        IndexCorruptionError: If the file is not valid index state.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IndexCorruptionError(f"index file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise IndexCorruptionError(f"index file {path} does not hold an object")
    return restore_state(payload, config, observability=observability)
