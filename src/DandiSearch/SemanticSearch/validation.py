# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.validation",
#   "purpose": "Recall and integrity validation harness for the vector index",
#   "sections": [
#     {
#       "id": "validationreport",
#       "name": "ValidationReport",
#       "anchor": "class-validationreport",
#       "kind": "class"
#     },
#     {
#       "id": "validationsummary",
#       "name": "ValidationSummary",
#       "anchor": "class-validationsummary",
#       "kind": "class"
#     },
#     {
#       "id": "recall-at-k",
#       "name": "recall_at_k",
#       "anchor": "function-recall-at-k",
#       "kind": "function"
#     },
#     {
#       "id": "semanticsearchvalidator",
#       "name": "SemanticSearchValidator",
#       "anchor": "class-semanticsearchvalidator",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Validation harness comparing ANN retrieval against exact search.

The validator runs a fixed set of checks against one published generation and
optionally writes the reports as JSON:

- ``integrity``: :meth:`VectorIndex.verify` passes.
- ``recall_at_k``: mean overlap between ANN and exact top-k over the query set
  meets the threshold (0.95 by default).
- ``self_hit``: a stored vector retrieves its own record first.
- ``ordering``: every result list is sorted by descending score, ties by id.
- ``persistence``: a serialise/restore round trip returns identical results.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .errors import IndexCorruptionError
from .vectorstore import IndexSnapshot, VectorIndex, exact_topk, restore_state, serialize_state

# --- Globals ---

__all__ = (
    "DEFAULT_THRESHOLDS",
    "SemanticSearchValidator",
    "ValidationReport",
    "ValidationSummary",
    "recall_at_k",
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS: Dict[str, float] = {
    "recall_at_k": 0.95,
    "self_hit": 0.99,
}


# --- Public Classes ---


@dataclass(slots=True)
class ValidationReport:
    """Result of a single validation check."""

    name: str
    passed: bool
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ValidationSummary:
    """Aggregate of validation reports with timing information."""

    reports: Sequence[ValidationReport]
    started_at: datetime
    completed_at: datetime

    @property
    def passed(self) -> bool:
        return all(report.passed for report in self.reports)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "reports": [
                {"name": r.name, "passed": r.passed, "details": dict(r.details)}
                for r in self.reports
            ],
        }


# --- Public Functions ---


def recall_at_k(
    snapshot: IndexSnapshot,
    queries: NDArray[np.float32],
    k: int,
    *,
    oversample: int = 2,
    filters: Optional[Mapping[str, Any]] = None,
) -> float:
    """Return mean recall of ``snapshot.query`` against exact top-``k``.

    Queries whose exact result is empty are ignored; ``1.0`` is returned when
    every query is ignored.

    Examples:
        >>> from DandiSearch.SemanticSearch.config import DenseIndexConfig
        >>> index = VectorIndex(2, DenseIndexConfig(index_type="flat"))
        >>> _ = index.upsert("a", [1.0, 0.0]); _ = index.upsert("b", [0.0, 1.0])
        >>> recall_at_k(index.snapshot(), np.array([[1.0, 0.2]], dtype=np.float32), 1)
        1.0
    """

    entries = list(snapshot.entries())
    matrix = np.asarray(queries, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    recalls: List[float] = []
    for query in matrix:
        expected = {rid for rid, _ in exact_topk(entries, query, k, filters)}
        if not expected:
            continue
        found = {rid for rid, _ in snapshot.query(query, k, filters, oversample=oversample)}
        recalls.append(len(expected & found) / len(expected))
    if not recalls:
        return 1.0
    return float(np.mean(recalls))


def _ordered(results: Sequence[tuple[str, float]]) -> bool:
    keys = [(-score, rid) for rid, score in results]
    return keys == sorted(keys)


class SemanticSearchValidator:
    """Run recall and integrity checks against a :class:`VectorIndex`.

    Examples:
        >>> from DandiSearch.SemanticSearch.devtools import make_reference_corpus
        >>> corpus = make_reference_corpus(50, 8, clusters=4)
        >>> index = VectorIndex(8)
        >>> _ = index.rebuild(corpus.entries)
        >>> SemanticSearchValidator(index).run(corpus.matrix[:5], k=5).passed
        True
    """

    def __init__(
        self,
        index: VectorIndex,
        *,
        thresholds: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.index = index
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}

    def run(
        self,
        queries: NDArray[np.float32],
        *,
        k: int = 10,
        self_hit_samples: int = 100,
        output_root: Optional[Path] = None,
    ) -> ValidationSummary:
        """Execute every check against the current generation.

        Args:
            queries: ``(n, dim)`` query matrix.
            k: Result depth for recall and ordering checks.
            self_hit_samples: Number of stored vectors probed for self hits.
            output_root: Directory receiving ``validation-<timestamp>.json``.

        Returns:
            ValidationSummary with one report per check.
        """

        started = datetime.now(UTC)
        snapshot = self.index.snapshot()
        queries = np.asarray(queries, dtype=np.float32)
        reports = [
            self._check_integrity(snapshot),
            self._check_recall(snapshot, queries, k),
            self._check_self_hit(snapshot, self_hit_samples),
            self._check_ordering(snapshot, queries, k),
            self._check_persistence(snapshot, queries, k),
        ]
        summary = ValidationSummary(
            reports=reports, started_at=started, completed_at=datetime.now(UTC)
        )
        logger.info(
            "validation-complete",
            extra={
                "event": {
                    "passed": summary.passed,
                    "generation": snapshot.generation,
                    "failed_checks": [r.name for r in reports if not r.passed],
                }
            },
        )
        if output_root is not None:
            self._persist(summary, Path(output_root))
        return summary

    # --- Checks ---

    def _check_integrity(self, snapshot: IndexSnapshot) -> ValidationReport:
        try:
            self.index.verify(snapshot)
        except IndexCorruptionError as exc:
            return ValidationReport("integrity", False, {"error": str(exc)})
        return ValidationReport("integrity", True, {"size": len(snapshot)})

    def _check_recall(
        self, snapshot: IndexSnapshot, queries: NDArray[np.float32], k: int
    ) -> ValidationReport:
        recall = recall_at_k(snapshot, queries, k, oversample=self.index.config.oversample)
        threshold = self.thresholds["recall_at_k"]
        return ValidationReport(
            "recall_at_k",
            recall >= threshold,
            {
                "recall": round(recall, 4),
                "threshold": threshold,
                "k": k,
                "queries": int(queries.shape[0]) if queries.ndim == 2 else 1,
                "base_kind": snapshot.base.kind,
            },
        )

    def _check_self_hit(self, snapshot: IndexSnapshot, samples: int) -> ValidationReport:
        ids = snapshot.ids()
        if not ids:
            return ValidationReport("self_hit", True, {"probed": 0})
        step = max(1, len(ids) // max(1, samples))
        probed = ids[::step][:samples]
        hits = 0
        misses: List[str] = []
        for rid in probed:
            entry = snapshot.get(rid)
            if entry is None:
                continue
            top = snapshot.query(entry.vector, 1, oversample=self.index.config.oversample)
            # Exact duplicates tie on score; the smaller id wins, which still counts
            if top and (top[0][0] == rid or np.isclose(top[0][1], 1.0)):
                hits += 1
            else:
                misses.append(rid)
        rate = hits / len(probed)
        threshold = self.thresholds["self_hit"]
        return ValidationReport(
            "self_hit",
            rate >= threshold,
            {"rate": round(rate, 4), "threshold": threshold, "misses": misses[:10]},
        )

    def _check_ordering(
        self, snapshot: IndexSnapshot, queries: NDArray[np.float32], k: int
    ) -> ValidationReport:
        if len(snapshot) == 0:
            return ValidationReport("ordering", True, {"checked": 0})
        violations = 0
        for query in queries.reshape(-1, snapshot.dim):
            results = snapshot.query(query, k, oversample=self.index.config.oversample)
            if not _ordered(results) or any(not -1.0 <= s <= 1.0 for _, s in results):
                violations += 1
        return ValidationReport("ordering", violations == 0, {"violations": violations})

    def _check_persistence(
        self, snapshot: IndexSnapshot, queries: NDArray[np.float32], k: int
    ) -> ValidationReport:
        if len(snapshot) == 0:
            return ValidationReport("persistence", True, {"checked": 0})
        try:
            restored = restore_state(serialize_state(self.index), self.index.config)
        except IndexCorruptionError as exc:
            return ValidationReport("persistence", False, {"error": str(exc)})
        mismatches = 0
        sample = queries.reshape(-1, snapshot.dim)[:20]
        for query in sample:
            original = [rid for rid, _ in self.index.query(query, k)]
            again = [rid for rid, _ in restored.query(query, k)]
            if original != again:
                mismatches += 1
        return ValidationReport(
            "persistence",
            mismatches == 0,
            {"checked": int(sample.shape[0]), "mismatches": mismatches},
        )

    # --- Persistence ---

    def _persist(self, summary: ValidationSummary, output_root: Path) -> Path:
        output_root.mkdir(parents=True, exist_ok=True)
        stamp = summary.started_at.strftime("%Y%m%dT%H%M%SZ")
        path = output_root / f"validation-{stamp}.json"
        path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
        return path
