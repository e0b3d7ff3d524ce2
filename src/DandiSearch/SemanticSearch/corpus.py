"""Authoritative in-memory corpus of normalised records.

The corpus is the system of record for semantic search: embeddings and index
generations are derived from it and can always be rebuilt from it. All
mutations go through :meth:`Corpus.apply` (incremental) or
:meth:`Corpus.replace_all` (full listing) and are idempotent, so replaying a
change feed after a crash converges on the same state.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .types import ChangeOp, Record, RecordChange

__all__ = ("Corpus", "CorpusDiff")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CorpusDiff:
    """Ids whose state a corpus mutation changed."""

    upserted: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.upserted or self.deleted)


class Corpus:
    """Thread-safe record store keyed by record id.

    Examples:
        >>> corpus = Corpus()
        >>> change = RecordChange("a", ChangeOp.UPSERT, Record("a", "1", "rat"))
        >>> corpus.apply(change), corpus.apply(change)
        (True, False)
        >>> len(corpus)
        1
    """

    def __init__(self, records: Iterable[Record] = (), *, cursor: Optional[str] = None) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, Record] = {record.id: record for record in records}
        self._cursor = cursor

    # --- Queries ---

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return record_id in self._records

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records())

    def get(self, record_id: str) -> Optional[Record]:
        """Return the current record for ``record_id`` if present."""
        with self._lock:
            return self._records.get(record_id)

    def ids(self) -> List[str]:
        """Return record ids in sorted order."""
        with self._lock:
            return sorted(self._records)

    def records(self) -> List[Record]:
        """Return a point-in-time list of records sorted by id."""
        with self._lock:
            return [self._records[key] for key in sorted(self._records)]

    @property
    def cursor(self) -> Optional[str]:
        """Archive cursor of the last committed pull."""
        with self._lock:
            return self._cursor

    def set_cursor(self, cursor: Optional[str]) -> None:
        """Record the archive cursor reached by the last committed pull."""
        with self._lock:
            self._cursor = cursor

    def would_change(self, change: RecordChange) -> bool:
        """Return ``True`` when applying ``change`` would alter the corpus."""
        with self._lock:
            current = self._records.get(change.record_id)
            if change.op is ChangeOp.DELETE:
                return current is not None
            return current != change.record

    # --- Mutations ---

    def apply(self, change: RecordChange) -> bool:
        """Apply one change; return ``True`` if the corpus changed.

        Re-applying an identical upsert, or deleting a missing id, is a no-op.
        """
        with self._lock:
            if not self.would_change(change):
                return False
            if change.op is ChangeOp.DELETE:
                del self._records[change.record_id]
            elif change.record is not None:
                self._records[change.record_id] = change.record
            return True

    def apply_all(self, changes: Iterable[RecordChange]) -> CorpusDiff:
        """Apply ``changes`` in order and report the ids whose state changed.

        An id that ends up upserted appears only in ``upserted``; one that ends
        up absent appears only in ``deleted``.
        """
        touched: Dict[str, ChangeOp] = {}
        with self._lock:
            for change in changes:
                if self.apply(change):
                    touched[change.record_id] = change.op
            return self._summarise(touched)

    def replace_all(self, records: Iterable[Record]) -> CorpusDiff:
        """Replace the corpus with ``records`` (a full archive listing)."""
        incoming = {record.id: record for record in records}
        touched: Dict[str, ChangeOp] = {}
        with self._lock:
            for record_id in list(self._records):
                if record_id not in incoming:
                    touched[record_id] = ChangeOp.DELETE
            for record_id, record in incoming.items():
                if self._records.get(record_id) != record:
                    touched[record_id] = ChangeOp.UPSERT
            self._records = incoming
            diff = self._summarise(touched)
        logger.info(
            "corpus-replaced",
            extra={
                "event": {
                    "records": len(incoming),
                    "upserted": len(diff.upserted),
                    "deleted": len(diff.deleted),
                }
            },
        )
        return diff

    def _summarise(self, touched: Dict[str, ChangeOp]) -> CorpusDiff:
        upserted = sorted(rid for rid in touched if rid in self._records)
        deleted = sorted(rid for rid in touched if rid not in self._records)
        return CorpusDiff(tuple(upserted), tuple(deleted))

    # --- Persistence ---

    def save(self, path: Path) -> None:
        """Write the corpus (records and cursor) to ``path`` as JSON."""
        with self._lock:
            payload = {
                "cursor": self._cursor,
                "records": [
                    {"id": r.id, "version": r.version, "text": r.text, "payload": dict(r.payload)}
                    for r in self.records()
                ],
            }
        Path(path).write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Corpus:
        """Load a corpus previously written by :meth:`save`."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        records = [
            Record(
                id=item["id"],
                version=item["version"],
                text=item["text"],
                payload=item.get("payload", {}),
            )
            for item in payload.get("records", [])
        ]
        return cls(records, cursor=payload.get("cursor"))
