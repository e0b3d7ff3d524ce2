"""In-memory archive used by tests, notebooks and the CLI demo.

``ArchiveSimulator`` implements :class:`~DandiSearch.SemanticSearch.archive.ArchiveSource`
over an append-only change log. Cursors are stringified log offsets, so an
incremental pull returns exactly the entries appended since the previous one.
Faults can be queued with :meth:`ArchiveSimulator.fail_next` to exercise the
ingestor's retry policy, and malformed entries can be injected to exercise
partial ingestion.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Mapping, Optional

from ..archive import ArchivePage, RawChange
from ..errors import TransientFetchError

__all__ = ("ArchiveSimulator",)


class ArchiveSimulator:
    """Append-only, thread-safe fake of the DANDI archive.

    Examples:
        >>> sim = ArchiveSimulator()
        >>> sim.put({"id": "000001", "version": "draft", "name": "Mouse V1"})
        '1'
        >>> sim.delete("000001")
        '2'
        >>> [c.op for c in sim.changes_since("0").changes]
        ['upsert', 'delete']
        >>> sim.list_records().changes
        []
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._log: List[RawChange] = []
        self._failures: List[Exception] = []
        self.calls = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._log)

    # --- Mutations ---

    def put(self, metadata: Mapping[str, Any]) -> str:
        """Append an upsert for ``metadata`` and return the new cursor."""
        record_id = metadata.get("id") or metadata.get("identifier")
        change = RawChange(
            op="upsert",
            record_id=str(record_id) if record_id else None,
            metadata=copy.deepcopy(dict(metadata)),
        )
        return self._append(change)

    def delete(self, record_id: str) -> str:
        """Append a delete for ``record_id`` and return the new cursor."""
        return self._append(RawChange(op="delete", record_id=record_id))

    def inject_malformed(self, record_id: Optional[str] = None, *, op: str = "upsert") -> str:
        """Append a change the ingestor must reject (no usable metadata)."""
        return self._append(RawChange(op=op, record_id=record_id, metadata=None))

    def fail_next(self, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next ``count`` archive calls raise ``error``.

        Defaults to :class:`TransientFetchError`, which the ingestor retries.
        """
        with self._lock:
            for _ in range(count):
                self._failures.append(error or TransientFetchError("simulated archive outage"))

    # --- ArchiveSource ---

    def list_records(self) -> ArchivePage:
        """Return every live record as an upsert, then any malformed entries."""
        with self._lock:
            self._maybe_fail()
            state: Dict[str, RawChange] = {}
            malformed: List[RawChange] = []
            for change in self._log:
                if change.record_id is None or (change.op != "delete" and change.metadata is None):
                    malformed.append(change)
                    continue
                if change.op == "delete":
                    state.pop(change.record_id, None)
                else:
                    state[change.record_id] = change
            changes = list(state.values()) + malformed
            return ArchivePage(changes=changes, cursor=str(len(self._log)), full=True)

    def get_record(self, record_id: str) -> Optional[Mapping[str, Any]]:
        for change in self.list_records().changes:
            if change.record_id == record_id:
                return change.metadata
        return None

    def changes_since(self, cursor: str) -> ArchivePage:
        """Return log entries appended after offset ``cursor``."""
        try:
            offset = int(cursor)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid simulator cursor: {cursor!r}") from exc
        with self._lock:
            self._maybe_fail()
            if offset < 0 or offset > len(self._log):
                raise ValueError(f"cursor {offset} is outside the change log")
            return ArchivePage(changes=list(self._log[offset:]), cursor=str(len(self._log)))

    # --- Internals ---

    def _append(self, change: RawChange) -> str:
        with self._lock:
            self._log.append(change)
            return str(len(self._log))

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
