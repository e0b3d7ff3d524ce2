"""Archive collaborators that feed raw metadata into the corpus ingestor.

The archive is an opaque collaborator: the ingestor only needs a way to list
every current record, fetch one record, and enumerate changes since a cursor.
:class:`ArchiveSource` captures that contract. :class:`JsonlArchiveSource`
implements it over a local JSONL change log, which is how the CLI builds and
refreshes indexes from an archive dump.

JSONL change log format (one JSON object per line):

- A plain metadata object (must carry ``id`` or ``identifier``) upserts it.
- ``{"op": "delete", "id": "000026"}`` deletes a record.
- ``{"op": "upsert", "metadata": {...}}`` is the explicit upsert form.

Cursors are the number of log lines consumed, rendered as a string.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import TransientFetchError

__all__ = (
    "ArchivePage",
    "ArchiveSource",
    "JsonlArchiveSource",
    "RawChange",
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RawChange:
    """Un-normalised change reported by an archive.

    ``metadata`` is the raw archive document for upserts and ``None`` for
    deletes. ``record_id`` may be ``None`` when the archive emitted something
    malformed; the ingestor reports such changes as failures.
    """

    op: str
    record_id: Optional[str]
    metadata: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True, slots=True)
class ArchivePage:
    """Changes returned by one archive call plus the cursor to resume from."""

    changes: Sequence[RawChange]
    cursor: str
    full: bool = False
    meta: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class ArchiveSource(Protocol):
    """Interface implemented by archive clients, dumps, and simulators.

    Implementations raise :class:`TransientFetchError` for retryable I/O
    failures; anything else propagates as a fatal pull error.
    """

    def list_records(self) -> ArchivePage:
        """Return every current record as upserts together with a fresh cursor."""

    def get_record(self, record_id: str) -> Optional[Mapping[str, Any]]:
        """Return the raw metadata for ``record_id`` or ``None`` when absent."""

    def changes_since(self, cursor: str) -> ArchivePage:
        """Return changes made after ``cursor``, in archive order."""


def _raw_change_from_line(obj: Any) -> RawChange:
    if not isinstance(obj, Mapping):
        return RawChange(op="invalid", record_id=None, metadata=None)
    op = str(obj.get("op", "upsert")).lower()
    if "op" in obj and op == "delete":
        record_id = obj.get("id") or obj.get("identifier")
        return RawChange(op="delete", record_id=str(record_id) if record_id else None)
    metadata = obj.get("metadata") if "op" in obj else obj
    if not isinstance(metadata, Mapping):
        return RawChange(op=op, record_id=obj.get("id"), metadata=None)
    record_id = metadata.get("id") or metadata.get("identifier")
    return RawChange(op=op, record_id=str(record_id) if record_id else None, metadata=metadata)


class JsonlArchiveSource:
    """File-backed archive source reading a JSONL change log.

    Attributes:
        path: Location of the JSONL file.

    Examples:
        >>> source = JsonlArchiveSource(Path("dandisets.jsonl"))  # doctest: +SKIP
        >>> page = source.list_records()  # doctest: +SKIP
        >>> page.cursor  # doctest: +SKIP
        '128'
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_lines(self) -> List[Tuple[int, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise TransientFetchError(f"failed to read archive dump {self.path}: {exc}") from exc
        entries: List[Tuple[int, Any]] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            stripped = line.strip()
            if not stripped:
                entries.append((lineno, None))
                continue
            try:
                entries.append((lineno, json.loads(stripped)))
            except json.JSONDecodeError as exc:
                logger.warning(
                    "archive-line-invalid-json",
                    extra={"event": {"path": str(self.path), "line": lineno, "error": str(exc)}},
                )
                entries.append((lineno, {"op": "invalid"}))
        return entries

    def list_records(self) -> ArchivePage:
        """Replay the whole log and return the surviving records as upserts."""

        entries = self._read_lines()
        state: Dict[str, RawChange] = {}
        invalid: List[RawChange] = []
        for _, obj in entries:
            if obj is None:
                continue
            change = _raw_change_from_line(obj)
            if change.record_id is None or change.op not in ("upsert", "delete"):
                invalid.append(change)
                continue
            if change.op == "delete":
                state.pop(change.record_id, None)
            else:
                # Re-inserting moves the record to the end, keeping log order
                state.pop(change.record_id, None)
                state[change.record_id] = change
        changes = list(state.values()) + invalid
        return ArchivePage(changes=changes, cursor=str(len(entries)), full=True)

    def get_record(self, record_id: str) -> Optional[Mapping[str, Any]]:
        """Return the latest metadata recorded for ``record_id``."""

        for change in self.list_records().changes:
            if change.record_id == record_id:
                return change.metadata
        return None

    def changes_since(self, cursor: str) -> ArchivePage:
        """Return log entries appended after line ``cursor``."""

        try:
            offset = int(cursor)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid JSONL archive cursor: {cursor!r}") from exc
        entries = self._read_lines()
        if offset < 0 or offset > len(entries):
            raise ValueError(
                f"cursor {offset} is outside the archive log ({len(entries)} lines)"
            )
        changes = [_raw_change_from_line(obj) for _, obj in entries[offset:] if obj is not None]
        return ArchivePage(changes=changes, cursor=str(len(entries)))
