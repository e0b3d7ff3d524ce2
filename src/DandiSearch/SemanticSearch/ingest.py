# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.ingest",
#   "purpose": "Pull archive changes and normalise raw metadata into records",
#   "sections": [
#     {
#       "id": "rawrecord",
#       "name": "RawRecord",
#       "anchor": "class-rawrecord",
#       "kind": "class"
#     },
#     {
#       "id": "normalize-text",
#       "name": "normalize_text",
#       "anchor": "function-normalize-text",
#       "kind": "function"
#     },
#     {
#       "id": "normalize-record",
#       "name": "normalize_record",
#       "anchor": "function-normalize-record",
#       "kind": "function"
#     },
#     {
#       "id": "corpusingestor",
#       "name": "CorpusIngestor",
#       "anchor": "class-corpusingestor",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Corpus ingestion: pull raw archive changes and normalise them into records.

The ingestor is the only component that talks to the archive. Each
:meth:`CorpusIngestor.pull` call fetches either a full listing (``since=None``)
or the changes after a cursor, validates every raw document against
:class:`RawRecord`, and turns it into a :class:`~DandiSearch.SemanticSearch.types.Record`
whose ``text`` concatenates the configured salient fields with markup removed.

Failure handling:

- Transient archive failures are retried with jittered exponential backoff
  (``IngestConfig.fetch_max_attempts``); once exhausted the
  :class:`~DandiSearch.SemanticSearch.errors.TransientFetchError` propagates.
- A change that fails validation or normalisation is skipped, logged, and
  summarised in the batch's :class:`PartialIngestionError`; the rest of the
  batch keeps flowing.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .archive import ArchivePage, ArchiveSource, RawChange
from .config import IngestConfig
from .errors import IngestFailure, PartialIngestionError, TransientFetchError
from .observability import Observability
from .retry import create_fetch_retry_policy
from .tokenization import collapse_whitespace, strip_markdown, strip_markup
from .types import ChangeOp, IngestBatch, Record, RecordChange

__all__ = (
    "CorpusIngestor",
    "RawRecord",
    "normalize_record",
    "normalize_text",
)

logger = logging.getLogger(__name__)

_ID_PREFIX = re.compile(r"^DANDI:", re.IGNORECASE)
_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


class RawRecord(BaseModel):
    """Raw archive metadata accepted at the ingestion boundary.

    Only ``id`` and ``version`` are required. Title/description/keyword fields
    accept the archive's common spellings, and everything else is preserved as
    extra fields so configured ``text_fields`` can reach it.

    Examples:
        >>> RawRecord.model_validate({"identifier": "DANDI:000026", "version": "draft"}).id
        '000026'
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "identifier"))
    version: str = Field(validation_alias=AliasChoices("version", "versionIdentifier"))
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "title"))
    description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("description", "abstract")
    )
    keywords: List[str] = Field(default_factory=list)
    modified: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("modified", "dateModified")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _clean_id(cls, value: Any) -> str:
        text = _ID_PREFIX.sub("", str(value).strip())
        if not text:
            raise ValueError("record id must not be blank")
        return text

    @field_validator("version", "modified", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @field_validator("keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(item).strip() for item in value if str(item).strip()]

    def lookup(self, field_name: str) -> Any:
        """Return the raw value for ``field_name`` from declared or extra fields.

        Extra fields are searched under the snake_case name, its camelCase
        spelling, and inside the archive's ``assetsSummary`` block.
        """

        if field_name in type(self).model_fields:
            return getattr(self, field_name)
        extra = self.model_extra or {}
        camel = _CAMEL_BOUNDARY.sub(lambda match: match.group(1).upper(), field_name)
        for key in (field_name, camel):
            if key in extra:
                return extra[key]
        summary = extra.get("assetsSummary")
        if isinstance(summary, Mapping):
            for key in (field_name, camel):
                if key in summary:
                    return summary[key]
        return None


def _flatten(value: Any) -> List[str]:
    """Flatten strings, lists, and ``{"name": ...}`` objects into text fragments."""

    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [str(value)]
    if isinstance(value, Mapping):
        if "name" in value:
            return _flatten(value["name"])
        fragments: List[str] = []
        for item in value.values():
            fragments.extend(_flatten(item))
        return fragments
    if isinstance(value, Iterable):
        fragments = []
        for item in value:
            fragments.extend(_flatten(item))
        return fragments
    return []


def normalize_text(text: str, *, max_chars: int) -> str:
    """Strip markup, collapse whitespace, and cap ``text`` at ``max_chars``.

    Truncation prefers the last word boundary inside the limit.

    Examples:
        >>> normalize_text("<p>Rat   **olfactory** bulb</p>", max_chars=100)
        'Rat olfactory bulb'
    """

    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    cleaned = collapse_whitespace(strip_markdown(strip_markup(text)))
    if len(cleaned) <= max_chars:
        return cleaned
    cut = cleaned[:max_chars]
    boundary = cut.rfind(" ")
    if boundary > max_chars // 2:
        cut = cut[:boundary]
    return cut.rstrip()


def normalize_record(metadata: Mapping[str, Any], config: IngestConfig) -> Record:
    """Validate raw ``metadata`` and build a normalised :class:`Record`.

    Args:
        metadata: Raw archive document.
        config: Ingestion configuration naming the text fields and length cap.

    Returns:
        Record whose text concatenates the configured fields in order and whose
        payload carries the flattened values for filtering and reranking.

    Raises:
        pydantic.ValidationError: If ``id`` or ``version`` are missing.
        ValueError: If no searchable text remains after normalisation.
    """

    raw = RawRecord.model_validate(metadata)
    parts: List[str] = []
    payload: dict[str, Any] = {"version": raw.version}
    for field_name in config.text_fields:
        fragments = [fragment.strip() for fragment in _flatten(raw.lookup(field_name))]
        fragments = [fragment for fragment in fragments if fragment]
        if not fragments:
            continue
        parts.extend(fragments)
        if field_name == "description":
            continue
        if field_name == "name":
            payload["name"] = fragments[0]
        else:
            payload[field_name] = fragments
    if raw.modified is not None:
        payload["modified"] = raw.modified
    text = normalize_text("\n".join(parts), max_chars=config.max_text_chars)
    if not text:
        raise ValueError(f"record {raw.id} has no searchable text")
    return Record(id=raw.id, version=raw.version, text=text, payload=payload)


class CorpusIngestor:
    """Pull changes from an :class:`ArchiveSource` and normalise them.

    Attributes:
        source: Archive collaborator providing raw changes.
        config: Ingestion configuration.

    Examples:
        >>> from DandiSearch.SemanticSearch.devtools import ArchiveSimulator
        >>> sim = ArchiveSimulator()
        >>> _ = sim.put({"id": "000001", "version": "draft", "name": "Rat olfactory bulb"})
        >>> batch = CorpusIngestor(sim).pull(None)
        >>> [change.record_id for change in batch.changes]
        ['000001']
    """

    def __init__(
        self,
        source: ArchiveSource,
        config: Optional[IngestConfig] = None,
        *,
        observability: Optional[Observability] = None,
        retry_sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.source = source
        self.config = config or IngestConfig()
        self._observability = observability or Observability()
        self._retry_sleep = retry_sleep

    def pull(self, since: Optional[str] = None) -> IngestBatch:
        """Fetch and normalise changes.

        Args:
            since: Cursor returned by a previous pull, or ``None`` for a full
                listing of every current record.

        Returns:
            IngestBatch with the normalised changes, the next cursor, and a
            ``PartialIngestionError`` summary when some changes were skipped.

        Raises:
            TransientFetchError: When the archive stays unavailable after all
                retry attempts.
        """

        mode = "full" if since is None else "incremental"
        with self._observability.trace("ingest_pull", mode=mode):
            page = self._fetch(since)
        changes: List[RecordChange] = []
        failures: List[IngestFailure] = []
        for raw in page.changes:
            try:
                changes.append(self._normalize_change(raw, page.cursor))
            except (TypeError, ValueError) as exc:
                failures.append(IngestFailure(record_id=raw.record_id, reason=str(exc)))
                logger.warning(
                    "ingest-change-skipped",
                    extra={"event": {"record_id": raw.record_id, "op": raw.op, "error": str(exc)}},
                )
        metrics = self._observability.metrics
        metrics.increment("ingest_changes", float(len(changes)), mode=mode)
        error = None
        if failures:
            metrics.increment("ingest_failures", float(len(failures)), mode=mode)
            error = PartialIngestionError(failures, total=len(page.changes))
        logger.info(
            "ingest-pull-complete",
            extra={
                "event": {
                    "mode": mode,
                    "since": since,
                    "cursor": page.cursor,
                    "changes": len(changes),
                    "failed": len(failures),
                }
            },
        )
        return IngestBatch(
            changes=changes,
            cursor=page.cursor,
            full=since is None or page.full,
            error=error,
        )

    def _fetch(self, since: Optional[str]) -> ArchivePage:
        policy = create_fetch_retry_policy(
            self.config.fetch_max_attempts,
            multiplier=self.config.fetch_backoff_multiplier,
            max_wait=self.config.fetch_backoff_max_seconds,
            sleep=self._retry_sleep,
        )
        for attempt in policy:
            with attempt:
                return self._fetch_once(since)
        raise AssertionError("unreachable: retry policy exhausted without raising")

    def _fetch_once(self, since: Optional[str]) -> ArchivePage:
        try:
            if since is None:
                return self.source.list_records()
            return self.source.changes_since(since)
        except FileNotFoundError:
            raise
        except (OSError, httpx.TransportError) as exc:
            self._observability.metrics.increment("ingest_fetch_errors")
            raise TransientFetchError(f"archive fetch failed: {exc}") from exc
        except TransientFetchError:
            self._observability.metrics.increment("ingest_fetch_errors")
            raise

    def _normalize_change(self, raw: RawChange, cursor: str) -> RecordChange:
        if raw.op == "delete":
            if not raw.record_id:
                raise ValueError("delete change is missing a record id")
            record_id = _ID_PREFIX.sub("", raw.record_id.strip())
            return RecordChange(record_id=record_id, op=ChangeOp.DELETE, cursor=cursor)
        if raw.op != "upsert":
            raise ValueError(f"unsupported change op {raw.op!r}")
        if raw.metadata is None:
            raise ValueError("upsert change is missing metadata")
        record = normalize_record(raw.metadata, self.config)
        return RecordChange(record_id=record.id, op=ChangeOp.UPSERT, record=record, cursor=cursor)
