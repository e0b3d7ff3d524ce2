# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.scheduler",
#   "purpose": "Refresh cycle orchestration: pull, embed, publish",
#   "sections": [
#     {
#       "id": "refreshstate",
#       "name": "RefreshState",
#       "anchor": "class-refreshstate",
#       "kind": "class"
#     },
#     {
#       "id": "refreshreport",
#       "name": "RefreshReport",
#       "anchor": "class-refreshreport",
#       "kind": "class"
#     },
#     {
#       "id": "stalenesstracker",
#       "name": "StalenessTracker",
#       "anchor": "class-stalenesstracker",
#       "kind": "class"
#     },
#     {
#       "id": "refreshscheduler",
#       "name": "RefreshScheduler",
#       "anchor": "class-refreshscheduler",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Refresh scheduler keeping the index within a bounded staleness of the archive.

One refresh cycle walks ``idle -> pulling -> embedding -> publishing -> idle``:

1. Pull changes since the committed cursor (or a full listing when a rebuild
   is due) into a staged copy of the corpus.
2. Embed the records whose text changed plus any records left stale by
   earlier cycles.
3. Publish the result as one new index generation, verify it, and only then
   commit the staged corpus and cursor.

A cycle that is cancelled, fails to pull, or fails to publish leaves the
corpus, cursor and serving generation untouched. Records whose embedding
failed keep their previous vector (if any) and are retried next cycle. A
failed verification reverts the index and forces a full rebuild on the next
tick, as does a change of the current embedding model.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx

from .cancellation import CancellationToken, RefreshCancelled
from .config import RefreshConfig
from .corpus import Corpus, CorpusDiff
from .embedding import EmbeddingGenerator
from .errors import IndexCorruptionError, SemanticSearchError
from .ingest import CorpusIngestor
from .observability import Observability
from .types import EmbeddingOutcome, IndexEntry, IngestBatch, ModelVersion, Record
from .vectorstore import IndexSnapshot, VectorIndex

# --- Globals ---

__all__ = (
    "RefreshReport",
    "RefreshScheduler",
    "RefreshState",
    "StalenessTracker",
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


# --- Public Classes ---


class RefreshState(str, Enum):
    """Phase of the refresh cycle currently executing."""

    IDLE = "idle"
    PULLING = "pulling"
    EMBEDDING = "embedding"
    PUBLISHING = "publishing"


@dataclass(frozen=True)
class RefreshReport:
    """Outcome of one refresh cycle.

    Attributes:
        status: ``"published"``, ``"noop"``, ``"pull_failed"``,
            ``"publish_failed"`` or ``"cancelled"``.
        full: Whether the cycle rebuilt the index from a full listing.
        generation: Serving index generation when the cycle finished.
        cursor: Committed archive cursor after the cycle.
        upserted: Records written to the index.
        deleted: Records removed from the index.
        stale: Record ids whose embedding failed, mapped to the reason.
        skipped: Archive changes rejected during ingestion.
        migrated_to: Model tag the index migrated to, if this was a migration.
        error: Failure description for unsuccessful cycles.
    """

    status: str
    full: bool = False
    generation: int = 0
    cursor: Optional[str] = None
    upserted: int = 0
    deleted: int = 0
    stale: Mapping[str, str] = field(default_factory=dict)
    skipped: int = 0
    migrated_to: Optional[str] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("published", "noop")


class StalenessTracker:
    """Track how long archive changes have been waiting to become searchable.

    Examples:
        >>> now = [100.0]
        >>> tracker = StalenessTracker(clock=lambda: now[0])
        >>> tracker.observe(["a", "b"])
        >>> now[0] = 130.0
        >>> tracker.max_staleness_seconds()
        30.0
        >>> tracker.clear(["a", "b"])
        >>> tracker.max_staleness_seconds()
        0.0
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._first_seen: Dict[str, float] = {}

    def observe(self, record_ids: Iterable[str]) -> None:
        """Note ``record_ids`` as pending; earlier sightings keep their timestamp."""
        now = self._clock()
        with self._lock:
            for record_id in record_ids:
                self._first_seen.setdefault(record_id, now)

    def clear(self, record_ids: Iterable[str]) -> None:
        """Forget ``record_ids`` once their change is searchable."""
        with self._lock:
            for record_id in record_ids:
                self._first_seen.pop(record_id, None)

    def pending(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._first_seen))

    def max_staleness_seconds(self) -> float:
        """Return the age of the oldest pending change (``0.0`` if none)."""
        with self._lock:
            if not self._first_seen:
                return 0.0
            oldest = min(self._first_seen.values())
        return max(0.0, self._clock() - oldest)


class RefreshScheduler:
    """Drive refresh cycles on demand or from a background thread.

    Attributes:
        corpus: Authoritative corpus; only mutated when a cycle publishes.
        ingestor: Source of archive changes.
        generator: Embedding generator (its registry selects the model).
        index: Vector index receiving new generations.
        config: Refresh configuration.
        staleness: Tracker for not-yet-searchable changes.

    Examples:
        >>> scheduler = RefreshScheduler(corpus, ingestor, generator, index)  # doctest: +SKIP
        >>> scheduler.tick().status  # doctest: +SKIP
        'published'
    """

    def __init__(
        self,
        corpus: Corpus,
        ingestor: CorpusIngestor,
        generator: EmbeddingGenerator,
        index: VectorIndex,
        config: Optional[RefreshConfig] = None,
        *,
        observability: Optional[Observability] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.corpus = corpus
        self.ingestor = ingestor
        self.generator = generator
        self.index = index
        self.config = config or RefreshConfig()
        self.staleness = StalenessTracker(clock=clock)
        self._observability = observability or Observability()
        self._clock = clock
        self._state = RefreshState.IDLE
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._token: Optional[CancellationToken] = None
        self._stale: Dict[str, str] = {}
        self._rebuild_requested = False
        self._last_report: Optional[RefreshReport] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()
        generator.registry.subscribe(self._on_model_advanced)

    # --- Introspection ---

    @property
    def state(self) -> RefreshState:
        with self._state_lock:
            return self._state

    @property
    def last_report(self) -> Optional[RefreshReport]:
        return self._last_report

    @property
    def stale_records(self) -> Mapping[str, str]:
        """Record ids awaiting a successful embedding, with the last failure."""
        with self._state_lock:
            return dict(self._stale)

    @property
    def rebuild_pending(self) -> bool:
        return self._rebuild_requested

    def request_rebuild(self) -> None:
        """Make the next cycle rebuild the index from a full archive listing."""
        self._rebuild_requested = True

    # --- Control ---

    def cancel(self, reason: str = "cancelled") -> bool:
        """Abort the in-flight cycle; return ``False`` when nothing is running."""
        token = self._token
        if token is None:
            return False
        token.cancel(reason)
        return True

    def trigger(self) -> None:
        """Wake the background loop so the next cycle starts immediately."""
        self._wake.set()

    def start(self, interval: Optional[float] = None) -> None:
        """Run cycles every ``interval`` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("refresh scheduler is already running")
        period = self.config.interval_seconds if interval is None else interval
        if period <= 0:
            raise ValueError("interval must be positive")
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._run, args=(period,), name="dandisearch-refresh", daemon=True
        )
        self._thread.start()
        logger.info("refresh-scheduler-started", extra={"event": {"interval": period}})

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background loop, cancelling any cycle in progress."""
        self._stop.set()
        self._wake.set()
        self.cancel("scheduler stopping")
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("refresh-scheduler-stopped")

    def _run(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:  # pragma: no cover - keeps the loop alive on unexpected faults
                logger.exception("refresh-tick-crashed")
            self._wake.wait(interval)
            self._wake.clear()

    # --- Cycle ---

    def tick(self) -> RefreshReport:
        """Run one refresh cycle and return its report."""

        with self._cycle_lock:
            token = CancellationToken()
            self._token = token
            started = self._clock()
            try:
                report = self._cycle(token)
            finally:
                self._token = None
                self._set_state(RefreshState.IDLE)
            report = replace(report, duration_seconds=self._clock() - started)
            self._last_report = report
            self._record(report)
            return report

    def _cycle(self, token: CancellationToken) -> RefreshReport:
        model = self.generator.model_version
        migrating = self.index.model_version != model.tag
        full = self._rebuild_requested or migrating or self.corpus.cursor is None
        since = None if full else self.corpus.cursor

        self._set_state(RefreshState.PULLING)
        try:
            with self._observability.trace("refresh_pull", mode="full" if full else "incremental"):
                batch = self.ingestor.pull(since)
        except (SemanticSearchError, OSError, ValueError, httpx.HTTPError) as exc:
            logger.error(
                "refresh-pull-failed",
                extra={"event": {"since": since, "error": str(exc)}},
            )
            return self._report("pull_failed", full=full, error=str(exc))

        try:
            token.raise_if_cancelled()
            staged, diff = self._stage(batch)
            self.staleness.observe(diff.upserted + diff.deleted)
            to_embed = self._records_to_embed(staged, diff, full=batch.full)

            self._set_state(RefreshState.EMBEDDING)
            outcome = self.generator.embed_records(
                to_embed, model_version=model, cancel_token=token
            )
            token.raise_if_cancelled()
        except RefreshCancelled as exc:
            logger.warning("refresh-cancelled", extra={"event": {"reason": str(exc)}})
            return self._report("cancelled", full=full, error=str(exc))

        self._set_state(RefreshState.PUBLISHING)
        previous = self.index.snapshot()
        try:
            upserted, deleted = self._publish(staged, diff, outcome, model, full=batch.full)
        except (IndexCorruptionError, ValueError, RuntimeError) as exc:
            if self.index.snapshot() is not previous:
                self.index.revert(previous)
            self._rebuild_requested = True
            logger.error(
                "refresh-publish-failed",
                extra={"event": {"error": str(exc), "full_rebuild_scheduled": True}},
            )
            return self._report("publish_failed", full=full, error=str(exc), stale=outcome.stale)

        self._commit(batch, staged, diff, outcome, model, migrating=migrating)
        status = "published" if (upserted or deleted or batch.full) else "noop"
        return self._report(
            status,
            full=batch.full,
            upserted=upserted,
            deleted=deleted,
            stale=outcome.stale,
            skipped=batch.failed,
            migrated_to=model.tag if migrating else None,
        )

    # --- Phases ---

    def _stage(self, batch: IngestBatch) -> Tuple[Corpus, CorpusDiff]:
        staged = Corpus(self.corpus.records(), cursor=self.corpus.cursor)
        if batch.full:
            listing = Corpus()
            listing.apply_all(batch.changes)
            diff = staged.replace_all(listing.records())
        else:
            diff = staged.apply_all(batch.changes)
        return staged, diff

    def _records_to_embed(self, staged: Corpus, diff: CorpusDiff, *, full: bool) -> List[Record]:
        if full:
            return staged.records()
        wanted = set(diff.upserted)
        with self._state_lock:
            wanted.update(self._stale)
        records = [staged.get(record_id) for record_id in sorted(wanted)]
        return [record for record in records if record is not None]

    def _publish(
        self,
        staged: Corpus,
        diff: CorpusDiff,
        outcome: EmbeddingOutcome,
        model: ModelVersion,
        *,
        full: bool,
    ) -> Tuple[int, int]:
        if full:
            entries = self._full_entries(staged, outcome, model)
            previous_ids = set(self.index.snapshot().ids())
            snapshot = self.index.rebuild(entries, model_version=model.tag, dim=model.dim)
            self._verify(snapshot)
            return len(entries), len(previous_ids - set(snapshot.ids()))
        entries = [
            IndexEntry(record_id, embedding.vector, self._payload(staged, record_id))
            for record_id, embedding in outcome.embeddings.items()
        ]
        upserted, deleted = self.index.apply(entries, diff.deleted)
        self._verify(self.index.snapshot())
        return upserted, deleted

    def _full_entries(
        self, staged: Corpus, outcome: EmbeddingOutcome, model: ModelVersion
    ) -> List[IndexEntry]:
        current = self.index.snapshot()
        reuse_old = current.model_version == model.tag
        entries: List[IndexEntry] = []
        for record in staged.records():
            embedding = outcome.embeddings.get(record.id)
            if embedding is not None:
                entries.append(IndexEntry(record.id, embedding.vector, dict(record.payload)))
            elif reuse_old:
                # Keep serving the last good vector for records that failed to embed
                old = current.get(record.id)
                if old is not None:
                    entries.append(IndexEntry(record.id, old.vector, dict(record.payload)))
        return entries

    def _verify(self, snapshot: IndexSnapshot) -> None:
        if self.config.verify_after_publish:
            self.index.verify(snapshot)

    def _commit(
        self,
        batch: IngestBatch,
        staged: Corpus,
        diff: CorpusDiff,
        outcome: EmbeddingOutcome,
        model: ModelVersion,
        *,
        migrating: bool,
    ) -> None:
        if batch.full:
            self.corpus.replace_all(staged.records())
        else:
            self.corpus.apply_all(batch.changes)
        self.corpus.set_cursor(batch.cursor)
        for record_id in diff.deleted:
            self.generator.cache.evict(record_id)
        if migrating:
            self.generator.cache.retain_model(model.tag)
        with self._state_lock:
            if batch.full:
                self._stale = dict(outcome.stale)
            else:
                for record_id in list(outcome.embeddings) + list(diff.deleted):
                    self._stale.pop(record_id, None)
                self._stale.update(outcome.stale)
        self.staleness.clear(list(outcome.embeddings) + list(diff.deleted))
        self._rebuild_requested = False

    # --- Internals ---

    def _on_model_advanced(self, previous: Optional[ModelVersion], current: ModelVersion) -> None:
        self.trigger()

    def _set_state(self, state: RefreshState) -> None:
        with self._state_lock:
            self._state = state

    @staticmethod
    def _payload(staged: Corpus, record_id: str) -> Mapping[str, object]:
        record = staged.get(record_id)
        return dict(record.payload) if record is not None else {}

    def _report(self, status: str, **fields: object) -> RefreshReport:
        return RefreshReport(
            status=status,
            generation=self.index.generation,
            cursor=self.corpus.cursor,
            **fields,  # type: ignore[arg-type]
        )

    def _record(self, report: RefreshReport) -> None:
        metrics = self._observability.metrics
        metrics.increment("refresh_cycles", status=report.status)
        metrics.observe("refresh_duration_seconds", report.duration_seconds)
        staleness = self.staleness.max_staleness_seconds()
        metrics.observe("refresh_max_staleness_seconds", staleness)
        event = {
            "status": report.status,
            "full": report.full,
            "generation": report.generation,
            "cursor": report.cursor,
            "upserted": report.upserted,
            "deleted": report.deleted,
            "stale": len(report.stale),
            "skipped": report.skipped,
            "max_staleness_seconds": round(staleness, 3),
        }
        logger.info("refresh-cycle-complete", extra={"event": event})
        if staleness > self.config.staleness_bound_seconds:
            logger.warning(
                "refresh-staleness-exceeded",
                extra={
                    "event": {
                        "max_staleness_seconds": round(staleness, 3),
                        "bound_seconds": self.config.staleness_bound_seconds,
                    }
                },
            )

