"""Refresh cycles: staged commits, incremental updates, failures, migrations."""

from __future__ import annotations

import logging
import time

import pytest

from DandiSearch.SemanticSearch.config import EmbeddingConfig, IngestConfig, RefreshConfig
from DandiSearch.SemanticSearch.corpus import Corpus
from DandiSearch.SemanticSearch.embedding import EmbeddingGenerator, ModelRegistry
from DandiSearch.SemanticSearch.errors import IndexCorruptionError
from DandiSearch.SemanticSearch.ingest import CorpusIngestor
from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
from DandiSearch.SemanticSearch.scheduler import RefreshScheduler, RefreshState, StalenessTracker
from DandiSearch.SemanticSearch.service import SemanticSearchService
from DandiSearch.SemanticSearch.vectorstore import VectorIndex

from search_support import DIM, ScriptedProvider, no_sleep

ZEBRAFISH = {"id": "000004", "version": "draft", "name": "Zebrafish tectum imaging"}


@pytest.fixture
def provider():
    return ScriptedProvider(dim=DIM)


@pytest.fixture
def make_scheduler(archive, provider, flat_config):
    generators = []

    def factory(registry=None, *, ingest_config=None, config=None, clock=time.monotonic):
        generator = EmbeddingGenerator(
            registry or provider,
            EmbeddingConfig(dim=DIM, batch_size=2),
            retry_sleep=no_sleep,
        )
        generators.append(generator)
        index = VectorIndex(DIM, flat_config, model_version=generator.model_version.tag)
        ingestor = CorpusIngestor(archive, ingest_config, retry_sleep=no_sleep)
        return RefreshScheduler(Corpus(), ingestor, generator, index, config, clock=clock)

    yield factory
    for generator in generators:
        generator.close()


def test_first_tick_publishes_full_corpus(make_scheduler):
    scheduler = make_scheduler()

    report = scheduler.tick()

    assert report.ok and report.status == "published"
    assert report.full is True
    assert report.upserted == 3
    assert report.cursor == "3"
    assert scheduler.index.snapshot().ids() == ["000001", "000002", "000003"]
    assert scheduler.corpus.ids() == ["000001", "000002", "000003"]
    assert scheduler.state is RefreshState.IDLE
    assert scheduler.last_report is report


def test_incremental_tick_applies_updates_and_deletes(make_scheduler, archive, provider):
    scheduler = make_scheduler()
    scheduler.tick()
    generation = scheduler.index.generation
    seen = len(provider.texts_seen)
    archive.put(ZEBRAFISH)
    archive.delete("000002")

    report = scheduler.tick()

    assert report.status == "published"
    assert report.full is False
    assert (report.upserted, report.deleted) == (1, 1)
    assert report.cursor == "5"
    assert scheduler.index.generation == generation + 1
    assert scheduler.index.snapshot().ids() == ["000001", "000003", "000004"]
    assert scheduler.corpus.ids() == ["000001", "000003", "000004"]
    assert provider.texts_seen[seen:] == ["passage: Zebrafish tectum imaging"]
    assert scheduler.tick().status == "noop"


def test_cancelled_cycle_leaves_state_untouched(make_scheduler, provider):
    scheduler = make_scheduler()
    provider.hook = lambda texts: scheduler.cancel("operator abort")

    report = scheduler.tick()

    assert report.status == "cancelled"
    assert "operator abort" in report.error
    assert scheduler.corpus.cursor is None
    assert len(scheduler.corpus) == 0
    assert scheduler.index.generation == 0
    assert scheduler.cancel() is False


def test_pull_failure_keeps_cursor(make_scheduler, archive):
    scheduler = make_scheduler(ingest_config=IngestConfig(fetch_max_attempts=2))
    scheduler.tick()
    archive.put(ZEBRAFISH)
    archive.fail_next(5)

    report = scheduler.tick()

    assert report.status == "pull_failed"
    assert not report.ok
    assert scheduler.corpus.cursor == "3"
    assert "000004" not in scheduler.index


def test_failed_embeddings_are_retried_next_cycle(make_scheduler, archive, provider):
    provider.fail_texts = ("Zebrafish",)
    archive.put(ZEBRAFISH)
    scheduler = make_scheduler()

    first = scheduler.tick()
    assert first.status == "published"
    assert list(first.stale) == ["000004"]
    assert "000004" not in scheduler.index
    assert "000004" in scheduler.corpus
    assert scheduler.stale_records.keys() == {"000004"}
    assert "000004" in scheduler.staleness.pending()

    provider.fail_texts = ()
    second = scheduler.tick()

    assert second.status == "published"
    assert second.upserted == 1
    assert "000004" in scheduler.index
    assert scheduler.stale_records == {}
    assert scheduler.staleness.pending() == ()


def test_failed_update_keeps_previous_vector(make_scheduler, archive, provider):
    scheduler = make_scheduler()
    scheduler.tick()
    before = scheduler.index.get("000002").vector.copy()
    provider.fail_texts = ("poison",)
    archive.put({"id": "000002", "version": "2", "name": "Visual cortex poison update"})

    report = scheduler.tick()

    assert list(report.stale) == ["000002"]
    assert scheduler.corpus.get("000002").version == "2"
    assert (scheduler.index.get("000002").vector == before).all()


def test_publish_failure_reverts_and_schedules_rebuild(make_scheduler, archive, monkeypatch):
    scheduler = make_scheduler()
    scheduler.tick()
    archive.put(ZEBRAFISH)

    def corrupted(snapshot=None):
        raise IndexCorruptionError("simulated corruption")

    monkeypatch.setattr(scheduler.index, "verify", corrupted)
    failed = scheduler.tick()

    assert failed.status == "publish_failed"
    assert "simulated corruption" in failed.error
    assert scheduler.rebuild_pending is True
    assert scheduler.corpus.cursor == "3"
    assert scheduler.index.snapshot().ids() == ["000001", "000002", "000003"]

    monkeypatch.undo()
    recovered = scheduler.tick()

    assert recovered.status == "published"
    assert recovered.full is True
    assert scheduler.rebuild_pending is False
    assert "000004" in scheduler.index


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_model_advance_wakes_background_loop(make_scheduler):
    registry = ModelRegistry(HashingEmbeddingProvider(dim=DIM))
    registry.register(HashingEmbeddingProvider(dim=DIM, revision="2"))
    scheduler = make_scheduler(registry)
    scheduler.start(interval=3600)
    try:
        assert _wait_for(lambda: scheduler.last_report is not None)
        registry.advance("hashing@2")
        assert _wait_for(lambda: scheduler.index.model_version == "hashing@2")
    finally:
        scheduler.stop(timeout=5.0)

    assert scheduler.last_report.migrated_to == "hashing@2"


def test_migration_rebuilds_with_new_model(make_scheduler):
    registry = ModelRegistry(HashingEmbeddingProvider(dim=DIM))
    registry.register(HashingEmbeddingProvider(dim=DIM, revision="2"))
    scheduler = make_scheduler(registry)
    scheduler.tick()
    old_vector = scheduler.index.get("000001").vector.copy()

    registry.advance("hashing@2")
    report = scheduler.tick()

    assert report.status == "published"
    assert report.full is True
    assert report.migrated_to == "hashing@2"
    assert scheduler.index.model_version == "hashing@2"
    assert not (scheduler.index.get("000001").vector == old_vector).all()
    assert len(scheduler.generator.cache) == 3


def test_migration_to_a_wider_model_rebuilds(make_scheduler):
    registry = ModelRegistry(HashingEmbeddingProvider(dim=DIM))
    registry.register(HashingEmbeddingProvider(dim=DIM * 2, revision="2"))
    scheduler = make_scheduler(registry)
    scheduler.tick()

    registry.advance("hashing@2")
    report = scheduler.tick()

    assert report.status == "published"
    assert report.migrated_to == "hashing@2"
    assert scheduler.index.dim == DIM * 2
    assert scheduler.index.get("000001").vector.shape == (DIM * 2,)
    assert scheduler.rebuild_pending is False
    assert scheduler.tick().status == "noop"
    service = SemanticSearchService(scheduler.index, scheduler.generator)
    assert service.search("olfactory bulb rat")[0] == "000001"


def test_replayed_changes_leave_the_index_untouched(make_scheduler, archive, provider):
    scheduler = make_scheduler()
    scheduler.tick()
    before = scheduler.index.snapshot()
    entries = {entry.record_id: entry for entry in before.entries()}
    embedded = len(provider.texts_seen)

    archive.put(archive.get_record("000001"))
    repeated = scheduler.tick()
    scheduler.corpus.set_cursor("0")
    replayed = scheduler.tick()

    for report in (repeated, replayed):
        assert report.status == "noop"
        assert (report.upserted, report.deleted) == (0, 0)
    after = scheduler.index.snapshot()
    assert after.generation == before.generation
    assert after.ids() == sorted(entries)
    for entry in after.entries():
        assert (entry.vector == entries[entry.record_id].vector).all()
        assert entry.payload == entries[entry.record_id].payload
    assert len(provider.texts_seen) == embedded
    assert scheduler.corpus.cursor == "4"


def test_state_reflects_the_running_phase(make_scheduler, provider):
    scheduler = make_scheduler()
    observed = []
    provider.hook = lambda texts: observed.append(scheduler.state)

    scheduler.tick()

    assert set(observed) == {RefreshState.EMBEDDING}
    assert scheduler.state is RefreshState.IDLE


def test_staleness_bound_is_reported(make_scheduler, archive, provider, caplog):
    now = [1000.0]
    scheduler = make_scheduler(
        config=RefreshConfig(staleness_bound_seconds=60.0), clock=lambda: now[0]
    )
    provider.fail_texts = ("Zebrafish",)
    archive.put(ZEBRAFISH)
    scheduler.tick()
    now[0] += 120.0

    with caplog.at_level(logging.WARNING):
        scheduler.tick()

    assert scheduler.staleness.max_staleness_seconds() == pytest.approx(120.0)
    assert any(r.getMessage() == "refresh-staleness-exceeded" for r in caplog.records)


def test_staleness_tracker_keeps_first_sighting():
    now = [0.0]
    tracker = StalenessTracker(clock=lambda: now[0])
    tracker.observe(["a"])
    now[0] = 10.0
    tracker.observe(["a", "b"])
    now[0] = 15.0

    assert tracker.max_staleness_seconds() == pytest.approx(15.0)
    tracker.clear(["a"])
    assert tracker.pending() == ("b",)
    assert tracker.max_staleness_seconds() == pytest.approx(5.0)


def test_background_loop_runs_and_stops(make_scheduler):
    scheduler = make_scheduler()
    scheduler.start(interval=0.05)
    try:
        with pytest.raises(RuntimeError):
            scheduler.start(interval=0.05)
        _wait_for(lambda: scheduler.last_report is not None)
    finally:
        scheduler.stop(timeout=5.0)

    assert scheduler.last_report is not None
    assert scheduler.last_report.ok
    assert len(scheduler.index) == 3
