"""Corpus ingestion: normalisation, partial failures, and archive retries."""

from __future__ import annotations

import json

import pytest

from DandiSearch.SemanticSearch.archive import JsonlArchiveSource
from DandiSearch.SemanticSearch.config import IngestConfig
from DandiSearch.SemanticSearch.errors import TransientFetchError
from DandiSearch.SemanticSearch.ingest import CorpusIngestor, normalize_record, normalize_text
from DandiSearch.SemanticSearch.types import ChangeOp

from search_support import no_sleep


def test_normalize_record_builds_text_and_payload():
    record = normalize_record(
        {
            "identifier": "DANDI:000026",
            "version": "draft",
            "name": "Olfactory bulb recordings",
            "description": "<p>Recordings from the <b>olfactory bulb</b> of awake rats.</p>",
            "keywords": "olfaction, bulb",
            "species": [{"name": "Rattus norvegicus"}],
            "dateModified": "2023-05-01T00:00:00Z",
        },
        IngestConfig(),
    )

    assert record.id == "000026"
    assert record.version == "draft"
    assert "<" not in record.text
    assert "Recordings from the olfactory bulb of awake rats." in record.text
    assert record.text.startswith("Olfactory bulb recordings")
    assert record.payload["name"] == "Olfactory bulb recordings"
    assert record.payload["keywords"] == ["olfaction", "bulb"]
    assert record.payload["species"] == ["Rattus norvegicus"]
    assert record.payload["modified"] == "2023-05-01T00:00:00Z"
    assert "description" not in record.payload


def test_normalize_record_reads_camel_case_and_assets_summary():
    record = normalize_record(
        {
            "id": "000100",
            "version": "1",
            "name": "Calcium imaging",
            "assetsSummary": {"approach": [{"name": "microscopy approach"}]},
            "measurementTechnique": [{"name": "two-photon microscopy"}],
        },
        IngestConfig(),
    )

    assert record.payload["approach"] == ["microscopy approach"]
    assert record.payload["measurement_technique"] == ["two-photon microscopy"]
    assert "two-photon microscopy" in record.text


def test_normalize_record_requires_text():
    with pytest.raises(ValueError):
        normalize_record({"id": "000001", "version": "1"}, IngestConfig())


def test_normalize_record_requires_version():
    with pytest.raises(ValueError):
        normalize_record({"id": "000001", "name": "x"}, IngestConfig())


def test_normalize_text_truncates_on_word_boundary():
    text = normalize_text("alpha beta gamma delta", max_chars=13)

    assert text == "alpha beta"


def test_full_pull_lists_every_record(archive):
    batch = CorpusIngestor(archive).pull(None)

    assert batch.full is True
    assert batch.cursor == "3"
    assert [change.record_id for change in batch.changes] == ["000001", "000002", "000003"]
    assert all(change.op is ChangeOp.UPSERT for change in batch.changes)
    assert batch.error is None


def test_incremental_pull_returns_changes_since_cursor(archive):
    ingestor = CorpusIngestor(archive)
    cursor = ingestor.pull(None).cursor
    archive.put({"id": "000004", "version": "draft", "name": "Zebrafish tectum"})
    archive.delete("000002")

    batch = ingestor.pull(cursor)

    assert batch.full is False
    assert [(c.record_id, c.op) for c in batch.changes] == [
        ("000004", ChangeOp.UPSERT),
        ("000002", ChangeOp.DELETE),
    ]
    assert batch.cursor == "5"


def test_malformed_change_is_skipped_not_fatal(archive):
    archive.inject_malformed("000009")
    archive.put({"id": "000010", "version": "draft"})

    batch = CorpusIngestor(archive).pull("3")

    assert batch.changes == []
    assert batch.failed == 2
    assert set(batch.error.failed_ids) == {"000009", "000010"}
    assert batch.error.total == 2


def test_transient_failures_are_retried(archive):
    archive.fail_next(2)

    batch = CorpusIngestor(archive, retry_sleep=no_sleep).pull(None)

    assert len(batch.changes) == 3
    assert archive.calls == 3


def test_exhausted_retries_raise(archive):
    archive.fail_next(10)
    ingestor = CorpusIngestor(archive, IngestConfig(fetch_max_attempts=3), retry_sleep=no_sleep)

    with pytest.raises(TransientFetchError):
        ingestor.pull(None)
    assert archive.calls == 3


def test_jsonl_archive_source(tmp_path):
    dump = tmp_path / "dandisets.jsonl"
    lines = [
        json.dumps({"id": "000001", "version": "draft", "name": "Rat olfactory bulb"}),
        json.dumps({"id": "000002", "version": "draft", "name": "Mouse visual cortex"}),
        "{not json",
        json.dumps({"op": "delete", "id": "000001"}),
        json.dumps({"id": "000003", "version": "draft", "name": "Rat hippocampus"}),
    ]
    dump.write_text("\n".join(lines) + "\n", encoding="utf-8")
    ingestor = CorpusIngestor(JsonlArchiveSource(dump))

    full = ingestor.pull(None)
    assert sorted(c.record_id for c in full.changes) == ["000002", "000003"]
    assert full.failed == 1
    assert full.cursor == "5"

    tail = ingestor.pull("3")
    assert [(c.record_id, c.op) for c in tail.changes] == [
        ("000001", ChangeOp.DELETE),
        ("000003", ChangeOp.UPSERT),
    ]

    with pytest.raises(ValueError):
        ingestor.pull("not-a-cursor")
