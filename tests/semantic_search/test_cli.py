"""End-to-end checks for the ``dandisearch`` command line."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from DandiSearch.SemanticSearch.cli import app
from DandiSearch.SemanticSearch.corpus import Corpus

runner = CliRunner()

RECORDS = [
    {
        "identifier": "DANDI:000001",
        "version": "draft",
        "name": "Olfactory bulb recordings in rat",
        "species": [{"name": "Rattus norvegicus"}],
    },
    {
        "id": "000002",
        "version": "draft",
        "name": "Visual cortex imaging in mouse",
        "species": [{"name": "Mus musculus"}],
    },
    {
        "id": "000003",
        "version": "draft",
        "name": "Hippocampal place cells in rat",
        "species": [{"name": "Rattus norvegicus"}],
    },
]


@pytest.fixture(autouse=True)
def restore_package_logger():
    logger = logging.getLogger("DandiSearch.SemanticSearch")
    level, propagate = logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if getattr(handler, "_dandisearch_managed", False):
            logger.removeHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def dump(tmp_path: Path) -> Path:
    path = tmp_path / "archive.jsonl"
    path.write_text("".join(json.dumps(record) + "\n" for record in RECORDS), encoding="utf-8")
    return path


def _invoke(*args: str):
    return runner.invoke(app, ["--log-level", "ERROR", *args])


def _json_lines(output: str):
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_build_writes_index_and_corpus(dump, tmp_path):
    target = tmp_path / "index.json"

    result = _invoke("build", str(dump), "-o", str(target))

    assert result.exit_code == 0, result.output
    (summary,) = _json_lines(result.stdout)
    assert summary["records"] == 3
    assert summary["indexed"] == 3
    assert summary["stale"] == []
    assert summary["model"] == "hashing@1"
    assert target.exists()
    corpus = Corpus.load(tmp_path / "index.corpus.json")
    assert corpus.ids() == ["000001", "000002", "000003"]
    assert corpus.cursor == "3"


def test_search_prints_ranked_ids(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))

    result = _invoke("search", "olfactory bulb rat", "-i", str(target))

    assert result.exit_code == 0, result.output
    lines = result.stdout.split()
    assert lines[0] == "000001"
    assert sorted(lines) == ["000001", "000002", "000003"]


def test_search_with_scores_and_filters(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))

    result = _invoke(
        "search", "rat", "-i", str(target), "-f", "species=Rattus norvegicus", "--scores"
    )

    assert result.exit_code == 0, result.output
    rows = [line.split("\t") for line in result.stdout.splitlines() if "\t" in line]
    assert {row[0] for row in rows} == {"000001", "000003"}
    scores = [float(row[1]) for row in rows]
    assert scores == sorted(scores, reverse=True)


def test_search_rejects_blank_query(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))

    result = _invoke("search", "   ", "-i", str(target))

    assert result.exit_code == 2


def test_search_reports_missing_index(tmp_path):
    result = _invoke("search", "rat", "-i", str(tmp_path / "absent.json"))

    assert result.exit_code == 1
    assert "index not found" in result.output


def test_search_reports_model_size_mismatch(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))
    config = tmp_path / "narrow.yaml"
    config.write_text("embedding:\n  dim: 128\n  model_revision: \"9\"\n", encoding="utf-8")

    result = runner.invoke(
        app, ["--log-level", "ERROR", "--config", str(config), "search", "rat", "-i", str(target)]
    )

    assert result.exit_code == 1
    assert "error:" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_search_rejects_malformed_filter(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))

    result = _invoke("search", "rat", "-i", str(target), "-f", "species")

    assert result.exit_code != 0


def test_missing_config_file_fails(tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "search", "rat"])

    assert result.exit_code == 1
    assert "could not load configuration" in result.output


def test_validate_reference_corpus(tmp_path):
    config = tmp_path / "search.yaml"
    config.write_text("dense:\n  index_type: flat\n", encoding="utf-8")
    reports = tmp_path / "reports"

    result = runner.invoke(
        app,
        [
            "--log-level",
            "ERROR",
            "--config",
            str(config),
            "validate",
            "--count",
            "300",
            "--dim",
            "16",
            "--queries",
            "10",
            "--output",
            str(reports),
        ],
    )

    assert result.exit_code == 0, result.output
    assert all(line.startswith("PASS") for line in result.stdout.splitlines() if line.strip())
    assert list(reports.glob("validation-*.json"))


def test_refresh_applies_new_records(dump, tmp_path):
    target = tmp_path / "index.json"
    _invoke("build", str(dump), "-o", str(target))
    with dump.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"id": "000004", "version": "draft", "name": "Zebrafish tectum"}))
        handle.write("\n")
        handle.write(json.dumps({"op": "delete", "id": "000002"}) + "\n")

    result = _invoke("refresh", str(dump), "-i", str(target))

    assert result.exit_code == 0, result.output
    (report,) = _json_lines(result.stdout)
    assert report["status"] == "published"
    assert report["full"] is False
    assert (report["upserted"], report["deleted"]) == (1, 1)
    assert report["cursor"] == "5"
    assert Corpus.load(tmp_path / "index.corpus.json").ids() == ["000001", "000003", "000004"]

    search = _invoke("search", "zebrafish tectum", "-i", str(target), "-k", "1")
    assert search.stdout.split() == ["000004"]


def test_refresh_without_index_builds_from_scratch(dump, tmp_path):
    target = tmp_path / "fresh.json"

    result = _invoke("refresh", str(dump), "-i", str(target), "--ticks", "2")

    assert result.exit_code == 0, result.output
    first, second = _json_lines(result.stdout)
    assert first["status"] == "published"
    assert first["full"] is True
    assert second["status"] == "noop"
    assert target.exists()
