# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.cli",
#   "purpose": "dandisearch command line: build, search, validate, refresh",
#   "sections": [
#     {
#       "id": "build",
#       "name": "build",
#       "anchor": "function-build",
#       "kind": "function"
#     },
#     {
#       "id": "search",
#       "name": "search",
#       "anchor": "function-search",
#       "kind": "function"
#     },
#     {
#       "id": "validate",
#       "name": "validate",
#       "anchor": "function-validate",
#       "kind": "function"
#     },
#     {
#       "id": "refresh",
#       "name": "refresh",
#       "anchor": "function-refresh",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""``dandisearch`` command line interface.

Commands:
- ``build`` - ingest a JSONL archive dump and write an index plus corpus file
- ``search`` - load an index and print the ids matching a query
- ``validate`` - check ANN recall and index integrity against exact search
- ``refresh`` - run refresh cycles against a JSONL dump and save the result

Results go to stdout; logs go to stderr (and optionally a JSONL log file).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np
import typer

from .archive import JsonlArchiveSource
from .config import SemanticSearchConfig, SemanticSearchConfigManager
from .corpus import Corpus
from .devtools import make_reference_corpus, perturbed_queries
from .embedding import EmbeddingGenerator
from .errors import InvalidQueryError, SemanticSearchError
from .ingest import CorpusIngestor
from .logging_utils import setup_logging
from .providers import build_provider
from .scheduler import RefreshScheduler
from .service import SemanticSearchService
from .types import IndexEntry
from .validation import SemanticSearchValidator
from .vectorstore import VectorIndex, load_index, save_index

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="dandisearch",
    help="Semantic search over DANDI archive metadata",
    no_args_is_help=True,
)


@dataclass
class _Context:
    config: SemanticSearchConfig


# ============================================================================
# Helper Functions
# ============================================================================


def _config(ctx: typer.Context) -> SemanticSearchConfig:
    state = ctx.obj
    return state.config if isinstance(state, _Context) else SemanticSearchConfig()


def _generator(config: SemanticSearchConfig) -> EmbeddingGenerator:
    return EmbeddingGenerator(build_provider(config.embedding), config.embedding)


def _corpus_path(index_path: Path) -> Path:
    return index_path.with_name(index_path.stem + ".corpus.json")


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(f"error: {message}", err=True)
    return typer.Exit(code=code)


def _parse_filters(values: List[str]) -> Optional[dict]:
    filters: dict = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"filter {item!r} must look like field=value")
        filters.setdefault(key, []).append(value)
    return {k: v[0] if len(v) == 1 else v for k, v in filters.items()} or None


# ============================================================================
# Commands
# ============================================================================


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="JSON or YAML configuration file"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    log_dir: Optional[Path] = typer.Option(
        None, "--log-dir", help="Directory for the rotating JSONL log file"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit console logs as JSON"),
) -> None:
    """Configure logging and load settings shared by every command."""
    setup_logging(level=log_level, log_dir=log_dir, json_console=json_logs)
    try:
        config = (
            SemanticSearchConfigManager(config_path).get()
            if config_path is not None
            else SemanticSearchConfig()
        )
    except (OSError, ValueError) as exc:
        raise _fail(f"could not load configuration: {exc}") from exc
    ctx.obj = _Context(config=config)


@app.command()
def build(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="JSONL archive dump"),
    output: Path = typer.Option(Path("dandisearch-index.json"), "--output", "-o"),
) -> None:
    """Ingest ARCHIVE, embed every record, and write a fresh index."""
    config = _config(ctx)
    ingestor = CorpusIngestor(JsonlArchiveSource(archive), config.ingest)
    with _generator(config) as generator:
        try:
            batch = ingestor.pull(None)
        except (SemanticSearchError, OSError, ValueError) as exc:
            raise _fail(f"could not read archive: {exc}") from exc
        corpus = Corpus()
        corpus.apply_all(batch.changes)
        corpus.set_cursor(batch.cursor)
        outcome = generator.embed_records(corpus.records())
        index = VectorIndex(
            generator.model_version.dim, config.dense, model_version=generator.model_version.tag
        )
        index.rebuild(
            IndexEntry(record.id, outcome.embeddings[record.id].vector, dict(record.payload))
            for record in corpus.records()
            if record.id in outcome.embeddings
        )
    save_index(index, output)
    corpus.save(_corpus_path(output))
    typer.echo(
        json.dumps(
            {
                "index": str(output),
                "records": len(corpus),
                "indexed": len(index),
                "stale": sorted(outcome.stale),
                "skipped": batch.failed,
                "model": index.model_version,
            }
        )
    )


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Free-text query"),
    index_path: Path = typer.Option(Path("dandisearch-index.json"), "--index", "-i"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Number of results"),
    filters: List[str] = typer.Option([], "--filter", "-f", help="Payload filter field=value"),
    scores: bool = typer.Option(False, "--scores", help="Print similarity scores"),
) -> None:
    """Print the ids of records most similar to QUERY."""
    config = _config(ctx)
    try:
        index = load_index(index_path, config.dense)
    except FileNotFoundError as exc:
        raise _fail(f"index not found: {index_path}") from exc
    except SemanticSearchError as exc:
        raise _fail(str(exc)) from exc
    with _generator(config) as generator:
        service = SemanticSearchService(index, generator, config.query)
        try:
            results = service.search(
                query, top_k, _parse_filters(filters), with_scores=scores
            )
        except InvalidQueryError as exc:
            raise _fail(str(exc), code=2) from exc
        except SemanticSearchError as exc:
            raise _fail(str(exc)) from exc
    for result in results:
        if scores:
            typer.echo(f"{result.record_id}\t{result.score:.6f}")
        else:
            typer.echo(result)


@app.command()
def validate(
    ctx: typer.Context,
    index_path: Optional[Path] = typer.Option(
        None, "--index", "-i", help="Saved index (default: generated reference corpus)"
    ),
    count: int = typer.Option(2000, "--count", help="Reference corpus size"),
    dim: int = typer.Option(64, "--dim", help="Reference vector dimension"),
    queries: int = typer.Option(100, "--queries", help="Number of perturbed queries"),
    k: int = typer.Option(10, "--k", help="Result depth"),
    seed: int = typer.Option(0, "--seed"),
    output: Optional[Path] = typer.Option(None, "--output", help="Report directory"),
) -> None:
    """Compare ANN results with exact search and check index integrity."""
    config = _config(ctx)
    if index_path is not None:
        try:
            index = load_index(index_path, config.dense)
        except (FileNotFoundError, SemanticSearchError) as exc:
            raise _fail(f"could not load index: {exc}") from exc
        stored = [np.asarray(entry.vector) for entry in index.snapshot().entries()]
        if not stored:
            raise _fail("index is empty")
        matrix = np.stack(stored)
    else:
        reference = make_reference_corpus(count, dim, seed=seed)
        index = VectorIndex(dim, config.dense, model_version="reference")
        index.rebuild(reference.entries)
        matrix = reference.matrix
    probe = perturbed_queries(matrix, queries, seed=seed + 1)
    summary = SemanticSearchValidator(index).run(probe, k=k, output_root=output)
    for report in summary.reports:
        status = "PASS" if report.passed else "FAIL"
        typer.echo(f"{status}\t{report.name}\t{json.dumps(dict(report.details))}")
    if not summary.passed:
        raise typer.Exit(code=1)


@app.command()
def refresh(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="JSONL archive dump"),
    index_path: Path = typer.Option(Path("dandisearch-index.json"), "--index", "-i"),
    ticks: int = typer.Option(1, "--ticks", min=1, help="Refresh cycles to run"),
    interval: float = typer.Option(0.0, "--interval", help="Seconds between cycles"),
) -> None:
    """Run refresh cycles against ARCHIVE and save the updated index and corpus."""
    config = _config(ctx)
    corpus_path = _corpus_path(index_path)
    corpus = Corpus.load(corpus_path) if corpus_path.exists() else Corpus()
    with _generator(config) as generator:
        if index_path.exists():
            try:
                index = load_index(index_path, config.dense)
            except SemanticSearchError as exc:
                logger.warning(
                    "refresh-index-unreadable",
                    extra={"event": {"path": str(index_path), "error": str(exc)}},
                )
                index = VectorIndex(generator.model_version.dim, config.dense)
                corpus.set_cursor(None)
        else:
            index = VectorIndex(generator.model_version.dim, config.dense)
        scheduler = RefreshScheduler(
            corpus,
            CorpusIngestor(JsonlArchiveSource(archive), config.ingest),
            generator,
            index,
            config.refresh,
        )
        failed = False
        for number in range(ticks):
            if number and interval > 0:
                time.sleep(interval)
            report = scheduler.tick()
            failed = not report.ok
            typer.echo(
                json.dumps(
                    {
                        "status": report.status,
                        "full": report.full,
                        "generation": report.generation,
                        "cursor": report.cursor,
                        "upserted": report.upserted,
                        "deleted": report.deleted,
                        "stale": sorted(report.stale),
                        "skipped": report.skipped,
                        "error": report.error,
                    }
                )
            )
    save_index(index, index_path)
    corpus.save(corpus_path)
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()
