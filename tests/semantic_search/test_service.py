"""Query processing and the public search boundary."""

from __future__ import annotations

import logging
import threading
from http import HTTPStatus

import numpy as np
import pytest

from DandiSearch.SemanticSearch.api import SemanticSearchAPI
from DandiSearch.SemanticSearch.config import DenseIndexConfig, EmbeddingConfig, QueryConfig
from DandiSearch.SemanticSearch.corpus import Corpus
from DandiSearch.SemanticSearch.embedding import EmbeddingGenerator, ModelRegistry
from DandiSearch.SemanticSearch.errors import (
    InvalidQueryError,
    ModelMismatchError,
    SearchTimeoutError,
)
from DandiSearch.SemanticSearch.ingest import CorpusIngestor
from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
from DandiSearch.SemanticSearch.ranking import PayloadTieBreakReranker
from DandiSearch.SemanticSearch.service import SemanticSearchService
from DandiSearch.SemanticSearch.types import IndexEntry, SearchHit
from DandiSearch.SemanticSearch.vectorstore import VectorIndex

from search_support import DIM, ScriptedProvider, no_sleep

# Wide enough that unrelated texts stay near orthogonal under the hashing embedder
SCENARIO_DIM = 384


@pytest.fixture
def make_service(archive):
    generators = []

    def factory(provider=None, *, dim=SCENARIO_DIM, query_config=None, model_version=None):
        provider = provider or HashingEmbeddingProvider(dim=dim)
        generator = EmbeddingGenerator(
            provider, EmbeddingConfig(dim=dim, batch_size=8), retry_sleep=no_sleep
        )
        generators.append(generator)
        corpus = Corpus()
        corpus.replace_all(change.record for change in CorpusIngestor(archive).pull(None).changes)
        outcome = generator.embed_records(corpus.records())
        index = VectorIndex(
            dim,
            DenseIndexConfig(index_type="flat", shards=4),
            model_version=model_version or generator.model_version.tag,
        )
        index.rebuild(
            IndexEntry(rid, embedding.vector, corpus.get(rid).payload)
            for rid, embedding in outcome.embeddings.items()
        )
        return SemanticSearchService(index, generator, query_config)

    yield factory
    for generator in generators:
        generator.close()


def _blocking_queries(release: threading.Event) -> ScriptedProvider:
    def hook(texts):
        if any(text.startswith("query:") for text in texts):
            release.wait(5.0)

    return ScriptedProvider(dim=SCENARIO_DIM, hook=hook)


@pytest.mark.parametrize(
    "query, top_k, filters",
    [
        ("", None, None),
        ("   \n\t", None, None),
        (None, None, None),
        (42, None, None),
        ("x" * 1025, None, None),
        ("rat", 0, None),
        ("rat", 1001, None),
        ("rat", True, None),
        ("rat", "5", None),
        ("rat", None, ["species"]),
    ],
)
def test_invalid_queries_are_rejected(make_service, query, top_k, filters):
    service = make_service()

    with pytest.raises(InvalidQueryError):
        service.search(query, top_k, filters)


def test_empty_index_returns_no_results(generator):
    index = VectorIndex(DIM, DenseIndexConfig(index_type="flat"), model_version="hashing@1")

    assert SemanticSearchService(index, generator).search("rat hippocampus") == []


def test_olfactory_bulb_scenario(make_service):
    service = make_service()

    results = service.search("olfactory bulb rat")

    assert results[0] == "000001"
    assert sorted(results) == ["000001", "000002", "000003"]
    assert results.index("000003") < results.index("000002")
    assert service.search("olfactory bulb rat", top_k=1) == ["000001"]


def test_repeated_searches_are_identical(make_service):
    service = make_service()

    first = service.search("hippocampus", with_scores=True)
    second = service.search("hippocampus", with_scores=True)

    assert first == second


def test_filters_narrow_results(make_service):
    service = make_service()

    results = service.search("olfactory bulb rat", filters={"species": "Rattus norvegicus"})

    assert results[0] == "000001"
    assert set(results) == {"000001", "000003"}


def test_scores_are_ordered_and_bounded(make_service):
    service = make_service()

    hits = service.search("visual cortex imaging", with_scores=True)

    assert hits[0].record_id == "000002"
    assert hits[0].payload["name"] == "Visual cortex imaging in mouse"
    scores = [hit.score for hit in hits]
    assert scores == sorted(scores, reverse=True)
    assert all(-1.0 <= score <= 1.0 for score in scores)


def test_tie_break_reranker_uses_payload(generator):
    index = VectorIndex(DIM, DenseIndexConfig(index_type="flat", shards=2), model_version="hashing@1")
    shared = np.ones(DIM, dtype=np.float32)
    index.upsert("000001", shared, {"modified": "2021-01-01"})
    index.upsert("000002", shared, {"modified": "2023-01-01"})
    index.upsert("000003", shared, {})
    index.upsert("000004", shared, {"modified": "2022-01-01"})

    plain = SemanticSearchService(index, generator).search("anything")
    reranked = SemanticSearchService(
        index, generator, QueryConfig(rerank_field="modified")
    ).search("anything")

    assert plain == ["000001", "000002", "000003", "000004"]
    assert reranked == ["000002", "000004", "000001", "000003"]


def test_reranker_never_crosses_score_groups():
    hits = [
        SearchHit("a", 0.9, {"rank": 1}),
        SearchHit("b", 0.5, {"rank": 9}),
        SearchHit("c", 0.5, {"rank": 3}),
        SearchHit("d", 0.1, {"rank": 99}),
    ]

    ascending = PayloadTieBreakReranker("rank", descending=False).rerank(hits)

    assert [hit.record_id for hit in ascending] == ["a", "c", "b", "d"]


def test_query_uses_index_model_version(archive):
    registry = ModelRegistry(HashingEmbeddingProvider(dim=SCENARIO_DIM))
    registry.register(HashingEmbeddingProvider(dim=SCENARIO_DIM, revision="2"))
    with EmbeddingGenerator(registry, EmbeddingConfig(dim=SCENARIO_DIM)) as generator:
        records = [change.record for change in CorpusIngestor(archive).pull(None).changes]
        outcome = generator.embed_records(records)
        index = VectorIndex(SCENARIO_DIM, DenseIndexConfig(index_type="flat"), model_version="hashing@1")
        index.rebuild(IndexEntry(rid, e.vector) for rid, e in outcome.embeddings.items())
        service = SemanticSearchService(index, generator)
        before = service.search("olfactory bulb rat", with_scores=True)

        registry.advance("hashing@2")
        after = service.search("olfactory bulb rat", with_scores=True)

    assert [hit.record_id for hit in after] == [hit.record_id for hit in before]
    assert [hit.score for hit in after] == pytest.approx([hit.score for hit in before])


def test_unregistered_index_model_falls_back_to_current(make_service, caplog):
    service = make_service(model_version="retired@0")

    with caplog.at_level(logging.WARNING):
        results = service.search("olfactory bulb rat")

    assert results[0] == "000001"
    assert any(record.getMessage() == "search-model-unregistered" for record in caplog.records)


def test_index_of_another_vector_size_is_rejected(generator, caplog):
    index = VectorIndex(DIM // 2, DenseIndexConfig(index_type="flat"), model_version="retired@0")
    index.upsert("000001", np.ones(DIM // 2, dtype=np.float32))
    service = SemanticSearchService(index, generator)

    with pytest.raises(ModelMismatchError):
        service.search("olfactory bulb rat")

    api = SemanticSearchAPI(service)
    with caplog.at_level(logging.ERROR):
        assert api.dandi_semantic_search("olfactory bulb rat") == []
    status, body = api.post_search({"query": "olfactory bulb rat"})
    assert status == HTTPStatus.SERVICE_UNAVAILABLE
    assert "retired@0" in body["error"]


def test_search_timeout(make_service):
    release = threading.Event()
    service = make_service(_blocking_queries(release))
    try:
        with pytest.raises(SearchTimeoutError):
            service.search("olfactory bulb", timeout=0.05)
        with pytest.raises(InvalidQueryError):
            service.search("olfactory bulb", timeout=0)
    finally:
        release.set()


def test_api_returns_ids(make_service):
    api = SemanticSearchAPI(make_service())

    assert api.dandi_semantic_search("olfactory bulb rat")[0] == "000001"
    with pytest.raises(InvalidQueryError):
        api.dandi_semantic_search("   ")


def test_api_degrades_to_empty_results_on_provider_failure(make_service, caplog):
    api = SemanticSearchAPI(make_service(ScriptedProvider(dim=SCENARIO_DIM, fail_texts=["poison"])))

    with caplog.at_level(logging.ERROR):
        assert api.dandi_semantic_search("poison") == []

    assert any(record.getMessage() == "search-degraded" for record in caplog.records)


def test_api_rejects_non_service():
    with pytest.raises(TypeError):
        SemanticSearchAPI(object())


def test_post_search_payloads(make_service):
    api = SemanticSearchAPI(make_service())

    status, body = api.post_search({"query": "olfactory bulb rat", "top_k": 2})
    assert status == HTTPStatus.OK
    assert body["results"][0] == "000001"
    assert len(body["results"]) == 2

    status, body = api.post_search(
        {"query": "rat", "with_scores": True, "filters": {"species": ["Rattus norvegicus"]}}
    )
    assert status == HTTPStatus.OK
    assert {hit["id"] for hit in body["results"]} == {"000001", "000003"}
    assert all({"id", "score", "payload"} <= set(hit) for hit in body["results"])

    assert api.post_search({"top_k": 3})[0] == HTTPStatus.BAD_REQUEST
    assert api.post_search({"query": "rat", "top_k": "many"})[0] == HTTPStatus.BAD_REQUEST
    assert api.post_search({"query": ""})[0] == HTTPStatus.BAD_REQUEST
    assert api.post_search(["rat"])[0] == HTTPStatus.BAD_REQUEST


def test_post_search_maps_failures_to_statuses(make_service):
    failing = SemanticSearchAPI(
        make_service(ScriptedProvider(dim=SCENARIO_DIM, fail_texts=["poison"]))
    )
    assert failing.post_search({"query": "poison"})[0] == HTTPStatus.SERVICE_UNAVAILABLE

    release = threading.Event()
    slow = SemanticSearchAPI(make_service(_blocking_queries(release)))
    try:
        status, body = slow.post_search({"query": "olfactory bulb", "timeout": 0.05})
    finally:
        release.set()
    assert status == HTTPStatus.GATEWAY_TIMEOUT
    assert "timed out" in body["error"]
