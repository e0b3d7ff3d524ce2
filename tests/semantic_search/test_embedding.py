"""Embedding generator behaviour: templates, caching, retries, isolation, models."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from DandiSearch.SemanticSearch.cancellation import CancellationToken, RefreshCancelled
from DandiSearch.SemanticSearch.config import EmbeddingConfig
from DandiSearch.SemanticSearch.embedding import EmbeddingCache, EmbeddingGenerator, ModelRegistry
from DandiSearch.SemanticSearch.errors import EmbeddingProviderError
from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
from DandiSearch.SemanticSearch.ratelimit import RateSpec, parse_rate_string
from DandiSearch.SemanticSearch.types import Embedding, EmbeddingRole, ModelVersion, Record

from search_support import DIM, ScriptedProvider, no_sleep


def _generator(provider, **overrides) -> EmbeddingGenerator:
    params = {"dim": DIM, "batch_size": 4, "max_concurrency": 2, "timeout_seconds": 5.0}
    params.update(overrides)
    return EmbeddingGenerator(provider, EmbeddingConfig(**params), retry_sleep=no_sleep)


def _records(*texts: str):
    return [Record(f"{i:06d}", "1", text) for i, text in enumerate(texts, start=1)]


class _ZeroProvider:
    name = "zero"
    model_version = ModelVersion("zero", "1", DIM)

    def embed_batch(self, texts):
        return np.zeros((len(texts), DIM), dtype=np.float32)

    def close(self):
        pass


def test_embeddings_are_deterministic_unit_vectors(generator):
    first = generator.embed("rat olfactory bulb", EmbeddingRole.QUERY)
    second = generator.embed("rat olfactory bulb", EmbeddingRole.QUERY)

    assert first.dtype == np.float32
    assert first.shape == (DIM,)
    assert np.array_equal(first, second)
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)


def test_role_templates_change_the_embedded_text(generator):
    assert generator.apply_template("rat", EmbeddingRole.QUERY) == "query: rat"
    assert generator.apply_template("rat", EmbeddingRole.DOCUMENT) == "passage: rat"

    query = generator.embed("rat olfactory bulb", EmbeddingRole.QUERY)
    document = generator.embed("rat olfactory bulb", EmbeddingRole.DOCUMENT)
    assert not np.allclose(query, document)


def test_embed_many_preserves_order_across_batches(generator):
    texts = [f"dataset number {i}" for i in range(11)]

    batched = generator.embed_many(texts)

    for text, vector in zip(texts, batched):
        assert np.allclose(vector, generator.embed(text))


def test_cache_skips_unchanged_records():
    provider = ScriptedProvider()
    with _generator(provider) as gen:
        records = _records("rat olfactory bulb", "mouse visual cortex")
        gen.embed_records(records)
        seen = len(provider.texts_seen)

        again = gen.embed_records(records)
        assert len(provider.texts_seen) == seen
        assert set(again.succeeded) == {"000001", "000002"}

        edited = [records[0], Record("000002", "2", "mouse visual cortex, revised")]
        gen.embed_records(edited)
        assert provider.texts_seen[seen:] == ["passage: mouse visual cortex, revised"]
        assert len(gen.cache) == 2


def test_retryable_failures_are_retried():
    provider = ScriptedProvider(transient_failures=2)
    with _generator(provider, max_attempts=3) as gen:
        vector = gen.embed("rat hippocampus")

    assert len(provider.calls) == 3
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)


def test_non_retryable_failures_are_not_retried():
    provider = ScriptedProvider(fail_texts=["poison"])
    with _generator(provider, max_attempts=5) as gen:
        with pytest.raises(EmbeddingProviderError) as excinfo:
            gen.embed("poison pill")

    assert excinfo.value.category == "validation"
    assert len(provider.calls) == 1


def test_failing_record_is_isolated_and_reported_stale():
    provider = ScriptedProvider(fail_texts=["poison"])
    records = _records("rat olfactory bulb", "poison record", "mouse visual cortex", "zebrafish")
    with _generator(provider) as gen:
        outcome = gen.embed_records(records)

    assert list(outcome.succeeded) == ["000001", "000003", "000004"]
    assert list(outcome.stale) == ["000002"]
    assert "rejected text" in outcome.stale["000002"]
    for embedding in outcome.embeddings.values():
        assert embedding.model_version == "hashing@1"


def test_invalid_provider_output_is_rejected():
    with _generator(_ZeroProvider()) as gen:
        with pytest.raises(EmbeddingProviderError) as excinfo:
            gen.embed("anything")

    assert excinfo.value.retryable is False


def test_call_timeout_raises_timeout_category():
    release = threading.Event()
    provider = ScriptedProvider(hook=lambda texts: release.wait(5.0))
    gen = _generator(provider)
    try:
        with pytest.raises(EmbeddingProviderError) as excinfo:
            gen.embed("slow query", EmbeddingRole.QUERY, timeout=0.05)
        assert excinfo.value.category == "timeout"
        assert len(provider.calls) == 1
    finally:
        release.set()
        gen.close()


def test_cancelled_token_aborts_record_embedding(generator):
    token = CancellationToken()
    token.cancel("shutdown")

    with pytest.raises(RefreshCancelled):
        generator.embed_records(_records("rat"), cancel_token=token)


def test_registry_advance_notifies_listeners():
    registry = ModelRegistry(HashingEmbeddingProvider(dim=DIM))
    events = []
    registry.subscribe(lambda previous, current: events.append((previous.tag, current.tag)))
    registry.register(HashingEmbeddingProvider(dim=DIM, revision="2"))

    registry.advance("hashing@2")
    registry.advance("hashing@2")

    assert events == [("hashing@1", "hashing@2")]
    assert registry.versions() == ("hashing@1", "hashing@2")
    with pytest.raises(LookupError):
        registry.advance("hashing@9")


def test_generator_embeds_with_explicit_model_version():
    registry = ModelRegistry(HashingEmbeddingProvider(dim=DIM))
    registry.register(HashingEmbeddingProvider(dim=DIM, revision="2"))
    with EmbeddingGenerator(registry, EmbeddingConfig(dim=DIM), retry_sleep=no_sleep) as gen:
        old = gen.embed("rat", model_version="hashing@1")
        registry.advance("hashing@2")
        new = gen.embed("rat")

        assert gen.model_version.tag == "hashing@2"
        assert not np.allclose(old, new)
        assert np.allclose(old, gen.embed("rat", model_version="hashing@1"))


def test_cache_eviction_and_model_retention():
    cache = EmbeddingCache()
    vector = np.ones(2, dtype=np.float32)

    cache.put(Embedding("a", "m@1", vector, "d"))
    cache.put(Embedding("a", "m@2", vector, "d"))
    cache.put(Embedding("b", "m@1", vector, "d"))

    assert cache.retain_model("m@2") == 2
    assert cache.evict("a") == 1
    assert len(cache) == 0


@pytest.mark.parametrize(
    "spec, expected",
    [
        ("10/second", RateSpec(10, 1000)),
        ("600 / min", RateSpec(600, 60_000)),
        ("5/h", RateSpec(5, 3_600_000)),
    ],
)
def test_parse_rate_string(spec, expected):
    parsed = parse_rate_string(spec)

    assert parsed == expected


@pytest.mark.parametrize("spec", ["ten/second", "10/fortnight", "0/second"])
def test_parse_rate_string_rejects_bad_specs(spec):
    with pytest.raises(ValueError):
        parse_rate_string(spec)


def test_rate_limited_generator_still_embeds():
    with _generator(HashingEmbeddingProvider(dim=DIM), rate_limit="1000/second") as gen:
        vectors = gen.embed_many(["a", "b", "c"])

    assert len(vectors) == 3
