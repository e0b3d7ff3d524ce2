"""Shared fixtures for the semantic search suite."""

from __future__ import annotations

import pytest

from DandiSearch.SemanticSearch.config import DenseIndexConfig, EmbeddingConfig
from DandiSearch.SemanticSearch.devtools import ArchiveSimulator
from DandiSearch.SemanticSearch.embedding import EmbeddingGenerator
from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
from DandiSearch.SemanticSearch.vectorstore import VectorIndex

from search_support import DIM, no_sleep


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(dim=DIM, batch_size=4, max_concurrency=2, timeout_seconds=5.0)


@pytest.fixture
def generator(embedding_config: EmbeddingConfig):
    gen = EmbeddingGenerator(
        HashingEmbeddingProvider(dim=DIM), embedding_config, retry_sleep=no_sleep
    )
    yield gen
    gen.close()


@pytest.fixture
def flat_config() -> DenseIndexConfig:
    return DenseIndexConfig(index_type="flat", shards=4, compaction_threshold=0)


@pytest.fixture
def index(flat_config: DenseIndexConfig, generator: EmbeddingGenerator) -> VectorIndex:
    return VectorIndex(DIM, flat_config, model_version=generator.model_version.tag)


@pytest.fixture
def archive() -> ArchiveSimulator:
    sim = ArchiveSimulator()
    sim.put(
        {
            "identifier": "DANDI:000001",
            "version": "draft",
            "name": "Olfactory bulb recordings in rat",
            "keywords": ["olfaction"],
            "species": [{"name": "Rattus norvegicus"}],
            "dateModified": "2023-01-01",
        }
    )
    sim.put(
        {
            "id": "000002",
            "version": "0.230101.0000",
            "name": "Visual cortex imaging in mouse",
            "species": [{"name": "Mus musculus"}],
            "dateModified": "2023-02-01",
        }
    )
    sim.put(
        {
            "id": "000003",
            "version": "draft",
            "name": "Rat hippocampus electrophysiology",
            "species": [{"name": "Rattus norvegicus"}],
            "dateModified": "2023-03-01",
        }
    )
    return sim
