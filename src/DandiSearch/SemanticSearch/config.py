# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.config",
#   "purpose": "Semantic search configuration models and manager",
#   "sections": [
#     {
#       "id": "ingestconfig",
#       "name": "IngestConfig",
#       "anchor": "class-ingestconfig",
#       "kind": "class"
#     },
#     {
#       "id": "embeddingconfig",
#       "name": "EmbeddingConfig",
#       "anchor": "class-embeddingconfig",
#       "kind": "class"
#     },
#     {
#       "id": "denseindexconfig",
#       "name": "DenseIndexConfig",
#       "anchor": "class-denseindexconfig",
#       "kind": "class"
#     },
#     {
#       "id": "queryconfig",
#       "name": "QueryConfig",
#       "anchor": "class-queryconfig",
#       "kind": "class"
#     },
#     {
#       "id": "refreshconfig",
#       "name": "RefreshConfig",
#       "anchor": "class-refreshconfig",
#       "kind": "class"
#     },
#     {
#       "id": "semanticsearchconfig",
#       "name": "SemanticSearchConfig",
#       "anchor": "class-semanticsearchconfig",
#       "kind": "class"
#     },
#     {
#       "id": "semanticsearchconfigmanager",
#       "name": "SemanticSearchConfigManager",
#       "anchor": "class-semanticsearchconfigmanager",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Configuration surface area for DandiSearch semantic search.

The dataclasses defined here describe every user-tunable aspect of the system:

- ``IngestConfig`` selects which raw metadata fields feed the normalised record
  text and how hard the ingestor retries transient archive failures.
- ``EmbeddingConfig`` names the embedding model (its ``name@revision`` tag is the
  model version stamped on every vector), the asymmetric query/document
  templates, batching, worker-pool sizing, rate limits, timeouts, and retries.
- ``DenseIndexConfig`` maps onto FAISS constructs: ``index_type`` selects
  ``IndexFlatIP``, ``IndexHNSWFlat`` or ``IndexIVFFlat``; ``hnsw_m``,
  ``ef_construction``/``ef_search`` and ``nlist``/``nprobe`` tune recall, while
  ``shards`` and ``compaction_threshold`` govern the generation overlay used for
  incremental writes.
- ``QueryConfig`` bounds query length and ``top_k`` and configures the optional
  payload tie-break reranker.
- ``RefreshConfig`` controls the refresh scheduler cadence and staleness bound.
- ``SemanticSearchConfig`` groups the five components into a single snapshot.

``SemanticSearchConfigManager`` is a thread-safe facade for loading JSON *and*
YAML configuration files, caching the current config and offering atomic
reloads.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Literal, Optional

import yaml

from .types import ModelVersion

# --- Globals ---

__all__ = (
    "DenseIndexConfig",
    "EmbeddingConfig",
    "IngestConfig",
    "QueryConfig",
    "RefreshConfig",
    "SemanticSearchConfig",
    "SemanticSearchConfigManager",
)

_DEFAULT_TEXT_FIELDS = (
    "name",
    "title",
    "description",
    "keywords",
    "about",
    "species",
    "approach",
    "measurement_technique",
)


# --- Public Classes ---


@dataclass(frozen=True)
class IngestConfig:
    """Configuration for pulling and normalising archive metadata.

    Key fields:
    - ``text_fields``: Raw metadata fields concatenated (in order) into ``Record.text``.
    - ``max_text_chars``: Hard cap on normalised text length (8000 default).
    - ``fetch_max_attempts``: Attempts per archive call before giving up.
    - ``fetch_backoff_multiplier`` / ``fetch_backoff_max_seconds``: Jittered
      exponential backoff controls.

    Examples:
        >>> IngestConfig(text_fields=("name", "description")).max_text_chars
        8000
    """

    text_fields: tuple[str, ...] = _DEFAULT_TEXT_FIELDS
    max_text_chars: int = 8000
    fetch_max_attempts: int = 5
    fetch_backoff_multiplier: float = 0.5
    fetch_backoff_max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if not self.text_fields:
            raise ValueError("IngestConfig.text_fields must not be empty")
        if self.max_text_chars <= 0:
            raise ValueError("IngestConfig.max_text_chars must be positive")
        if self.fetch_max_attempts < 1:
            raise ValueError("IngestConfig.fetch_max_attempts must be at least 1")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for the embedding generator and its provider.

    Key fields:
    - ``provider``: ``"hashing"`` (deterministic, offline) or ``"http"``
      (TEI / OpenAI-compatible endpoint at ``endpoint_url``).
    - ``model_name`` / ``model_revision`` / ``dim``: Model identity; the
      ``name@revision`` tag versions every embedding and index generation.
    - ``query_template`` / ``document_template``: Role templates; each must
      contain the ``{text}`` placeholder.
    - ``batch_size`` / ``max_concurrency`` / ``rate_limit``: Provider call shaping.
    - ``timeout_seconds`` / ``max_attempts``: Per-call timeout and retry budget.

    Examples:
        >>> EmbeddingConfig(dim=128).model_version().tag
        'hashing@1'
    """

    provider: Literal["hashing", "http"] = "hashing"
    model_name: str = "hashing"
    model_revision: str = "1"
    dim: int = 384
    query_template: str = "query: {text}"
    document_template: str = "passage: {text}"
    batch_size: int = 32
    max_concurrency: int = 4
    # pyrate-limiter rate string such as "10/second"; None disables throttling
    rate_limit: Optional[str] = None
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_multiplier: float = 0.5
    backoff_max_seconds: float = 10.0
    endpoint_url: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise ValueError("EmbeddingConfig.dim must be positive")
        for name in ("query_template", "document_template"):
            if "{text}" not in getattr(self, name):
                raise ValueError(f"EmbeddingConfig.{name} must contain '{{text}}'")
        if self.batch_size <= 0:
            raise ValueError("EmbeddingConfig.batch_size must be positive")
        if self.max_concurrency <= 0:
            raise ValueError("EmbeddingConfig.max_concurrency must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("EmbeddingConfig.timeout_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("EmbeddingConfig.max_attempts must be at least 1")
        if self.provider == "http" and not self.endpoint_url:
            raise ValueError("EmbeddingConfig.endpoint_url is required for provider='http'")

    def model_version(self) -> ModelVersion:
        """Return the :class:`ModelVersion` described by this configuration."""

        return ModelVersion(name=self.model_name, revision=self.model_revision, dim=self.dim)


@dataclass(frozen=True)
class DenseIndexConfig:
    """Configuration for the generation-based FAISS vector index.

    Key tunables include:
    - Index topology: ``index_type``, ``hnsw_m``, ``ef_construction``, ``ef_search``,
      ``nlist``, ``nprobe``.
    - ``min_ann_size``: Bases smaller than this use an exact flat index.
    - ``oversample``: Candidate multiplier applied before filtering/tombstones.
    - ``shards``: Number of id-hash shards; writes are serialised per shard.
    - ``compaction_threshold``: Overlay size that triggers merging into a fresh base.

    Examples:
        >>> DenseIndexConfig(index_type="flat").shards
        8
    """

    index_type: Literal["flat", "hnsw", "ivf_flat"] = "hnsw"
    hnsw_m: int = 32
    ef_construction: int = 200
    ef_search: int = 128
    nlist: int = 64
    nprobe: int = 16
    min_ann_size: int = 256
    oversample: int = 2
    shards: int = 8
    compaction_threshold: int = 1024
    # Allowed deviation of stored vector norms from 1.0 before verify() fails
    norm_tolerance: float = 1e-3

    def __post_init__(self) -> None:
        if self.index_type not in ("flat", "hnsw", "ivf_flat"):
            raise ValueError(f"Unsupported DenseIndexConfig.index_type: {self.index_type}")
        for name in ("hnsw_m", "ef_construction", "ef_search", "nlist", "nprobe", "shards"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"DenseIndexConfig.{name} must be positive")
        if self.oversample < 1:
            raise ValueError("DenseIndexConfig.oversample must be at least 1")
        if self.compaction_threshold < 0:
            raise ValueError("DenseIndexConfig.compaction_threshold must be non-negative")


@dataclass(frozen=True)
class QueryConfig:
    """Configuration for query validation and optional reranking.

    Key fields:
    - ``default_top_k`` / ``max_top_k``: Result count defaults and ceiling.
    - ``max_query_chars``: Longer queries are rejected with ``InvalidQueryError``.
    - ``rerank_field``: Payload field used as a deterministic tie-break layer
      (``None`` keeps plain cosine order with id tie-break).
    """

    default_top_k: int = 10
    max_top_k: int = 1000
    max_query_chars: int = 1024
    rerank_field: Optional[str] = None
    rerank_precision: int = 6
    rerank_descending: bool = True

    def __post_init__(self) -> None:
        if self.default_top_k <= 0:
            raise ValueError("QueryConfig.default_top_k must be positive")
        if self.max_top_k < self.default_top_k:
            raise ValueError("QueryConfig.max_top_k must be >= default_top_k")
        if self.max_query_chars <= 0:
            raise ValueError("QueryConfig.max_query_chars must be positive")


@dataclass(frozen=True)
class RefreshConfig:
    """Configuration for the background refresh scheduler."""

    interval_seconds: float = 300.0
    staleness_bound_seconds: float = 900.0
    verify_after_publish: bool = True

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("RefreshConfig.interval_seconds must be positive")
        if self.staleness_bound_seconds <= 0:
            raise ValueError("RefreshConfig.staleness_bound_seconds must be positive")


@dataclass(frozen=True)
class SemanticSearchConfig:
    """Complete configuration for semantic search operations.

    Components:
    - ``ingest``: Corpus ingestion configuration.
    - ``embedding``: Embedding generator configuration.
    - ``dense``: Vector index configuration.
    - ``query``: Query processor configuration.
    - ``refresh``: Refresh scheduler configuration.

    Examples:
        >>> config = SemanticSearchConfig(dense=DenseIndexConfig(index_type="flat"))
        >>> config.embedding.dim
        384
    """

    ingest: IngestConfig = IngestConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    dense: DenseIndexConfig = DenseIndexConfig()
    query: QueryConfig = QueryConfig()
    refresh: RefreshConfig = RefreshConfig()

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> SemanticSearchConfig:
        """Construct a config object from a dictionary payload.

        Args:
            payload: Nested mapping containing ``ingest``, ``embedding``, ``dense``,
                ``query`` and ``refresh`` sections compatible with dataclass fields.

        Returns:
            Fully populated ``SemanticSearchConfig`` instance.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(
                "SemanticSearchConfig.from_dict expected a mapping payload, "
                f"received {type(payload).__name__}"
            )

        def coerce_section(name: str) -> dict[str, Any]:
            section = payload.get(name)
            if section is None:
                return {}
            if not isinstance(section, Mapping):
                raise ValueError(
                    f"SemanticSearchConfig.{name} must be a mapping or null, "
                    f"received {type(section).__name__}"
                )
            return dict(section)

        ingest_payload = coerce_section("ingest")
        if "text_fields" in ingest_payload:
            ingest_payload["text_fields"] = tuple(ingest_payload["text_fields"])
        embedding_payload = coerce_section("embedding")
        # YAML/JSON configs commonly spell the model name as "model"
        if "model" in embedding_payload and "model_name" not in embedding_payload:
            embedding_payload["model_name"] = embedding_payload.pop("model")
        return SemanticSearchConfig(
            ingest=IngestConfig(**ingest_payload),
            embedding=EmbeddingConfig(**embedding_payload),
            dense=DenseIndexConfig(**coerce_section("dense")),
            query=QueryConfig(**coerce_section("query")),
            refresh=RefreshConfig(**coerce_section("refresh")),
        )


class SemanticSearchConfigManager:
    """File-backed configuration manager with reload support.

    Internals:
    - ``_path``: Path to the JSON/YAML configuration file.
    - ``_lock``: Threading lock guarding concurrent reloads.
    - ``_config``: Cached :class:`SemanticSearchConfig` instance.

    Examples:
        >>> manager = SemanticSearchConfigManager(Path("search.yaml"))  # doctest: +SKIP
        >>> isinstance(manager.get(), SemanticSearchConfig)  # doctest: +SKIP
        True
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = RLock()
        self._config = self._load()

    @property
    def path(self) -> Path:
        """Return the configuration file backing this manager."""

        return self._path

    def get(self) -> SemanticSearchConfig:
        """Return the currently cached semantic search configuration."""
        with self._lock:
            return self._config

    def reload(self) -> SemanticSearchConfig:
        """Reload configuration from disk, replacing the cached instance.

        Returns:
            Freshly loaded ``SemanticSearchConfig``.

        Raises:
            FileNotFoundError: If the configuration path is missing.
            ValueError: If the config file is invalid JSON or YAML.
        """
        with self._lock:
            self._config = self._load()
            return self._config

    def _load(self) -> SemanticSearchConfig:
        if not self._path.exists():
            raise FileNotFoundError(f"Configuration file {self._path} not found")
        raw = self._path.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = self._load_yaml(raw)
        return SemanticSearchConfig.from_dict(payload)

    def _load_yaml(self, raw: str) -> dict[str, Any]:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML configuration at {self._path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("YAML configuration must define a mapping")
        return data
