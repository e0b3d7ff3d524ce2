# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch",
#   "purpose": "Semantic search public API facade",
#   "sections": []
# }
# === /NAVMAP ===

"""
DandiSearch.SemanticSearch answers free-text questions about DANDI archive
metadata ("olfactory bulb recordings in rats") with the ids of the most
semantically similar dandisets. It keeps an authoritative corpus of
normalised records, embeds them with a versioned model, serves nearest
neighbour queries from immutable FAISS-backed index generations, and
refreshes everything from the archive on a schedule.

Core modules and how they interrelate:

- ``archive`` and ``ingest`` pull raw change feeds (JSONL dumps, or the
  ``devtools`` simulator) and normalise metadata into ``types.Record`` objects;
  ``corpus`` stores them and is the system of record everything else derives
  from.
- ``providers`` implement the embedding models (deterministic hashing, HTTP
  TEI/OpenAI-compatible endpoints); ``embedding`` wraps them with role
  templates, batching, a bounded worker pool, timeouts, retries
  (``retry``), rate limiting (``ratelimit``) and a digest-keyed cache, and
  tracks the current model in ``ModelRegistry``.
- ``vectorstore`` publishes generation-counted ``IndexSnapshot`` objects
  (base arena + per-shard overlays) so queries never block on writers, and
  handles integrity checks and persistence.
- ``service`` validates and executes queries, ``ranking`` adds the optional
  deterministic tie-break layer, and ``api`` is the public boundary.
- ``scheduler`` runs refresh cycles (pull, embed, publish) with cooperative
  cancellation (``cancellation``) and bounded staleness tracking.
- ``config``, ``observability``, ``logging_utils`` and ``errors`` carry the
  shared configuration, metrics/tracing, structured logging and exception
  hierarchy; ``validation`` and ``cli`` provide the recall harness and the
  ``dandisearch`` command.
"""

from __future__ import annotations

# --- Globals ---

__all__ = (
    "ArchiveSource",
    "Corpus",
    "CorpusIngestor",
    "EmbeddingGenerator",
    "EmbeddingProviderError",
    "HashingEmbeddingProvider",
    "HttpEmbeddingProvider",
    "IndexCorruptionError",
    "InvalidQueryError",
    "JsonlArchiveSource",
    "ModelRegistry",
    "Observability",
    "PartialIngestionError",
    "RefreshScheduler",
    "SearchHit",
    "SemanticSearchAPI",
    "SemanticSearchConfig",
    "SemanticSearchConfigManager",
    "SemanticSearchError",
    "SemanticSearchService",
    "TransientFetchError",
    "VectorIndex",
    "load_index",
    "save_index",
)


# --- Re-exports ---

from .api import SemanticSearchAPI
from .archive import ArchiveSource, JsonlArchiveSource
from .config import SemanticSearchConfig, SemanticSearchConfigManager
from .corpus import Corpus
from .embedding import EmbeddingGenerator, ModelRegistry
from .errors import (
    EmbeddingProviderError,
    IndexCorruptionError,
    InvalidQueryError,
    PartialIngestionError,
    SemanticSearchError,
    TransientFetchError,
)
from .ingest import CorpusIngestor
from .observability import Observability
from .providers import HashingEmbeddingProvider, HttpEmbeddingProvider
from .scheduler import RefreshScheduler
from .service import SemanticSearchService
from .types import SearchHit
from .vectorstore import VectorIndex, load_index, save_index
