# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.service",
#   "purpose": "Query processor: validate, embed, retrieve, and rank",
#   "sections": [
#     {
#       "id": "semanticsearchservice",
#       "name": "SemanticSearchService",
#       "anchor": "class-semanticsearchservice",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Query processor for DANDI semantic search.

A search is stateless: it validates the request, takes the currently published
index generation, embeds the query with that generation's model version (so
query and document vectors always share a space), retrieves the nearest
records, and optionally applies a deterministic tie-break reranker. Nothing is
retained between calls, so concurrent searches never coordinate.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, List, Optional, Union

from .config import QueryConfig
from .embedding import EmbeddingGenerator
from .errors import (
    EmbeddingProviderError,
    InvalidQueryError,
    ModelMismatchError,
    SearchTimeoutError,
)
from .observability import Observability
from .ranking import PayloadTieBreakReranker, Reranker, order_hits
from .types import EmbeddingRole, SearchHit, SearchQuery
from .vectorstore import IndexSnapshot, VectorIndex

# --- Globals ---

__all__ = ("SemanticSearchService",)

logger = logging.getLogger(__name__)

SearchResult = Union[List[str], List[SearchHit]]


# --- Public Classes ---


class SemanticSearchService:
    """Execute semantic searches against a :class:`VectorIndex`.

    Attributes:
        index: Vector index serving published generations.
        generator: Embedding generator used for query vectors.
        config: Query validation limits and reranking defaults.
        reranker: Optional tie-break layer applied after similarity ranking.

    Examples:
        >>> from DandiSearch.SemanticSearch.config import DenseIndexConfig
        >>> from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
        >>> generator = EmbeddingGenerator(HashingEmbeddingProvider(dim=64))
        >>> index = VectorIndex(64, DenseIndexConfig(index_type="flat"),
        ...                     model_version=generator.model_version.tag)
        >>> SemanticSearchService(index, generator).search("rat hippocampus")
        []
    """

    def __init__(
        self,
        index: VectorIndex,
        generator: EmbeddingGenerator,
        config: Optional[QueryConfig] = None,
        *,
        reranker: Optional[Reranker] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self.index = index
        self.generator = generator
        self.config = config or QueryConfig()
        if reranker is None and self.config.rerank_field:
            reranker = PayloadTieBreakReranker(
                self.config.rerank_field,
                precision=self.config.rerank_precision,
                descending=self.config.rerank_descending,
            )
        self.reranker = reranker
        self._observability = observability or Observability()

    def validate(
        self,
        query_text: Any,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> SearchQuery:
        """Return a normalised :class:`SearchQuery` or raise ``InvalidQueryError``."""

        if not isinstance(query_text, str):
            raise InvalidQueryError("query must be a string")
        text = query_text.strip()
        if not text:
            raise InvalidQueryError("query must not be empty")
        if len(query_text) > self.config.max_query_chars:
            raise InvalidQueryError(
                f"query exceeds {self.config.max_query_chars} characters"
            )
        k = self.config.default_top_k if top_k is None else top_k
        if isinstance(k, bool) or not isinstance(k, int):
            raise InvalidQueryError("top_k must be an integer")
        if not 1 <= k <= self.config.max_top_k:
            raise InvalidQueryError(f"top_k must be between 1 and {self.config.max_top_k}")
        if filters is not None and not isinstance(filters, Mapping):
            raise InvalidQueryError("filters must be a mapping of payload field to value")
        return SearchQuery(text=text, top_k=k, filters=dict(filters) if filters else None)

    def search(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        with_scores: bool = False,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """Return the ids of the records most semantically similar to ``query_text``.

        Args:
            query_text: Free-text query.
            top_k: Number of results (defaults to ``QueryConfig.default_top_k``).
            filters: Optional payload filters applied before ranking.
            with_scores: Return :class:`SearchHit` objects instead of bare ids.
            timeout: Optional wall-clock budget in seconds for this call.

        Returns:
            Up to ``top_k`` ids (or hits) ordered by descending similarity with
            ascending id breaking ties; ``[]`` when the index is empty.

        Raises:
            InvalidQueryError: If the query, ``top_k`` or ``filters`` are invalid.
            SearchTimeoutError: If ``timeout`` elapses before results are ready.
            EmbeddingProviderError: If the query cannot be embedded.
            ModelMismatchError: If the query model's vectors do not match the index.
        """
        query = self.validate(query_text, top_k, filters)
        return self.search_query(query, with_scores=with_scores, timeout=timeout)

    def search_query(
        self,
        query: SearchQuery,
        *,
        with_scores: bool = False,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """Run an already validated :class:`SearchQuery`."""

        if timeout is not None and timeout <= 0:
            raise InvalidQueryError("timeout must be positive")
        deadline = time.monotonic() + timeout if timeout is not None else None
        metrics = self._observability.metrics
        metrics.increment("search_requests")
        snapshot = self.index.snapshot()
        if len(snapshot) == 0:
            metrics.increment("search_empty_index")
            return []

        start = time.perf_counter()
        with self._observability.trace("search", model=snapshot.model_version):
            vector = self._embed_query(query.text, snapshot, deadline)
            self._check_deadline(deadline, "index lookup")
            scored = snapshot.query(
                vector, query.top_k, query.filters, oversample=self.index.config.oversample
            )
            hits = [
                SearchHit(record_id=rid, score=score, payload=self._payload(snapshot, rid))
                for rid, score in scored
            ]
            hits = self.reranker.rerank(hits) if self.reranker is not None else order_hits(hits)
            self._check_deadline(deadline, "ranking")
        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.observe("search_latency_ms", elapsed_ms)
        logger.debug(
            "search-complete",
            extra={
                "event": {
                    "generation": snapshot.generation,
                    "top_k": query.top_k,
                    "results": len(hits),
                    "filtered": bool(query.filters),
                    "elapsed_ms": round(elapsed_ms, 3),
                }
            },
        )
        if with_scores:
            return hits
        return [hit.record_id for hit in hits]

    # --- Internals ---

    def _embed_query(
        self, text: str, snapshot: IndexSnapshot, deadline: Optional[float]
    ) -> Any:
        model_version = snapshot.model_version
        if model_version not in self.generator.registry.versions():
            logger.warning(
                "search-model-unregistered",
                extra={
                    "event": {
                        "index_model": model_version,
                        "current": self.generator.model_version.tag,
                    }
                },
            )
            model_version = self.generator.model_version.tag
        model_dim = self.generator.registry.provider(model_version).model_version.dim
        if model_dim != snapshot.dim:
            raise ModelMismatchError(
                f"index holds {snapshot.dim}-dim vectors from {snapshot.model_version!r}; "
                f"query model {model_version!r} produces {model_dim}"
            )
        remaining = self._remaining(deadline, "query embedding")
        try:
            return self.generator.embed(
                text, EmbeddingRole.QUERY, model_version=model_version, timeout=remaining
            )
        except EmbeddingProviderError as exc:
            if deadline is not None and exc.category == "timeout":
                self._observability.metrics.increment("search_timeouts")
                raise SearchTimeoutError("search timed out while embedding the query") from exc
            raise

    def _remaining(self, deadline: Optional[float], stage: str) -> Optional[float]:
        if deadline is None:
            return None
        self._check_deadline(deadline, stage)
        return deadline - time.monotonic()

    def _check_deadline(self, deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            self._observability.metrics.increment("search_timeouts")
            raise SearchTimeoutError(f"search timed out before {stage}")

    @staticmethod
    def _payload(snapshot: IndexSnapshot, record_id: str) -> Mapping[str, Any]:
        entry = snapshot.get(record_id)
        return dict(entry.payload) if entry is not None else {}

