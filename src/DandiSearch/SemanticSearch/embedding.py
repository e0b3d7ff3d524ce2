# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.embedding",
#   "purpose": "Embedding generator, model registry, and embedding cache",
#   "sections": [
#     {
#       "id": "modelregistry",
#       "name": "ModelRegistry",
#       "anchor": "class-modelregistry",
#       "kind": "class"
#     },
#     {
#       "id": "embeddingcache",
#       "name": "EmbeddingCache",
#       "anchor": "class-embeddingcache",
#       "kind": "class"
#     },
#     {
#       "id": "embeddinggenerator",
#       "name": "EmbeddingGenerator",
#       "anchor": "class-embeddinggenerator",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Embedding generation for records and queries.

``EmbeddingGenerator`` is the only component that calls embedding providers.
It applies the role template (``query: {text}`` / ``passage: {text}`` by
default) before embedding, splits work into ``batch_size`` batches, runs them
on a bounded worker pool, enforces a per-call timeout, throttles provider calls
through an optional shared rate limiter, and retries retryable failures with
jittered exponential backoff. Every returned vector is unit L2-normalised and
tagged with the model version that produced it.

Record embedding isolates failures per record: a batch that still fails after
its retries is split and each record is embedded on its own, and records that
fail individually are reported as *stale* with the reason rather than dropped.

``ModelRegistry`` holds the explicit current model version (and the providers
for every registered version) so that migrations are an explicit
``advance()`` call rather than ambient global state. ``EmbeddingCache`` keeps
at most one embedding per ``(record_id, model_version)`` and skips re-embedding
records whose text digest is unchanged.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .cancellation import CancellationToken
from .config import EmbeddingConfig
from .errors import EmbeddingProviderError
from .observability import Observability
from .providers import EmbeddingProvider, normalize_rows
from .ratelimit import ProviderRateLimiter
from .retry import create_embedding_retry_policy
from .types import Embedding, EmbeddingOutcome, EmbeddingRole, ModelVersion, Record

__all__ = (
    "EmbeddingCache",
    "EmbeddingGenerator",
    "ModelListener",
    "ModelRegistry",
)

logger = logging.getLogger(__name__)

ModelListener = Callable[[Optional[ModelVersion], ModelVersion], None]


# --- Public Classes ---


class ModelRegistry:
    """Registry of embedding providers with an explicit current model version.

    Attributes:
        current: The model version new index generations should be built with.

    Examples:
        >>> from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
        >>> registry = ModelRegistry(HashingEmbeddingProvider(dim=32))
        >>> registry.current.tag
        'hashing@1'
        >>> _ = registry.register(HashingEmbeddingProvider(dim=32, revision="2"))
        >>> registry.advance("hashing@2").tag
        'hashing@2'
    """

    def __init__(self, provider: Optional[EmbeddingProvider] = None) -> None:
        self._lock = threading.RLock()
        self._providers: Dict[str, EmbeddingProvider] = {}
        self._current: Optional[ModelVersion] = None
        self._listeners: List[ModelListener] = []
        if provider is not None:
            self.register(provider)
            self.advance(provider.model_version)

    @property
    def current(self) -> ModelVersion:
        """Return the current model version."""
        with self._lock:
            if self._current is None:
                raise LookupError("no embedding model has been selected")
            return self._current

    def register(self, provider: EmbeddingProvider) -> ModelVersion:
        """Make ``provider`` available under its model version tag."""
        with self._lock:
            self._providers[provider.model_version.tag] = provider
            return provider.model_version

    def versions(self) -> Tuple[str, ...]:
        """Return registered model version tags in registration order."""
        with self._lock:
            return tuple(self._providers)

    def provider(self, model_version: Union[ModelVersion, str, None] = None) -> EmbeddingProvider:
        """Return the provider for ``model_version`` (default: current)."""
        tag = self._tag(model_version) if model_version is not None else self.current.tag
        with self._lock:
            try:
                return self._providers[tag]
            except KeyError:
                raise LookupError(f"embedding model {tag!r} is not registered") from None

    def advance(self, model_version: Union[ModelVersion, str]) -> ModelVersion:
        """Switch the current model to a registered version and notify listeners."""
        tag = self._tag(model_version)
        with self._lock:
            if tag not in self._providers:
                raise LookupError(f"embedding model {tag!r} is not registered")
            previous = self._current
            current = self._providers[tag].model_version
            self._current = current
            listeners = list(self._listeners)
        if previous is None or previous.tag != current.tag:
            logger.info(
                "embedding-model-advanced",
                extra={
                    "event": {
                        "previous": previous.tag if previous else None,
                        "current": current.tag,
                    }
                },
            )
            for listener in listeners:
                listener(previous, current)
        return current

    def subscribe(self, listener: ModelListener) -> None:
        """Register ``listener(previous, current)`` for model changes."""
        with self._lock:
            self._listeners.append(listener)

    def close(self) -> None:
        """Close every registered provider."""
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            provider.close()

    @staticmethod
    def _tag(model_version: Union[ModelVersion, str]) -> str:
        return model_version.tag if isinstance(model_version, ModelVersion) else str(model_version)


class EmbeddingCache:
    """At most one embedding per ``(record_id, model_version)``.

    Lookups also match on the text digest, so a record whose text changed is a
    miss and gets re-embedded; storing the new embedding replaces the old one.

    Examples:
        >>> cache = EmbeddingCache()
        >>> vec = np.ones(2, dtype=np.float32) / np.sqrt(2)
        >>> cache.put(Embedding("a", "m@1", vec, "d1"))
        >>> cache.get("a", "m@1", "d1") is not None, cache.get("a", "m@1", "d2")
        (True, None)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Embedding] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, record_id: str, model_version: str, digest: str) -> Optional[Embedding]:
        """Return the cached embedding when it was computed from ``digest``."""
        with self._lock:
            entry = self._entries.get((record_id, model_version))
        if entry is None or entry.text_digest != digest:
            return None
        return entry

    def put(self, embedding: Embedding) -> None:
        """Store ``embedding``, replacing any previous one for the same key."""
        with self._lock:
            self._entries[(embedding.record_id, embedding.model_version)] = embedding

    def evict(self, record_id: str) -> int:
        """Drop every model's embedding for ``record_id``; return the count removed."""
        with self._lock:
            keys = [key for key in self._entries if key[0] == record_id]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def retain_model(self, model_version: str) -> int:
        """Drop embeddings from every model other than ``model_version``."""
        with self._lock:
            keys = [key for key in self._entries if key[1] != model_version]
            for key in keys:
                del self._entries[key]
            return len(keys)


class EmbeddingGenerator:
    """Turn text into unit vectors using the registry's providers.

    Attributes:
        registry: Model registry resolving model versions to providers.
        config: Embedding configuration (templates, batching, limits).
        cache: Embedding cache shared across refresh cycles.

    Examples:
        >>> from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
        >>> generator = EmbeddingGenerator(HashingEmbeddingProvider(dim=32))
        >>> vector = generator.embed("rat olfactory bulb", EmbeddingRole.QUERY)
        >>> round(float(np.linalg.norm(vector)), 5)
        1.0
    """

    def __init__(
        self,
        registry: Union[ModelRegistry, EmbeddingProvider],
        config: Optional[EmbeddingConfig] = None,
        *,
        cache: Optional[EmbeddingCache] = None,
        observability: Optional[Observability] = None,
        rate_limiter: Optional[ProviderRateLimiter] = None,
        retry_sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if not isinstance(registry, ModelRegistry):
            registry = ModelRegistry(registry)
        self.registry = registry
        self.config = config or EmbeddingConfig(dim=registry.current.dim)
        self.cache = cache or EmbeddingCache()
        self._observability = observability or Observability()
        if rate_limiter is None and self.config.rate_limit:
            rate_limiter = ProviderRateLimiter.from_string(
                self.config.rate_limit, name=registry.current.name
            )
        self._rate_limiter = rate_limiter
        self._retry_sleep = retry_sleep
        workers = self.config.max_concurrency
        self._call_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed-call")
        self._dispatch_pool = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="embed-batch"
        )

    # --- Lifecycle ---

    def close(self) -> None:
        """Shut down the worker pools; in-flight calls are abandoned."""
        self._dispatch_pool.shutdown(wait=False, cancel_futures=True)
        self._call_pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> EmbeddingGenerator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def model_version(self) -> ModelVersion:
        """Return the registry's current model version."""
        return self.registry.current

    # --- Text embedding ---

    def apply_template(self, text: str, role: EmbeddingRole) -> str:
        """Return ``text`` wrapped in the template for ``role``."""
        template = (
            self.config.query_template
            if EmbeddingRole(role) is EmbeddingRole.QUERY
            else self.config.document_template
        )
        return template.replace("{text}", text)

    def embed(
        self,
        text: str,
        role: EmbeddingRole = EmbeddingRole.DOCUMENT,
        *,
        model_version: Union[ModelVersion, str, None] = None,
        timeout: Optional[float] = None,
    ) -> NDArray[np.float32]:
        """Embed one text and return a unit ``float32`` vector.

        Raises:
            EmbeddingProviderError: If the provider keeps failing or returns an
                unusable vector.
        """
        return self.embed_many([text], role, model_version=model_version, timeout=timeout)[0]

    def embed_many(
        self,
        texts: Sequence[str],
        role: EmbeddingRole = EmbeddingRole.DOCUMENT,
        *,
        model_version: Union[ModelVersion, str, None] = None,
        timeout: Optional[float] = None,
    ) -> List[NDArray[np.float32]]:
        """Embed ``texts`` in order; any failing batch raises.

        When ``timeout`` is given each batch gets a single attempt bounded by
        it instead of the configured per-call timeout and retry budget.

        Raises:
            EmbeddingProviderError: If any batch fails after retries.
        """
        provider = self.registry.provider(model_version)
        templated = [self.apply_template(text, role) for text in texts]
        vectors: List[NDArray[np.float32]] = []
        size = self.config.batch_size
        with self._observability.trace("embed_many", role=EmbeddingRole(role).value):
            for start in range(0, len(templated), size):
                batch = templated[start : start + size]
                if timeout is not None:
                    matrix = self._call_with_timeout(provider, batch, timeout)
                else:
                    matrix = self._embed_with_retry(provider, batch)
                vectors.extend(np.array(row, copy=True) for row in matrix)
        return vectors

    # --- Record embedding ---

    def embed_records(
        self,
        records: Sequence[Record],
        *,
        model_version: Union[ModelVersion, str, None] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EmbeddingOutcome:
        """Embed record texts with per-record failure isolation.

        Cached embeddings whose text digest matches are reused. Batches run in
        parallel on the worker pool.

        Returns:
            EmbeddingOutcome mapping record ids to embeddings (input order) and
            failed record ids to the reason they are stale.

        Raises:
            RefreshCancelled: If ``cancel_token`` is cancelled while batches
                are still pending.
        """
        provider = self.registry.provider(model_version)
        tag = provider.model_version.tag
        embeddings: Dict[str, Embedding] = {}
        stale: Dict[str, str] = {}
        pending: List[Record] = []
        for record in records:
            cached = self.cache.get(record.id, tag, record.digest)
            if cached is not None:
                embeddings[record.id] = cached
            else:
                pending.append(record)
        metrics = self._observability.metrics
        metrics.increment("embedding_cache_hits", float(len(embeddings)), model=tag)

        size = self.config.batch_size
        batches = [pending[start : start + size] for start in range(0, len(pending), size)]
        with self._observability.trace("embed_records", model=tag):
            futures: List[Future] = [
                self._dispatch_pool.submit(self._embed_record_batch, provider, batch, cancel_token)
                for batch in batches
            ]
            try:
                for future in futures:
                    done, failed = future.result()
                    for embedding in done:
                        self.cache.put(embedding)
                        embeddings[embedding.record_id] = embedding
                    stale.update(failed)
            finally:
                for future in futures:
                    future.cancel()

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        ordered = {record.id: embeddings[record.id] for record in records if record.id in embeddings}
        metrics.increment("records_embedded", float(len(ordered)), model=tag)
        if stale:
            metrics.increment("records_stale", float(len(stale)), model=tag)
            logger.error(
                "embedding-records-stale",
                extra={"event": {"model": tag, "count": len(stale), "record_ids": sorted(stale)}},
            )
        return EmbeddingOutcome(embeddings=ordered, stale=stale)

    # --- Internals ---

    def _embed_record_batch(
        self,
        provider: EmbeddingProvider,
        batch: Sequence[Record],
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[List[Embedding], Dict[str, str]]:
        if cancel_token is not None and cancel_token.is_cancelled():
            return [], {}
        texts = [self.apply_template(record.text, EmbeddingRole.DOCUMENT) for record in batch]
        try:
            matrix = self._embed_with_retry(provider, texts)
        except EmbeddingProviderError as exc:
            if len(batch) == 1:
                return [], {batch[0].id: str(exc)}
            logger.warning(
                "embedding-batch-split",
                extra={"event": {"size": len(batch), "error": str(exc)}},
            )
            done: List[Embedding] = []
            failed: Dict[str, str] = {}
            for record in batch:
                if cancel_token is not None and cancel_token.is_cancelled():
                    break
                single_done, single_failed = self._embed_record_batch(
                    provider, [record], cancel_token
                )
                done.extend(single_done)
                failed.update(single_failed)
            return done, failed
        tag = provider.model_version.tag
        return (
            [
                Embedding(
                    record_id=record.id,
                    model_version=tag,
                    vector=np.array(matrix[row], copy=True),
                    text_digest=record.digest,
                )
                for row, record in enumerate(batch)
            ],
            {},
        )

    def _embed_with_retry(
        self, provider: EmbeddingProvider, texts: Sequence[str]
    ) -> NDArray[np.float32]:
        policy = create_embedding_retry_policy(
            self.config.max_attempts,
            multiplier=self.config.backoff_multiplier,
            max_wait=self.config.backoff_max_seconds,
            sleep=self._retry_sleep,
        )
        for attempt in policy:
            with attempt:
                return self._call_with_timeout(provider, texts)
        raise AssertionError("unreachable: retry policy exhausted without raising")

    def _call_with_timeout(
        self,
        provider: EmbeddingProvider,
        texts: Sequence[str],
        timeout: Optional[float] = None,
    ) -> NDArray[np.float32]:
        metrics = self._observability.metrics
        limit = self.config.timeout_seconds if timeout is None else timeout
        future = self._call_pool.submit(self._invoke, provider, texts)
        try:
            raw = future.result(timeout=limit)
        except FutureTimeoutError:
            # The worker keeps running until the provider returns; only the wait is abandoned
            future.cancel()
            metrics.increment("embedding_errors", category="timeout")
            raise EmbeddingProviderError(
                f"embedding call exceeded {limit}s",
                provider=provider.name,
                category="timeout",
            ) from None
        except EmbeddingProviderError as exc:
            metrics.increment("embedding_errors", category=exc.category)
            raise
        return self._validate(provider, raw, expected=len(texts))

    def _invoke(self, provider: EmbeddingProvider, texts: Sequence[str]) -> NDArray[np.float32]:
        if self._rate_limiter is not None and not self._rate_limiter.acquire():
            raise EmbeddingProviderError(
                "rate limiter wait exceeded its maximum delay",
                provider=provider.name,
                category="network",
            )
        try:
            return provider.embed_batch(texts)
        except EmbeddingProviderError:
            raise
        except (ArithmeticError, LookupError, OSError, TypeError, ValueError) as exc:
            raise EmbeddingProviderError(
                f"provider raised {type(exc).__name__}: {exc}",
                provider=provider.name,
                category="runtime",
                retryable=isinstance(exc, OSError),
            ) from exc

    def _validate(
        self, provider: EmbeddingProvider, raw: NDArray[np.float32], *, expected: int
    ) -> NDArray[np.float32]:
        dim = provider.model_version.dim
        matrix = np.asarray(raw, dtype=np.float32)
        if matrix.shape != (expected, dim):
            raise EmbeddingProviderError(
                f"expected shape {(expected, dim)}, provider returned {matrix.shape}",
                provider=provider.name,
                category="validation",
                retryable=False,
            )
        if not np.all(np.isfinite(matrix)):
            raise EmbeddingProviderError(
                "provider returned non-finite values",
                provider=provider.name,
                category="validation",
                retryable=False,
            )
        if np.any(np.linalg.norm(matrix, axis=1) == 0.0):
            raise EmbeddingProviderError(
                "provider returned a zero vector",
                provider=provider.name,
                category="validation",
                retryable=False,
            )
        return normalize_rows(matrix)
