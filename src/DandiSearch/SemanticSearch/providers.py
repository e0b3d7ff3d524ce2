# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.providers",
#   "purpose": "Embedding provider implementations (deterministic hashing and HTTP)",
#   "sections": [
#     {
#       "id": "embeddingprovider",
#       "name": "EmbeddingProvider",
#       "anchor": "class-embeddingprovider",
#       "kind": "class"
#     },
#     {
#       "id": "hashingembeddingprovider",
#       "name": "HashingEmbeddingProvider",
#       "anchor": "class-hashingembeddingprovider",
#       "kind": "class"
#     },
#     {
#       "id": "httpembeddingprovider",
#       "name": "HttpEmbeddingProvider",
#       "anchor": "class-httpembeddingprovider",
#       "kind": "class"
#     },
#     {
#       "id": "build-provider",
#       "name": "build_provider",
#       "anchor": "function-build-provider",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Embedding providers turning already-templated text into dense vectors.

Providers are pure functions of their input text: the same model version and
text always produce the same vector. Templates, batching, concurrency, retries
and caching live in :mod:`DandiSearch.SemanticSearch.embedding`; providers only
implement ``embed_batch``.

- :class:`HashingEmbeddingProvider` hashes each token with SHA-256 into a
  signed ``dim``-sized block and sums the blocks into an L2-normalised vector.
  Texts that share tokens land close together in cosine space, which makes it
  a deterministic stand-in for a neural model in tests, offline runs, and
  validation harnesses.
- :class:`HttpEmbeddingProvider` calls a Text Embeddings Inference or
  OpenAI-compatible ``/embeddings`` endpoint through :mod:`httpx`.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np
from numpy.typing import NDArray

from .config import EmbeddingConfig
from .errors import EmbeddingProviderError
from .tokenization import tokenize
from .types import ModelVersion

__all__ = (
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "HttpEmbeddingProvider",
    "build_provider",
    "normalize_rows",
)

logger = logging.getLogger(__name__)


def normalize_rows(matrix: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return ``matrix`` with each row scaled to unit L2 norm.

    Rows with zero norm are left as zeros.
    """

    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return (matrix / safe).astype(np.float32, copy=False)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Interface for dense embedding providers."""

    name: str
    model_version: ModelVersion

    def embed_batch(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """Return an ``(len(texts), dim)`` float32 matrix of raw vectors."""

    def close(self) -> None:
        """Release any network or device resources held by the provider."""


class HashingEmbeddingProvider:
    """Deterministic SHA-256 token hashing embedder.

    Every token maps to a ``dim``-length block built from counter-salted
    SHA-256 digests with bytes mapped to ``[-1, 1]``; the blocks are summed
    and L2-normalised.
    Signed components keep unrelated texts near orthogonal, so cosine
    similarity is dominated by shared vocabulary.

    Examples:
        >>> provider = HashingEmbeddingProvider(dim=64)
        >>> matrix = provider.embed_batch(["rat olfactory bulb", "rat olfactory bulb"])
        >>> bool(np.allclose(matrix[0], matrix[1]))
        True
    """

    def __init__(self, *, dim: int = 384, name: str = "hashing", revision: str = "1") -> None:
        self.model_version = ModelVersion(name=name, revision=revision, dim=dim)
        self.name = name
        self._dim = dim
        self._blocks = -(-dim // hashlib.sha256().digest_size)

    @property
    def dim(self) -> int:
        """Return the embedding dimensionality."""
        return self._dim

    def embed_batch(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """Embed ``texts`` deterministically."""

        matrix = np.zeros((len(texts), self._dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in tokenize(text):
                matrix[row] += self._hash_to_vector(token)
        return normalize_rows(matrix)

    def close(self) -> None:
        """Nothing to release."""

    def _hash_to_vector(self, token: str) -> NDArray[np.float32]:
        # Salt with the revision so model migrations yield a different space
        salt = self.model_version.revision
        digests = b"".join(
            hashlib.sha256(f"{salt}:{block}:{token}".encode("utf-8")).digest()
            for block in range(self._blocks)
        )
        chunk = np.frombuffer(digests, dtype=np.uint8)[: self._dim]
        return chunk.astype(np.float32) / 127.5 - 1.0


class HttpEmbeddingProvider:
    """HTTP-based dense embedding provider compatible with TEI deployments.

    Request body: ``{"inputs": [...], "model": name}``. Accepted responses are a
    bare list of vectors, ``{"embeddings": [...]}``, or the OpenAI-style
    ``{"data": [{"embedding": [...]}, ...]}``.

    Errors map onto :class:`EmbeddingProviderError` categories: transport
    failures and 5xx/429 responses are ``network`` and retryable, timeouts are
    ``timeout`` and retryable, other 4xx and malformed payloads are
    ``validation`` and not retryable.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not config.endpoint_url:
            raise EmbeddingProviderError(
                "endpoint_url must be provided",
                provider="http",
                category="validation",
                retryable=False,
            )
        self.model_version = config.model_version()
        self.name = f"http:{config.model_name}"
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=config.endpoint_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            limits=httpx.Limits(
                max_connections=config.max_concurrency,
                max_keepalive_connections=config.max_concurrency,
            ),
            headers=dict(config.headers),
        )

    def close(self) -> None:
        """Close the underlying HTTP client if this provider created it."""
        if self._owns_client:
            self._client.close()

    def embed_batch(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """POST ``texts`` to the endpoint and return the decoded matrix."""

        if not texts:
            return np.zeros((0, self.model_version.dim), dtype=np.float32)
        body = {"inputs": list(texts), "model": self._config.model_name}
        try:
            response = self._client.post("", json=body)
        except httpx.TimeoutException as exc:
            raise EmbeddingProviderError(
                f"request timed out: {exc}", provider=self.name, category="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(
                f"request failed: {exc}", provider=self.name, category="network"
            ) from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise EmbeddingProviderError(
                f"endpoint returned {response.status_code}", provider=self.name, category="network"
            )
        if response.status_code >= 400:
            raise EmbeddingProviderError(
                f"endpoint returned {response.status_code}: {response.text}",
                provider=self.name,
                category="validation",
                retryable=False,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError(
                "failed to decode response as JSON",
                provider=self.name,
                category="validation",
                retryable=False,
            ) from exc
        return self._decode(payload, expected=len(texts))

    def _decode(self, payload: Any, *, expected: int) -> NDArray[np.float32]:
        vectors_raw: List[Any]
        if isinstance(payload, dict) and isinstance(payload.get("embeddings"), list):
            vectors_raw = payload["embeddings"]
        elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
            vectors_raw = []
            for item in payload["data"]:
                if not isinstance(item, dict) or "embedding" not in item:
                    raise self._invalid("data entries must include an 'embedding' list")
                vectors_raw.append(item["embedding"])
        elif isinstance(payload, list):
            vectors_raw = payload
        else:
            raise self._invalid("response did not contain a list of vectors")
        if len(vectors_raw) != expected:
            raise self._invalid(f"expected {expected} vectors, received {len(vectors_raw)}")
        try:
            matrix = np.asarray(vectors_raw, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise self._invalid(f"vectors are not numeric: {exc}") from exc
        if matrix.ndim != 2 or matrix.shape[1] != self.model_version.dim:
            raise self._invalid(
                f"expected vectors of dim {self.model_version.dim}, received shape {matrix.shape}"
            )
        if not np.all(np.isfinite(matrix)):
            raise self._invalid("vectors contain non-finite values")
        return matrix

    def _invalid(self, detail: str) -> EmbeddingProviderError:
        return EmbeddingProviderError(
            detail, provider=self.name, category="validation", retryable=False
        )


def build_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Instantiate the provider named by ``config.provider``."""

    if config.provider == "hashing":
        return HashingEmbeddingProvider(
            dim=config.dim, name=config.model_name, revision=config.model_revision
        )
    if config.provider == "http":
        return HttpEmbeddingProvider(config)
    raise ValueError(f"Unsupported embedding provider: {config.provider!r}")
