"""Test doubles and helpers shared by the semantic search suite."""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

import numpy as np

from DandiSearch.SemanticSearch.errors import EmbeddingProviderError
from DandiSearch.SemanticSearch.providers import HashingEmbeddingProvider
from DandiSearch.SemanticSearch.types import ModelVersion

DIM = 64


class ScriptedProvider:
    """Hashing provider whose failures tests can script per call or per text."""

    def __init__(
        self,
        *,
        dim: int = DIM,
        revision: str = "1",
        fail_texts: Sequence[str] = (),
        transient_failures: int = 0,
        hook: Optional[Callable[[Sequence[str]], None]] = None,
    ) -> None:
        self._inner = HashingEmbeddingProvider(dim=dim, revision=revision)
        self.model_version: ModelVersion = self._inner.model_version
        self.name = "scripted"
        self.fail_texts = tuple(fail_texts)
        self.transient_failures = transient_failures
        self.hook = hook
        self.calls: List[List[str]] = []

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if self.hook is not None:
            self.hook(texts)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise EmbeddingProviderError("flaky", provider=self.name, category="network")
        if any(marker in text for text in texts for marker in self.fail_texts):
            raise EmbeddingProviderError(
                "rejected text", provider=self.name, category="validation", retryable=False
            )
        return self._inner.embed_batch(texts)

    def close(self) -> None:
        pass

    @property
    def texts_seen(self) -> List[str]:
        return [text for call in self.calls for text in call]


def no_sleep(_: float) -> None:
    return None


def unit(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    return array / np.linalg.norm(array)
