"""Embedding services for negotiation similarity: OpenAI API or local lexical vectors."""

import hashlib
import logging
import math
import os
from abc import ABC, abstractmethod

from openai import AsyncOpenAI

from council.models import clamp_unit
from council.similarity import tokenize

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-large"


class EmbeddingError(Exception):
    """Raised when embeddings cannot be produced."""


class EmbeddingService(ABC):
    """Turns texts into vectors. Results are never cached across calls."""

    @abstractmethod
    async def batch_embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        ...

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        vectors = await self.batch_embed([text], model)
        return vectors[0]

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        if len(a) != len(b):
            raise EmbeddingError(f"Vector size mismatch: {len(a)} vs {len(b)}")
        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0 or norm_b == 0:
            return 0.0
        return clamp_unit(dot / (norm_a * norm_b))


class OpenAIEmbeddingService(EmbeddingService):
    """Embeddings from the OpenAI embeddings endpoint."""

    def __init__(self, api_key_env: str = "OPENAI_API_KEY", model: str = DEFAULT_EMBEDDING_MODEL) -> None:
        api_key = os.environ.get(api_key_env, "").strip()
        if not api_key:
            raise EmbeddingError(f"Missing API key: {api_key_env}")
        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model

    async def batch_embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        # The endpoint rejects empty strings
        inputs = [t if t.strip() else " " for t in texts]
        try:
            response = await self._client.embeddings.create(model=model or self._model, input=inputs)
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]


class LexicalEmbeddingService(EmbeddingService):
    """Local hashed term-frequency vectors. No network, deterministic."""

    def __init__(self, dimensions: int = 512) -> None:
        self._dimensions = dimensions

    async def batch_embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self._dimensions
        for token in tokenize(text):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "big") % self._dimensions] += 1.0
        return vec


def build_embedding_service(backend: str, api_key_env: str = "OPENAI_API_KEY") -> EmbeddingService:
    """Return the configured backend, using the lexical one when the API key is absent."""
    if backend == "openai":
        if os.environ.get(api_key_env, "").strip():
            return OpenAIEmbeddingService(api_key_env)
        logger.warning("Embedding backend 'openai' requested but %s is not set, using lexical", api_key_env)
    return LexicalEmbeddingService()
