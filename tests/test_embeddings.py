"""Tests for council/embeddings.py: lexical backend only, no API calls."""

import pytest

from council.embeddings import (
    EmbeddingError,
    EmbeddingService,
    LexicalEmbeddingService,
    build_embedding_service,
)


async def test_lexical_identical_texts():
    service = LexicalEmbeddingService()
    a, b = await service.batch_embed(["Paris is the capital", "Paris is the capital"])
    assert EmbeddingService.cosine_similarity(a, b) == pytest.approx(1.0)


async def test_lexical_unrelated_texts_lower():
    service = LexicalEmbeddingService()
    a, b, c = await service.batch_embed(
        ["Paris is the capital of France", "Paris is the capital city of France", "bananas grow in bunches"]
    )
    assert EmbeddingService.cosine_similarity(a, b) > EmbeddingService.cosine_similarity(a, c)


async def test_embed_single():
    vector = await LexicalEmbeddingService(dimensions=16).embed("hello world")
    assert len(vector) == 16
    assert sum(vector) == 2.0


def test_cosine_zero_vector():
    assert EmbeddingService.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_cosine_size_mismatch():
    with pytest.raises(EmbeddingError, match="size mismatch"):
        EmbeddingService.cosine_similarity([1.0], [1.0, 0.0])


def test_openai_backend_without_key_falls_back(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert isinstance(build_embedding_service("openai"), LexicalEmbeddingService)


def test_lexical_backend():
    assert isinstance(build_embedding_service("lexical"), LexicalEmbeddingService)
