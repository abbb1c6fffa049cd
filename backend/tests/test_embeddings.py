"""Tests for embedding utilities."""

import asyncio

import httpx
import pytest

from docchat.core.errors import EmbeddingError, PartialFailureError
from docchat.core.retry import RetryPolicy
from docchat.ingest.embeddings import Embedder, HashedEmbeddingProvider

from conftest import FlakyEmbeddingProvider


def test_hashed_provider_is_deterministic_and_normalised() -> None:
    provider = HashedEmbeddingProvider()
    first, second = provider.encode(["hello world", "hello world"])
    assert first == second
    assert len(first) == provider.dim == 384
    assert abs(sum(value * value for value in first) - 1.0) < 1e-6


def test_embedder_preserves_order_across_batches(retry_policy: RetryPolicy) -> None:
    provider = HashedEmbeddingProvider(max_batch_size=2)
    embedder = Embedder(provider, retry_policy=retry_policy, concurrency=2)
    texts = [f"text number {idx}" for idx in range(5)]
    vectors = asyncio.run(embedder.embed(texts))
    assert vectors == provider.encode(texts)


def test_embedder_reports_exact_failed_indices(retry_policy: RetryPolicy) -> None:
    provider = FlakyEmbeddingProvider({"bad text"}, max_batch_size=2)
    embedder = Embedder(provider, retry_policy=retry_policy)
    texts = ["alpha", "beta", "bad text", "gamma"]
    with pytest.raises(PartialFailureError) as info:
        asyncio.run(embedder.embed(texts))
    error = info.value
    assert sorted(error.successes) == [0, 1, 3]
    assert [failure.chunk_index for failure in error.failures] == [2]
    assert all(isinstance(failure, EmbeddingError) for failure in error.failures)
    assert error.successes[3] == provider.encode(["gamma"])[0]


def test_embedder_recovers_from_transient_failure(retry_policy: RetryPolicy) -> None:
    provider = FlakyEmbeddingProvider({"once"}, failures_per_text=1)
    embedder = Embedder(provider, retry_policy=retry_policy)
    vectors = asyncio.run(embedder.embed(["once", "twice"]))
    assert len(vectors) == 2
    assert len(provider.calls) == 2


def test_embedder_rejects_wrong_dimension(retry_policy: RetryPolicy) -> None:
    class ShortProvider(HashedEmbeddingProvider):
        async def embed(self, texts):
            return [[1.0, 0.0] for _ in texts]

    embedder = Embedder(ShortProvider(), retry_policy=retry_policy)
    with pytest.raises(PartialFailureError) as info:
        asyncio.run(embedder.embed(["x"]))
    assert info.value.failures[0].chunk_index == 0


def test_embed_one(retry_policy: RetryPolicy) -> None:
    embedder = Embedder(HashedEmbeddingProvider(), retry_policy=retry_policy)
    vector = asyncio.run(embedder.embed_one("query"))
    assert len(vector) == 384


class RejectingProvider(HashedEmbeddingProvider):
    """Answers every call with the given HTTP status."""

    def __init__(self, status: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.status = status
        self.calls: list[list[str]] = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        request = httpx.Request("POST", "https://provider.test/v1/embeddings")
        response = httpx.Response(self.status, request=request)
        raise httpx.HTTPStatusError(f"status {self.status}", request=request, response=response)


@pytest.mark.parametrize("status", [400, 401])
def test_permanent_batch_error_skips_single_item_fallback(retry_policy: RetryPolicy, status: int) -> None:
    provider = RejectingProvider(status, max_batch_size=100)
    embedder = Embedder(provider, retry_policy=retry_policy)
    texts = [f"text {idx}" for idx in range(50)]
    with pytest.raises(PartialFailureError) as info:
        asyncio.run(embedder.embed(texts))
    assert len(provider.calls) == 1
    error = info.value
    assert error.retryable is False
    assert [failure.chunk_index for failure in error.failures] == list(range(50))
    assert not any(failure.retryable for failure in error.failures)


def test_transient_item_failures_stay_retryable(retry_policy: RetryPolicy) -> None:
    provider = FlakyEmbeddingProvider({"bad text"}, max_batch_size=2)
    embedder = Embedder(provider, retry_policy=retry_policy)
    with pytest.raises(PartialFailureError) as info:
        asyncio.run(embedder.embed(["alpha", "bad text"]))
    assert info.value.retryable is True
    assert info.value.failures[0].context["cause"] == "network"
