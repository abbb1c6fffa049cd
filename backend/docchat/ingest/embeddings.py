"""Embedding providers and the batching embedder."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import Protocol, Sequence

from docchat.core.config import Settings
from docchat.core.errors import (
    EmbeddingError,
    PartialFailureError,
    ProcessingError,
    ValidationError,
    classify,
)
from docchat.core.logging import get_logger, log_context
from docchat.core.retry import RetryPolicy
from docchat.llm.client import ProviderClient
from docchat.models.entities import EMBEDDING_DIMENSIONS

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")

Vector = list[float]


class EmbeddingProvider(Protocol):
    embedding_type: str
    model: str
    dim: int
    max_batch_size: int

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        ...


class HashedEmbeddingProvider:
    """Lightweight hashed embedding model with deterministic output."""

    embedding_type = "local"

    def __init__(self, model: str = "hashed", dim: int = EMBEDDING_DIMENSIONS["local"], max_batch_size: int = 64) -> None:
        self.model = model
        self.dim = dim
        self.max_batch_size = max_batch_size

    def encode(self, texts: Sequence[str]) -> list[Vector]:
        vectors: list[Vector] = []
        for text in texts:
            vector = [0.0] * self.dim
            for token in _tokenize(text):
                vector[_hash_token(token, self.dim)] += 1.0
            _normalize(vector)
            vectors.append(vector)
        return vectors

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        return self.encode(texts)


class OpenAIEmbeddingProvider:
    """Embeddings from an OpenAI-compatible ``/embeddings`` endpoint."""

    embedding_type = "openai"

    def __init__(
        self,
        client: ProviderClient,
        model: str = "text-embedding-3-small",
        dim: int = EMBEDDING_DIMENSIONS["openai"],
        max_batch_size: int = 200,
        timeout: float | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.dim = dim
        self.max_batch_size = max_batch_size
        self.timeout = timeout

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        return await self.client.embeddings(self.model, texts, timeout=self.timeout)


def build_embedding_provider(
    embedding_type: str,
    settings: Settings,
    client: ProviderClient | None,
) -> EmbeddingProvider:
    if embedding_type == "local":
        return HashedEmbeddingProvider(max_batch_size=settings.embedding_batch_size)
    if embedding_type == "openai":
        if client is None:
            raise ValidationError("The openai embedding type requires a provider client")
        return OpenAIEmbeddingProvider(
            client,
            model=settings.embedding_model,
            max_batch_size=settings.embedding_batch_size,
            timeout=settings.embedding_timeout,
        )
    raise ValidationError(f"Unknown embedding type {embedding_type!r}")


class Embedder:
    """Batch, bound and retry embedding calls against one provider.

    A batch that exhausts its retries is re-embedded item by item, so a
    failure report names exactly the indices that could not be embedded.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 2,
    ) -> None:
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, concurrency)

    @property
    def embedding_type(self) -> str:
        return self.provider.embedding_type

    async def embed_one(self, text: str) -> Vector:
        vectors = await self.retry_policy.run(
            lambda: self._call([text]),
            operation="embed_query",
        )
        return vectors[0]

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        """Embed ``texts`` in order; raise PartialFailureError naming failed indices."""
        if not texts:
            return []
        size = max(1, self.provider.max_batch_size)
        batches = [(start, list(texts[start : start + size])) for start in range(0, len(texts), size)]
        semaphore = asyncio.Semaphore(self.concurrency)
        successes: dict[int, Vector] = {}
        failures: list[EmbeddingError] = []

        async def run_batch(start: int, batch: list[str]) -> None:
            async with semaphore:
                try:
                    vectors = await self.retry_policy.run(
                        lambda: self._call(batch),
                        operation="embed_batch",
                        context={"offset": start, "size": len(batch)},
                    )
                except ProcessingError as exc:
                    if not exc.retryable:
                        # Single-item calls would fail the same way.
                        logger.error(
                            "Embedding batch failed permanently",
                            extra=log_context(offset=start, size=len(batch), kind=exc.kind.value, error=exc.message),
                        )
                        failures.extend(_failure(exc, start + offset) for offset in range(len(batch)))
                        return
                    logger.warning(
                        "Embedding batch failed, falling back to single items",
                        extra=log_context(offset=start, size=len(batch), error=exc.message),
                    )
                    await self._embed_items(start, batch, successes, failures)
                    return
                for offset, vector in enumerate(vectors):
                    successes[start + offset] = vector

        await asyncio.gather(*(run_batch(start, batch) for start, batch in batches))

        if failures:
            failures.sort(key=lambda failure: failure.chunk_index or 0)
            logger.error(
                "Embedded %s of %s texts",
                len(successes),
                len(texts),
                extra=log_context(failed_indices=[failure.chunk_index for failure in failures]),
            )
            raise PartialFailureError(
                f"{len(failures)} of {len(texts)} embeddings failed",
                successes=successes,
                failures=failures,
            )
        return [successes[idx] for idx in range(len(texts))]

    async def _embed_items(
        self,
        start: int,
        batch: list[str],
        successes: dict[int, Vector],
        failures: list[EmbeddingError],
    ) -> None:
        for offset, text in enumerate(batch):
            index = start + offset
            try:
                vectors = await self.retry_policy.run(
                    lambda text=text: self._call([text]),
                    operation="embed_item",
                    context={"chunk_index": index},
                )
            except ProcessingError as exc:
                failures.append(_failure(exc, index))
                continue
            successes[index] = vectors[0]

    async def _call(self, texts: list[str]) -> list[Vector]:
        try:
            vectors = await self.provider.embed(texts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise classify(exc, {"provider": self.provider.model}) from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                context={"provider": self.provider.model},
            )
        for vector in vectors:
            if len(vector) != self.provider.dim:
                raise EmbeddingError(
                    f"Provider returned a {len(vector)}-dimensional vector, expected {self.provider.dim}",
                    retryable=False,
                    context={"provider": self.provider.model},
                )
        return [list(vector) for vector in vectors]


def _failure(exc: ProcessingError, index: int) -> EmbeddingError:
    return EmbeddingError(
        exc.message,
        chunk_index=index,
        retryable=exc.retryable,
        context={"cause": exc.kind.value},
    )


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: Vector) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "EmbeddingProvider",
    "HashedEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "Embedder",
    "build_embedding_provider",
]
