"""In-memory cosine index over one document's chunk vectors."""

from __future__ import annotations

import heapq
from array import array
from dataclasses import dataclass
from typing import Sequence


@dataclass(slots=True)
class SearchResult:
    chunk_id: str
    score: float


class VectorIndex:
    """Brute-force cosine search.

    Vectors are expected normalised, so the dot product is the cosine. Equal
    scores keep insertion order; callers insert by chunk ordinal.
    """

    def __init__(self, dim: int) -> None:
        if dim <= 0:
            raise ValueError("Vector dimension must be positive")
        self.dim = dim
        self._ids: list[str] = []
        self._vectors: list[array] = []

    @property
    def size(self) -> int:
        return len(self._vectors)

    def upsert(self, ids: Sequence[str], vectors: Sequence[Sequence[float]]) -> None:
        if len(ids) != len(vectors):
            raise ValueError("Every id needs exactly one vector")
        packed = []
        for vector in vectors:
            if len(vector) != self.dim:
                raise ValueError(f"Vector dimension mismatch: expected {self.dim}, got {len(vector)}")
            packed.append(array("f", vector))
        self._ids.extend(ids)
        self._vectors.extend(packed)

    def search(
        self,
        vector: Sequence[float],
        top_k: int = 8,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        if not self._vectors or top_k <= 0:
            return []
        if len(vector) != self.dim:
            raise ValueError("Query vector dimension mismatch")
        scored = (
            (_dot(stored, vector), position)
            for position, stored in enumerate(self._vectors)
        )
        if min_score is not None:
            scored = (item for item in scored if item[0] >= min_score)
        # Negated position keeps the earlier chunk ahead on equal scores.
        best = heapq.nlargest(top_k, scored, key=lambda item: (item[0], -item[1]))
        return [SearchResult(chunk_id=self._ids[position], score=score) for score, position in best]


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def vector_from_bytes(blob: bytes) -> list[float]:
    floats = array("f")
    floats.frombytes(blob)
    return list(floats)


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


__all__ = ["VectorIndex", "SearchResult", "vector_to_bytes", "vector_from_bytes"]
