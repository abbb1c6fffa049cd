"""Retrieval orchestration components."""

from .vector_index import VectorIndex
from .retriever import RetrievalResult, RetrievedChunk, Retriever

__all__ = [
    "VectorIndex",
    "Retriever",
    "RetrievalResult",
    "RetrievedChunk",
]
