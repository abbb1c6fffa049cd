"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Header

from docchat.chat.ratelimit import SessionRateLimiter
from docchat.chat.service import ChatService
from docchat.core.config import Settings, get_settings
from docchat.core.retry import RetryPolicy
from docchat.db.sqlite import SQLiteDatabase
from docchat.db.store import DocumentStore
from docchat.generation.orchestrator import GenerationOrchestrator
from docchat.ingest.abstracts import AbstractGenerator
from docchat.ingest.embeddings import Embedder, build_embedding_provider
from docchat.ingest.loaders import AudioLoader, LoaderRegistry, LocalFileStore
from docchat.ingest.pipeline import IngestPipeline
from docchat.ingest.scheduler import IngestionScheduler
from docchat.llm.chat import ChatProvider, OpenAIChatProvider
from docchat.llm.client import ProviderClient
from docchat.models.entities import EMBEDDING_DIMENSIONS
from docchat.quiz.generator import QuizGenerator
from docchat.retrieval import Retriever
from docchat.security.access import CallerContext, DocumentAccessPolicy

_DB: SQLiteDatabase | None = None
_STORE: DocumentStore | None = None
_CLIENT: ProviderClient | None = None
_CHAT_PROVIDER: ChatProvider | None = None
_EMBEDDERS: dict[str, Embedder] | None = None
_PIPELINE: IngestPipeline | None = None
_SCHEDULER: IngestionScheduler | None = None
_RETRIEVER: Retriever | None = None
_ORCHESTRATOR: GenerationOrchestrator | None = None
_RATE_LIMITER: SessionRateLimiter | None = None
_QUIZ_GENERATOR: QuizGenerator | None = None
_CHAT_SERVICE: ChatService | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(get_app_settings())


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_store() -> DocumentStore:
    global _STORE
    if _STORE is None:
        _STORE = DocumentStore(get_database())
    return _STORE


def get_provider_client() -> ProviderClient:
    global _CLIENT
    if _CLIENT is None:
        _CLIENT = ProviderClient.from_settings(get_app_settings())
    return _CLIENT


def get_chat_provider() -> ChatProvider:
    global _CHAT_PROVIDER
    if _CHAT_PROVIDER is None:
        settings = get_app_settings()
        _CHAT_PROVIDER = OpenAIChatProvider(
            get_provider_client(),
            model=settings.chat_model,
            timeout=settings.chat_timeout,
        )
    return _CHAT_PROVIDER


def get_embedders() -> dict[str, Embedder]:
    global _EMBEDDERS
    if _EMBEDDERS is None:
        settings = get_app_settings()
        _EMBEDDERS = {
            embedding_type: Embedder(
                build_embedding_provider(embedding_type, settings, get_provider_client()),
                retry_policy=get_retry_policy(),
                concurrency=settings.embedding_concurrency,
            )
            for embedding_type in EMBEDDING_DIMENSIONS
        }
    return _EMBEDDERS


def get_ingest_pipeline() -> IngestPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        settings = get_app_settings()
        audio = AudioLoader(
            get_provider_client(),
            model=settings.transcription_model,
            retry_policy=get_retry_policy(),
            timeout=settings.transcription_timeout,
        )
        _PIPELINE = IngestPipeline(
            store=get_store(),
            settings=settings,
            embedders=get_embedders(),
            loaders=LoaderRegistry(audio_loader=audio),
            file_store=LocalFileStore(settings.files_dir),
            abstracts=AbstractGenerator(get_chat_provider()) if settings.generate_abstracts else None,
        )
    return _PIPELINE


def get_scheduler() -> IngestionScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        _SCHEDULER = IngestionScheduler(
            get_ingest_pipeline(),
            max_concurrent_jobs=get_app_settings().max_concurrent_jobs,
        )
    return _SCHEDULER


def get_retriever() -> Retriever:
    global _RETRIEVER
    if _RETRIEVER is None:
        _RETRIEVER = Retriever(get_store(), get_embedders(), get_app_settings(), get_retry_policy())
    return _RETRIEVER


def get_orchestrator() -> GenerationOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = GenerationOrchestrator(get_chat_provider(), get_app_settings(), get_retry_policy())
    return _ORCHESTRATOR


def get_rate_limiter() -> SessionRateLimiter:
    global _RATE_LIMITER
    if _RATE_LIMITER is None:
        _RATE_LIMITER = SessionRateLimiter.from_settings(get_app_settings())
    return _RATE_LIMITER


def get_quiz_generator() -> QuizGenerator:
    global _QUIZ_GENERATOR
    if _QUIZ_GENERATOR is None:
        _QUIZ_GENERATOR = QuizGenerator(get_store(), get_chat_provider(), get_app_settings(), get_retry_policy())
    return _QUIZ_GENERATOR


def get_access_policy() -> DocumentAccessPolicy:
    return DocumentAccessPolicy(get_store())


def get_chat_service() -> ChatService:
    global _CHAT_SERVICE
    if _CHAT_SERVICE is None:
        _CHAT_SERVICE = ChatService(
            store=get_store(),
            retriever=get_retriever(),
            orchestrator=get_orchestrator(),
            limiter=get_rate_limiter(),
            access=get_access_policy(),
        )
    return _CHAT_SERVICE


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> CallerContext:
    return CallerContext.from_headers(x_user_id, x_user_roles)


async def shutdown_dependencies() -> None:
    """Stop background work and release connections."""
    global _CLIENT
    if _RATE_LIMITER is not None:
        await _RATE_LIMITER.stop()
    if _SCHEDULER is not None:
        await _SCHEDULER.shutdown()
    if _CLIENT is not None:
        await _CLIENT.close()
        _CLIENT = None


__all__ = [
    "get_app_settings",
    "get_database",
    "get_store",
    "get_provider_client",
    "get_chat_provider",
    "get_embedders",
    "get_ingest_pipeline",
    "get_scheduler",
    "get_retriever",
    "get_orchestrator",
    "get_rate_limiter",
    "get_quiz_generator",
    "get_access_policy",
    "get_chat_service",
    "get_caller",
    "shutdown_dependencies",
]
