"""Test fixtures for DocChat."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from docchat.core.config import Settings  # noqa: E402
from docchat.core.retry import RetryPolicy  # noqa: E402
from docchat.db.sqlite import SQLiteDatabase  # noqa: E402
from docchat.db.store import DocumentStore  # noqa: E402
from docchat.ingest.embeddings import Embedder, HashedEmbeddingProvider  # noqa: E402
from docchat.ingest.pipeline import IngestPipeline  # noqa: E402

_DEPENDENCY_GLOBALS = (
    "_DB",
    "_STORE",
    "_CLIENT",
    "_CHAT_PROVIDER",
    "_EMBEDDERS",
    "_PIPELINE",
    "_SCHEDULER",
    "_RETRIEVER",
    "_ORCHESTRATOR",
    "_RATE_LIMITER",
    "_QUIZ_GENERATOR",
    "_CHAT_SERVICE",
)


def _reset_dependencies() -> None:
    from docchat.api import dependencies as deps
    from docchat.core.config import get_settings

    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    for name in _DEPENDENCY_GLOBALS:
        setattr(deps, name, None)


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("DOCCHAT_DB_PATH", str(tmp_path / "docchat.db"))
    monkeypatch.setenv("DOCCHAT_FILES_DIR", str(tmp_path / "files"))
    monkeypatch.setenv("DOCCHAT_DEFAULT_EMBEDDING_TYPE", "local")
    monkeypatch.setenv("DOCCHAT_GENERATE_ABSTRACTS", "false")
    monkeypatch.setenv("DOCCHAT_RETRY_INITIAL_DELAY", "0")
    monkeypatch.setenv("DOCCHAT_RETRY_JITTER", "false")
    monkeypatch.delenv("DOCCHAT_CONFIG", raising=False)
    _reset_dependencies()
    yield
    _reset_dependencies()


Reply = str | Exception | Callable[[Sequence[dict[str, str]]], str]


class FakeChatProvider:
    """Scripted chat provider.

    ``replies`` are consumed in order by ``complete``; an Exception entry is
    raised instead of returned. Once exhausted, ``default`` answers.
    """

    model = "fake-chat"

    def __init__(
        self,
        replies: Sequence[Reply] = (),
        default: Reply = "I don't have that information in the provided sections.",
        stream_chunks: Sequence[str] = ("Hello", " world"),
        stream_failures: Sequence[Exception] = (),
        fail_after_chunks: Exception | None = None,
    ) -> None:
        self.replies = list(replies)
        self.default = default
        self.stream_chunks = list(stream_chunks)
        self.stream_failures = list(stream_failures)
        self.fail_after_chunks = fail_after_chunks
        self.calls: list[dict[str, Any]] = []
        self.stream_calls = 0
        self.streams_closed = 0

    async def complete(self, messages, *, max_tokens=None, json_mode=False) -> str:
        self.calls.append({"messages": list(messages), "max_tokens": max_tokens, "json_mode": json_mode})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply

    async def stream(self, messages):
        self.stream_calls += 1
        try:
            if self.stream_failures:
                raise self.stream_failures.pop(0)
            for chunk in self.stream_chunks:
                yield chunk
            if self.fail_after_chunks is not None:
                raise self.fail_after_chunks
        finally:
            self.streams_closed += 1


class FlakyEmbeddingProvider(HashedEmbeddingProvider):
    """Hashed provider that fails any call containing a poisoned text."""

    def __init__(self, poisoned: set[str], failures_per_text: int = 10**6, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.poisoned = poisoned
        self.remaining = {text: failures_per_text for text in poisoned}
        self.calls: list[list[str]] = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        for text in texts:
            if self.remaining.get(text, 0) > 0:
                self.remaining[text] -= 1
                raise ConnectionError(f"provider dropped the request for {text[:20]!r}")
        return self.encode(texts)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "store.db",
        files_dir=tmp_path / "files",
        default_embedding_type="local",
        generate_abstracts=False,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
        similarity_floors={"openai": 0.3, "local": 0.0},
        chunk_size=50,
        chunk_overlap=10,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def store(settings: Settings) -> DocumentStore:
    db = SQLiteDatabase(settings.db_path)
    db.ensure_schema()
    yield DocumentStore(db)
    db.close()


@pytest.fixture
def embedders(retry_policy: RetryPolicy) -> dict[str, Embedder]:
    return {"local": Embedder(HashedEmbeddingProvider(), retry_policy=retry_policy)}


@pytest.fixture
def pipeline(store: DocumentStore, settings: Settings, embedders: dict[str, Embedder]) -> IngestPipeline:
    return IngestPipeline(store=store, settings=settings, embedders=embedders)


@pytest.fixture
def fake_chat() -> FakeChatProvider:
    return FakeChatProvider()


def paged_text(pages: Sequence[str]) -> str:
    """Join page bodies the way the PDF extractor does."""
    return "\n\n".join(f"[Page {number}] {body}" for number, body in enumerate(pages, start=1))
