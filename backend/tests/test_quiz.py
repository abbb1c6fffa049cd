"""Tests for quiz generation."""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta

import orjson
import pytest

from docchat.core.config import Settings
from docchat.core.errors import NotFoundError, PartialFailureError, ProcessingError, ValidationError
from docchat.core.retry import RetryPolicy
from docchat.db.store import DocumentStore
from docchat.ingest.embeddings import HashedEmbeddingProvider
from docchat.ingest.types import ChunkPayload
from docchat.models.entities import Chunk, Document
from docchat.quiz.generator import (
    QuizGenerator,
    QuizRegenerationLimited,
    parse_questions,
    plan_batches,
    question_target,
)
from docchat.utils.time import utc_now

from conftest import FakeChatProvider

_COUNT_RE = re.compile(r"Generate (\d+) multiple-choice")


def _seed(store: DocumentStore, slug: str, chunk_count: int) -> None:
    texts = [f"section {idx} {'oddchunk' if idx % 2 else 'evenchunk'} content" for idx in range(chunk_count)]
    vectors = HashedEmbeddingProvider().encode(texts)
    generation = store.begin_generation(slug, "local")
    payloads = [
        ChunkPayload(
            ordinal=idx,
            text=text,
            start_char=0,
            end_char=len(text),
            token_count=len(text.split()),
            page_number=idx + 1,
            page_markers_found=True,
        )
        for idx, text in enumerate(texts)
    ]
    store.insert_chunks(slug, generation, "local", list(zip(payloads, vectors)))
    store.publish_generation(Document(slug=slug, title="Handbook", embedding_type="local"), generation, replace=True)


def _question(idx: int) -> dict:
    return {
        "question": f"What does section {idx} say?",
        "options": ["A", "B", "C", "D"],
        "correctAnswer": idx % 4,
        "explanation": "Stated directly.",
        "page": idx + 1,
    }


def _answer_batch(messages) -> str:
    count = int(_COUNT_RE.search(messages[-1]["content"]).group(1))
    return orjson.dumps({"questions": [_question(idx) for idx in range(count)]}).decode("utf-8")


def _generator(store: DocumentStore, chat: FakeChatProvider, settings: Settings, retry_policy: RetryPolicy) -> QuizGenerator:
    settings.quiz_batch_size = 10
    return QuizGenerator(store, chat, settings, retry_policy)


def test_question_target_is_clamped() -> None:
    assert question_target(5) == 10
    assert question_target(60) == 30
    assert question_target(500) == 100


def _chunk(idx: int) -> Chunk:
    return Chunk(
        id=f"doc:1:{idx}",
        document_slug="doc",
        generation=1,
        ordinal=idx,
        text=f"text {idx}",
        page_number=None,
        start_char=0,
        end_char=6,
        token_count=2,
        embedding_type="local",
    )


def test_plan_batches_splits_remainder_and_deals_chunks() -> None:
    batches = plan_batches([_chunk(idx) for idx in range(7)], 25, 10)
    assert [batch.question_count for batch in batches] == [10, 10, 5]
    assert [[chunk.ordinal for chunk in batch.chunks] for batch in batches] == [[0, 3, 6], [1, 4], [2, 5]]


def test_plan_batches_reuses_chunks_when_short() -> None:
    batches = plan_batches([_chunk(0)], 30, 10)
    assert all(batch.chunks for batch in batches)


def test_parse_questions_falls_back_to_embedded_object() -> None:
    reply = "Sure! Here it is:\n" + orjson.dumps({"questions": [_question(0), {"question": "broken"}]}).decode() + "\nEnjoy."
    questions = parse_questions(reply, limit=5)
    assert len(questions) == 1
    assert questions[0].correct_answer == 0
    assert questions[0].page_number == 1


def test_parse_questions_rejects_replies_without_valid_entries() -> None:
    with pytest.raises(ProcessingError):
        parse_questions("no json at all", limit=5)
    with pytest.raises(ProcessingError):
        parse_questions('{"questions": [{"question": "x", "options": ["a"], "correctAnswer": 0}]}', limit=5)


def test_one_failed_batch_reports_shortfall(
    store: DocumentStore,
    settings: Settings,
    retry_policy: RetryPolicy,
) -> None:
    _seed(store, "handbook", 4)

    def reply(messages) -> str:
        if "oddchunk" in messages[-1]["content"]:
            raise ConnectionError("provider dropped the batch")
        return _answer_batch(messages)

    chat = FakeChatProvider(default=reply)
    quiz = asyncio.run(_generator(store, chat, settings, retry_policy).generate_quiz("handbook", question_count=20))

    assert quiz.requested == 20
    assert len(quiz.questions) == 10
    assert quiz.shortfall == 10
    assert quiz.complete is False
    assert quiz.failed_batches == [
        {"batch": 1, "requested": 10, "kind": "network", "message": "provider dropped the batch"}
    ]
    # The failing batch is retried before it is given up on.
    assert len(chat.calls) == 1 + retry_policy.max_attempts
    assert all(call["json_mode"] for call in chat.calls)

    stored = store.load_quiz("handbook")
    assert len(stored.questions) == 10
    assert stored.failed_batches == quiz.failed_batches


def test_every_batch_failing_raises(store: DocumentStore, settings: Settings, retry_policy: RetryPolicy) -> None:
    _seed(store, "handbook", 4)
    chat = FakeChatProvider(default=ConnectionError("down"))
    with pytest.raises(PartialFailureError):
        asyncio.run(_generator(store, chat, settings, retry_policy).generate_quiz("handbook"))
    assert store.load_quiz("handbook") is None


def test_regeneration_is_limited_unless_privileged(
    store: DocumentStore,
    settings: Settings,
    retry_policy: RetryPolicy,
) -> None:
    _seed(store, "handbook", 4)
    generator = _generator(store, FakeChatProvider(default=_answer_batch), settings, retry_policy)
    first = asyncio.run(generator.generate_quiz("handbook", generated_by="owner-1"))
    assert first.requested == 10
    assert first.complete

    with pytest.raises(QuizRegenerationLimited) as info:
        asyncio.run(generator.generate_quiz("handbook"))
    assert info.value.next_allowed_at > utc_now()

    again = asyncio.run(generator.generate_quiz("handbook", question_count=3, privileged=True))
    assert len(again.questions) == 3
    assert len(store.load_quiz("handbook").questions) == 3

    later = utc_now() + timedelta(days=settings.quiz_regeneration_days, minutes=1)
    generator.check_regeneration("handbook", now=later)


@pytest.mark.parametrize("count", [0, 101])
def test_question_count_override_is_bounded(
    count: int,
    store: DocumentStore,
    settings: Settings,
    retry_policy: RetryPolicy,
) -> None:
    _seed(store, "handbook", 4)
    generator = _generator(store, FakeChatProvider(default=_answer_batch), settings, retry_policy)
    with pytest.raises(ValidationError):
        asyncio.run(generator.generate_quiz("handbook", question_count=count))


def test_unknown_document_is_not_found(store: DocumentStore, settings: Settings, retry_policy: RetryPolicy) -> None:
    generator = _generator(store, FakeChatProvider(), settings, retry_policy)
    with pytest.raises(NotFoundError):
        asyncio.run(generator.generate_quiz("missing"))
