"""Multiple-choice quiz generation from a document's live chunks."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

import orjson

from docchat.core.config import Settings
from docchat.core.errors import NotFoundError, PartialFailureError, ProcessingError, ValidationError, classify
from docchat.core.logging import get_logger, log_context
from docchat.core.metrics import QUIZ_BATCHES
from docchat.core.retry import RetryPolicy
from docchat.db.store import DocumentStore
from docchat.llm.chat import ChatProvider
from docchat.models.entities import Chunk, QuizQuestion, QuizSet
from docchat.utils.text import truncate
from docchat.utils.time import ms_to_datetime, utc_now

logger = get_logger(__name__)

MIN_QUESTIONS = 10
MIN_QUESTION_OVERRIDE = 1
MAX_QUESTIONS = 100
MAX_BATCH_CHARS = 60_000
OPTION_COUNT = 4

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

SYSTEM_PROMPT = (
    "You are an expert at creating educational quiz questions from document content. "
    "Generate clear, accurate multiple-choice questions that test understanding of the material. "
    "Each question must have exactly 4 options with one clearly correct answer. "
    "Make questions challenging but fair, based directly on the provided content."
)


class QuizRegenerationLimited(ValidationError):
    """A quiz for this document was generated too recently."""

    def __init__(self, document_slug: str, next_allowed_at: datetime) -> None:
        super().__init__(
            f"Quiz for {document_slug} can be regenerated after {next_allowed_at.isoformat()}",
            context={"document_slug": document_slug, "next_allowed_at": next_allowed_at.isoformat()},
        )
        self.next_allowed_at = next_allowed_at


@dataclass(slots=True)
class QuizBatch:
    index: int
    question_count: int
    chunks: list[Chunk]


def question_target(chunk_count: int) -> int:
    return max(MIN_QUESTIONS, min(MAX_QUESTIONS, chunk_count // 2))


def plan_batches(chunks: Sequence[Chunk], question_count: int, batch_size: int) -> list[QuizBatch]:
    """Split the question count into batches and deal chunks to them round-robin.

    Every batch asks for ``batch_size`` questions except the last, which
    takes the remainder.
    """
    batch_count = -(-question_count // batch_size)
    batches = [
        QuizBatch(
            index=index,
            question_count=min(batch_size, question_count - index * batch_size),
            chunks=[],
        )
        for index in range(batch_count)
    ]
    # With fewer chunks than batches, chunks are reused so no batch is empty.
    for position in range(max(len(chunks), batch_count)):
        batches[position % batch_count].chunks.append(chunks[position % len(chunks)])
    return batches


def parse_questions(content: str, limit: int) -> list[QuizQuestion]:
    """Parse a ``{"questions": [...]}`` reply, dropping malformed entries."""
    try:
        payload = orjson.loads(content)
    except orjson.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(content)
        if match is None:
            raise ProcessingError("Quiz reply is not JSON", context={"reply": truncate(content, 200)})
        try:
            payload = orjson.loads(match.group(0))
        except orjson.JSONDecodeError as exc:
            raise ProcessingError(f"Quiz reply is not JSON: {exc}") from exc
    raw = payload.get("questions") if isinstance(payload, dict) else None
    if not isinstance(raw, list):
        raise ProcessingError("Quiz reply has no questions list")

    questions: list[QuizQuestion] = []
    for entry in raw[:limit]:
        question = _to_question(entry)
        if question is not None:
            questions.append(question)
    if not questions:
        raise ProcessingError("Quiz reply contained no valid questions")
    return questions


def _to_question(entry: Any) -> QuizQuestion | None:
    if not isinstance(entry, dict):
        return None
    text = entry.get("question")
    options = entry.get("options")
    answer = entry.get("correctAnswer", entry.get("correct_answer"))
    if not isinstance(text, str) or not text.strip():
        return None
    if not isinstance(options, list) or len(options) != OPTION_COUNT:
        return None
    if isinstance(answer, bool) or not isinstance(answer, int) or not 0 <= answer < OPTION_COUNT:
        return None
    page = entry.get("page")
    explanation = entry.get("explanation")
    return QuizQuestion(
        question=text.strip(),
        options=[str(option).strip() for option in options],
        correct_answer=answer,
        explanation=explanation.strip() if isinstance(explanation, str) and explanation.strip() else None,
        page_number=page if isinstance(page, int) and not isinstance(page, bool) else None,
    )


def build_quiz_messages(title: str, batch: QuizBatch) -> list[dict[str, str]]:
    content = truncate("\n\n".join(_excerpt(chunk) for chunk in batch.chunks), MAX_BATCH_CHARS)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"""Generate {batch.question_count} multiple-choice questions based on the following content from "{title}".

Each question must have:
- A clear, specific question
- Exactly 4 options
- One correct answer (correctAnswer index 0-3)
- Three plausible distractors
- The page it is based on, when the content shows [Page X] markers

Return a JSON object with this exact structure:
{{"questions": [{{"question": "What is...?", "options": ["A", "B", "C", "D"], "correctAnswer": 1, "explanation": "...", "page": 3}}]}}

Document content:
{content}

Provide ONLY the JSON object, no additional commentary.""",
        },
    ]


def _excerpt(chunk: Chunk) -> str:
    if chunk.page_number is None:
        return chunk.text
    return f"{chunk.text} [Page {chunk.page_number}]"


class QuizGenerator:
    """Generate and persist a document's question bank in concurrent batches."""

    def __init__(
        self,
        store: DocumentStore,
        chat: ChatProvider,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.chat = chat
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    def check_regeneration(self, document_slug: str, now: datetime | None = None) -> None:
        last = ms_to_datetime(self.store.last_quiz_generated_at(document_slug))
        if last is None:
            return
        next_allowed = last + timedelta(days=self.settings.quiz_regeneration_days)
        if (now or utc_now()) < next_allowed:
            raise QuizRegenerationLimited(document_slug, next_allowed)

    async def generate_quiz(
        self,
        document_slug: str,
        question_count: int | None = None,
        privileged: bool = False,
        generated_by: str | None = None,
    ) -> QuizSet:
        document = self.store.get_document(document_slug)
        if document is None:
            raise NotFoundError(f"Document {document_slug} does not exist", context={"document_slug": document_slug})
        if question_count is not None and not MIN_QUESTION_OVERRIDE <= question_count <= MAX_QUESTIONS:
            raise ValidationError(
                f"Question count must be between {MIN_QUESTION_OVERRIDE} and {MAX_QUESTIONS}",
                context={"question_count": question_count},
            )
        if not privileged:
            self.check_regeneration(document_slug)

        chunks = await asyncio.to_thread(self.store.list_chunks, document_slug)
        if not chunks:
            raise ValidationError(f"Document {document_slug} has no content to quiz on")
        requested = question_count if question_count is not None else question_target(len(chunks))
        batches = plan_batches(chunks, requested, self.settings.quiz_batch_size)
        semaphore = asyncio.Semaphore(self.settings.quiz_max_concurrency)

        async def run_batch(batch: QuizBatch) -> list[QuizQuestion]:
            async with semaphore:
                return await self.retry_policy.run(
                    lambda: self._generate_batch(document.title, batch),
                    operation="quiz_batch",
                    context={"document_slug": document_slug, "batch": batch.index},
                )

        results = await asyncio.gather(*(run_batch(batch) for batch in batches), return_exceptions=True)

        questions: list[QuizQuestion] = []
        failures: list[ProcessingError] = []
        failed_batches: list[dict[str, Any]] = []
        for batch, result in zip(batches, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                error = classify(result, {"document_slug": document_slug, "batch": batch.index})
                failures.append(error)
                failed_batches.append(
                    {"batch": batch.index, "requested": batch.question_count, "kind": error.kind.value, "message": error.message}
                )
                QUIZ_BATCHES.labels(status="failed").inc()
                logger.warning(
                    "Quiz batch failed",
                    extra=log_context(document_slug=document_slug, batch=batch.index, error=error.message),
                )
                continue
            QUIZ_BATCHES.labels(status="completed").inc()
            questions.extend(result)

        if not questions:
            raise PartialFailureError(
                f"Every quiz batch failed for {document_slug}",
                successes=[],
                failures=failures,
                context={"document_slug": document_slug, "batches": len(batches)},
            )

        quiz = QuizSet(
            document_slug=document_slug,
            questions=questions,
            requested=requested,
            generated_at=utc_now(),
            failed_batches=failed_batches,
            generated_by=generated_by,
        )
        await asyncio.to_thread(self.store.save_quiz, quiz)
        logger.info(
            "Generated quiz",
            extra=log_context(
                document_slug=document_slug,
                requested=requested,
                generated=len(questions),
                failed_batches=len(failed_batches),
            ),
        )
        return quiz

    async def _generate_batch(self, title: str, batch: QuizBatch) -> list[QuizQuestion]:
        reply = await self.chat.complete(
            build_quiz_messages(title, batch),
            max_tokens=2000 + batch.question_count * 300,
            json_mode=True,
        )
        return parse_questions(reply, batch.question_count)


__all__ = [
    "QuizGenerator",
    "QuizRegenerationLimited",
    "QuizBatch",
    "plan_batches",
    "parse_questions",
    "question_target",
]
