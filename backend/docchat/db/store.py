"""Document, chunk, processing-event and quiz persistence."""

from __future__ import annotations

import sqlite3
from typing import Any, Sequence

import orjson

from docchat.core.errors import ValidationError, classify
from docchat.core.logging import get_logger, log_context
from docchat.db.sqlite import SQLiteDatabase
from docchat.ingest.types import ChunkPayload
from docchat.models.entities import (
    EMBEDDING_DIMENSIONS,
    ChatAudit,
    Chunk,
    Document,
    ProcessingEvent,
    QuizQuestion,
    QuizSet,
    chunk_key,
)
from docchat.retrieval.vector_index import VectorIndex, vector_from_bytes, vector_to_bytes
from docchat.utils.ids import new_id
from docchat.utils.time import ms_to_datetime, now_ms

logger = get_logger(__name__)

_CHUNK_COLUMNS = (
    "c.id, c.document_slug, c.generation, c.ordinal, c.text, c.page_number, "
    "c.start_char, c.end_char, c.token_count, c.embedding_type"
)

_EVENT_COLUMNS = (
    "id, document_slug, action_type, status, upload_type, file_name, requested_by, byte_size, content_sha256, "
    "generation, chunk_count, existing_chunk_count, processing_time_ms, error_kind, error_message, "
    "started_at, finished_at"
)

_AUDIT_COLUMNS = (
    "id, session_id, user_id, document_slugs_json, chunk_ids_json, retrieval_ms, generation_ms, "
    "model, streaming, partial_failure, created_at"
)


class DocumentStore:
    """Generation-aware chunk store backed by SQLite.

    Readers only ever see chunks of ``live`` generations. A new generation is
    written as ``pending`` and becomes visible in the same transaction that
    retires the generation it replaces.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    # Documents --------------------------------------------------------

    def get_document(self, slug: str) -> Document | None:
        row = self.db.query_one(
            """
            SELECT slug, title, owner_id, access_level, is_active, embedding_type,
                   chunk_limit, abstract, created_at, updated_at
            FROM documents WHERE slug = ?
            """,
            [slug],
        )
        return _row_to_document(row) if row else None

    def set_document_active(self, slug: str, active: bool) -> None:
        self.db.execute(
            "UPDATE documents SET is_active = ?, updated_at = ? WHERE slug = ?",
            [1 if active else 0, now_ms(), slug],
        )
        self.db.commit()

    # Generations ------------------------------------------------------

    def begin_generation(self, slug: str, embedding_type: str) -> int:
        """Allocate a pending generation number for ``slug``."""
        with self.db.transaction() as cur:
            row = cur.execute(
                "SELECT COALESCE(MAX(generation), 0) AS latest FROM document_generations WHERE document_slug = ?",
                [slug],
            ).fetchone()
            generation = int(row["latest"]) + 1
            cur.execute(
                """
                INSERT INTO document_generations (document_slug, generation, status, embedding_type, created_at)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                [slug, generation, embedding_type, now_ms()],
            )
        return generation

    def insert_chunks(
        self,
        slug: str,
        generation: int,
        embedding_type: str,
        items: Sequence[tuple[ChunkPayload, Sequence[float]]],
    ) -> int:
        """Insert chunks with their vectors; already-present ordinals are left untouched."""
        expected_dim = EMBEDDING_DIMENSIONS.get(embedding_type)
        now = now_ms()
        rows = []
        for chunk, vector in items:
            if expected_dim is not None and len(vector) != expected_dim:
                raise ValidationError(
                    f"Vector for chunk {chunk.ordinal} has {len(vector)} dimensions, "
                    f"{embedding_type} requires {expected_dim}",
                    context={"document_slug": slug, "ordinal": chunk.ordinal},
                )
            rows.append(
                (
                    chunk_key(slug, generation, chunk.ordinal),
                    slug,
                    generation,
                    chunk.ordinal,
                    chunk.text,
                    chunk.page_number,
                    chunk.start_char,
                    chunk.end_char,
                    chunk.token_count,
                    embedding_type,
                    len(vector),
                    vector_to_bytes(vector),
                    now,
                )
            )
        if not rows:
            return 0
        try:
            with self.db.transaction() as cur:
                cur.executemany(
                    """
                    INSERT OR IGNORE INTO chunks (
                      id, document_slug, generation, ordinal, text, page_number, start_char,
                      end_char, token_count, embedding_type, dim, vector, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                inserted = cur.rowcount
        except sqlite3.Error as exc:
            raise classify(exc, {"document_slug": slug, "generation": generation}) from exc
        return inserted

    def generation_chunk_count(self, slug: str, generation: int) -> int:
        row = self.db.query_one(
            "SELECT COUNT(*) AS count FROM chunks WHERE document_slug = ? AND generation = ?",
            [slug, generation],
        )
        return int(row["count"]) if row else 0

    def live_chunk_count(self, slug: str) -> int:
        row = self.db.query_one(
            """
            SELECT COUNT(*) AS count FROM chunks c
            JOIN document_generations g
              ON g.document_slug = c.document_slug AND g.generation = c.generation
            WHERE c.document_slug = ? AND g.status = 'live'
            """,
            [slug],
        )
        return int(row["count"]) if row else 0

    def live_generations(self, slug: str) -> list[int]:
        rows = self.db.query(
            "SELECT generation FROM document_generations WHERE document_slug = ? AND status = 'live' ORDER BY generation",
            [slug],
        )
        return [int(row["generation"]) for row in rows]

    def publish_generation(
        self,
        document: Document,
        generation: int,
        replace: bool,
    ) -> list[int]:
        """Make ``generation`` live and, when replacing, drop the previous ones.

        Both steps happen in one transaction, so a reader sees either the old
        chunk set or the new one. Returns the retired generation numbers.
        """
        now = now_ms()
        retired: list[int] = []
        try:
            with self.db.transaction() as cur:
                row = cur.execute(
                    "SELECT status FROM document_generations WHERE document_slug = ? AND generation = ?",
                    [document.slug, generation],
                ).fetchone()
                if row is None or row["status"] != "pending":
                    raise ValidationError(
                        f"Generation {generation} of {document.slug} is not pending",
                        context={"document_slug": document.slug, "generation": generation},
                    )
                count_row = cur.execute(
                    "SELECT COUNT(*) AS count FROM chunks WHERE document_slug = ? AND generation = ?",
                    [document.slug, generation],
                ).fetchone()
                cur.execute(
                    """
                    INSERT INTO documents (
                      slug, title, owner_id, access_level, is_active, embedding_type,
                      chunk_limit, abstract, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(slug) DO UPDATE SET
                      title = excluded.title,
                      embedding_type = excluded.embedding_type,
                      chunk_limit = COALESCE(excluded.chunk_limit, documents.chunk_limit),
                      abstract = COALESCE(excluded.abstract, documents.abstract),
                      updated_at = excluded.updated_at
                    """,
                    [
                        document.slug,
                        document.title,
                        document.owner_id,
                        document.access_level,
                        1 if document.is_active else 0,
                        document.embedding_type,
                        document.chunk_limit,
                        document.abstract,
                        now,
                        now,
                    ],
                )
                if replace:
                    rows = cur.execute(
                        """
                        SELECT generation FROM document_generations
                        WHERE document_slug = ? AND status = 'live' AND generation != ?
                        """,
                        [document.slug, generation],
                    ).fetchall()
                    retired = [int(item["generation"]) for item in rows]
                    cur.execute(
                        """
                        DELETE FROM document_generations
                        WHERE document_slug = ? AND status IN ('live', 'retired') AND generation != ?
                        """,
                        [document.slug, generation],
                    )
                cur.execute(
                    """
                    UPDATE document_generations
                    SET status = 'live', chunk_count = ?, published_at = ?
                    WHERE document_slug = ? AND generation = ?
                    """,
                    [int(count_row["count"]), now, document.slug, generation],
                )
        except sqlite3.Error as exc:
            raise classify(exc, {"document_slug": document.slug, "generation": generation}) from exc
        logger.info(
            "Published generation %s of %s",
            generation,
            document.slug,
            extra=log_context(document_slug=document.slug, generation=generation, retired=retired),
        )
        return retired

    def delete_generation(self, slug: str, generation: int) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                "DELETE FROM document_generations WHERE document_slug = ? AND generation = ?",
                [slug, generation],
            )

    def list_chunks(self, slug: str) -> list[Chunk]:
        rows = self.db.query(
            f"""
            SELECT {_CHUNK_COLUMNS} FROM chunks c
            JOIN document_generations g
              ON g.document_slug = c.document_slug AND g.generation = c.generation
            WHERE c.document_slug = ? AND g.status = 'live'
            ORDER BY c.generation, c.ordinal
            """,
            [slug],
        )
        return [_row_to_chunk(row) for row in rows]

    def similarity_search(
        self,
        slug: str,
        query_vector: Sequence[float],
        k: int,
        min_similarity: float,
    ) -> list[tuple[Chunk, float]]:
        """Top ``k`` live chunks of ``slug`` scoring at least ``min_similarity``.

        Ordered by score descending, ties by generation then ordinal.
        """
        rows = self.db.query(
            f"""
            SELECT {_CHUNK_COLUMNS}, c.vector FROM chunks c
            JOIN document_generations g
              ON g.document_slug = c.document_slug AND g.generation = c.generation
            WHERE c.document_slug = ? AND g.status = 'live'
            ORDER BY c.generation, c.ordinal
            """,
            [slug],
        )
        if not rows:
            return []
        chunks = {row["id"]: _row_to_chunk(row) for row in rows}
        index = VectorIndex(dim=len(query_vector))
        try:
            index.upsert(list(chunks), [vector_from_bytes(row["vector"]) for row in rows])
        except ValueError as exc:
            raise ValidationError(
                f"Document {slug} is not stored in the query's embedding space",
                context={"document_slug": slug, "query_dim": len(query_vector)},
            ) from exc
        results = index.search(query_vector, top_k=k, min_score=min_similarity)
        return [(chunks[result.chunk_id], result.score) for result in results]

    # Processing events -----------------------------------------------

    def append_processing_event(self, event: ProcessingEvent) -> str:
        self.db.execute(
            """
            INSERT INTO processing_events (
              id, document_slug, action_type, status, upload_type, file_name, requested_by,
              byte_size, content_sha256, started_at
            ) VALUES (?, ?, ?, 'started', ?, ?, ?, ?, ?, ?)
            """,
            [
                event.id,
                event.document_slug,
                event.action_type,
                event.upload_type,
                event.file_name,
                event.requested_by,
                event.byte_size,
                event.content_sha256,
                int(event.started_at.timestamp() * 1000),
            ],
        )
        self.db.commit()
        return event.id

    def finalize_processing_event(self, event_id: str, status: str, details: dict[str, Any]) -> bool:
        """Move a started event to its terminal status. Only the first call wins."""
        if status not in {"completed", "failed"}:
            raise ValidationError(f"Invalid terminal status {status!r}")
        with self.db.transaction() as cur:
            cur.execute(
                """
                UPDATE processing_events
                SET status = ?, finished_at = ?, generation = ?, chunk_count = ?,
                    existing_chunk_count = ?, processing_time_ms = ?, error_kind = ?, error_message = ?,
                    byte_size = COALESCE(?, byte_size), content_sha256 = COALESCE(?, content_sha256)
                WHERE id = ? AND status = 'started'
                """,
                [
                    status,
                    now_ms(),
                    details.get("generation"),
                    details.get("chunk_count"),
                    details.get("existing_chunk_count"),
                    details.get("processing_time_ms"),
                    details.get("error_kind"),
                    details.get("error_message"),
                    details.get("byte_size"),
                    details.get("content_sha256"),
                    event_id,
                ],
            )
            updated = cur.rowcount
        return updated == 1

    def get_processing_event(self, event_id: str) -> ProcessingEvent | None:
        row = self.db.query_one(f"SELECT {_EVENT_COLUMNS} FROM processing_events WHERE id = ?", [event_id])
        return _row_to_event(row) if row else None

    def list_processing_events(self, slug: str, limit: int = 50) -> list[ProcessingEvent]:
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM processing_events WHERE document_slug = ? "
            "ORDER BY started_at DESC, rowid DESC LIMIT ?",
            [slug, limit],
        )
        return [_row_to_event(row) for row in rows]

    def stale_events(self, older_than_seconds: int) -> list[ProcessingEvent]:
        """Started events older than the threshold; candidates for external reconciliation."""
        cutoff = now_ms() - older_than_seconds * 1000
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM processing_events WHERE status = 'started' AND started_at < ? "
            "ORDER BY started_at",
            [cutoff],
        )
        return [_row_to_event(row) for row in rows]

    # Quizzes ----------------------------------------------------------

    def save_quiz(self, quiz: QuizSet) -> str:
        quiz_id = new_id("quiz")
        try:
            with self.db.transaction() as cur:
                cur.execute("DELETE FROM quizzes WHERE document_slug = ?", [quiz.document_slug])
                cur.execute(
                    """
                    INSERT INTO quizzes (id, document_slug, requested, failed_batches_json, generated_by, generated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        quiz_id,
                        quiz.document_slug,
                        quiz.requested,
                        orjson.dumps(quiz.failed_batches).decode("utf-8"),
                        quiz.generated_by,
                        int(quiz.generated_at.timestamp() * 1000),
                    ],
                )
                cur.executemany(
                    """
                    INSERT INTO quiz_questions (quiz_id, idx, question, options_json, correct_answer, explanation, page_number)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            quiz_id,
                            idx,
                            question.question,
                            orjson.dumps(question.options).decode("utf-8"),
                            question.correct_answer,
                            question.explanation,
                            question.page_number,
                        )
                        for idx, question in enumerate(quiz.questions)
                    ],
                )
        except sqlite3.Error as exc:
            raise classify(exc, {"document_slug": quiz.document_slug}) from exc
        return quiz_id

    def load_quiz(self, slug: str) -> QuizSet | None:
        header = self.db.query_one(
            "SELECT id, requested, failed_batches_json, generated_by, generated_at FROM quizzes WHERE document_slug = ?",
            [slug],
        )
        if header is None:
            return None
        rows = self.db.query(
            """
            SELECT question, options_json, correct_answer, explanation, page_number
            FROM quiz_questions WHERE quiz_id = ? ORDER BY idx
            """,
            [header["id"]],
        )
        return QuizSet(
            document_slug=slug,
            questions=[
                QuizQuestion(
                    question=row["question"],
                    options=orjson.loads(row["options_json"]),
                    correct_answer=int(row["correct_answer"]),
                    explanation=row["explanation"],
                    page_number=row["page_number"],
                )
                for row in rows
            ],
            requested=int(header["requested"]),
            generated_at=ms_to_datetime(header["generated_at"]),
            failed_batches=orjson.loads(header["failed_batches_json"]),
            generated_by=header["generated_by"],
        )

    def last_quiz_generated_at(self, slug: str) -> int | None:
        row = self.db.query_one("SELECT generated_at FROM quizzes WHERE document_slug = ?", [slug])
        return int(row["generated_at"]) if row else None

    # Chat audits ------------------------------------------------------

    def record_chat_audit(self, audit: ChatAudit) -> str:
        audit_id = audit.id or new_id("chat")
        self.db.execute(
            """
            INSERT INTO chat_audits (
              id, session_id, user_id, document_slugs_json, chunk_ids_json, retrieval_ms,
              generation_ms, model, streaming, partial_failure, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                audit_id,
                audit.session_id,
                audit.user_id,
                orjson.dumps(audit.document_slugs).decode("utf-8"),
                orjson.dumps(audit.chunk_ids).decode("utf-8"),
                audit.retrieval_ms,
                audit.generation_ms,
                audit.model,
                int(audit.streaming),
                int(audit.partial_failure),
                now_ms(),
            ],
        )
        self.db.commit()
        return audit_id

    def list_chat_audits(self, session_id: str | None = None, limit: int = 50) -> list[ChatAudit]:
        if session_id is None:
            rows = self.db.query(
                f"SELECT {_AUDIT_COLUMNS} FROM chat_audits ORDER BY created_at DESC, rowid DESC LIMIT ?",
                [limit],
            )
        else:
            rows = self.db.query(
                f"SELECT {_AUDIT_COLUMNS} FROM chat_audits WHERE session_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                [session_id, limit],
            )
        return [_row_to_audit(row) for row in rows]

    # Admin -----------------------------------------------------------

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in ("documents", "chunks", "processing_events", "quizzes", "chat_audits"):
            row = self.db.query_one(f"SELECT COUNT(*) AS count FROM {table}")
            counts[table] = int(row["count"]) if row else 0
        return counts


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        slug=row["slug"],
        title=row["title"],
        owner_id=row["owner_id"],
        access_level=row["access_level"],
        is_active=bool(row["is_active"]),
        embedding_type=row["embedding_type"],
        chunk_limit=row["chunk_limit"],
        abstract=row["abstract"],
        created_at=ms_to_datetime(row["created_at"]),
        updated_at=ms_to_datetime(row["updated_at"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_slug=row["document_slug"],
        generation=int(row["generation"]),
        ordinal=int(row["ordinal"]),
        text=row["text"],
        page_number=row["page_number"],
        start_char=int(row["start_char"]),
        end_char=int(row["end_char"]),
        token_count=int(row["token_count"]),
        embedding_type=row["embedding_type"],
    )


def _row_to_event(row: sqlite3.Row) -> ProcessingEvent:
    return ProcessingEvent(
        id=row["id"],
        document_slug=row["document_slug"],
        action_type=row["action_type"],
        status=row["status"],
        upload_type=row["upload_type"],
        file_name=row["file_name"],
        requested_by=row["requested_by"],
        byte_size=row["byte_size"],
        content_sha256=row["content_sha256"],
        generation=row["generation"],
        chunk_count=row["chunk_count"],
        existing_chunk_count=row["existing_chunk_count"],
        processing_time_ms=row["processing_time_ms"],
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        started_at=ms_to_datetime(row["started_at"]),
        finished_at=ms_to_datetime(row["finished_at"]),
    )



def _row_to_audit(row: sqlite3.Row) -> ChatAudit:
    return ChatAudit(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        document_slugs=orjson.loads(row["document_slugs_json"]),
        chunk_ids=orjson.loads(row["chunk_ids_json"]),
        retrieval_ms=row["retrieval_ms"],
        generation_ms=row["generation_ms"],
        model=row["model"],
        streaming=bool(row["streaming"]),
        partial_failure=bool(row["partial_failure"]),
        created_at=ms_to_datetime(row["created_at"]),
    )

__all__ = ["DocumentStore"]
