"""Quiz generation routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from docchat.api.dependencies import get_access_policy, get_caller, get_quiz_generator, get_store
from docchat.core.errors import AccessDeniedError, NotFoundError
from docchat.db.store import DocumentStore
from docchat.models.dto import QuizGenerateBody, QuizResponse
from docchat.models.entities import QuizSet
from docchat.quiz.generator import QuizGenerator
from docchat.security.access import CallerContext, DocumentAccessPolicy

router = APIRouter()


@router.post("/{slug}/generate", response_model=QuizResponse, summary="Generate the question bank for a document")
async def generate_quiz(
    slug: str,
    body: QuizGenerateBody | None = None,
    caller: CallerContext = Depends(get_caller),
    access: DocumentAccessPolicy = Depends(get_access_policy),
    generator: QuizGenerator = Depends(get_quiz_generator),
) -> QuizResponse:
    _authorize(slug, caller, access)
    quiz = await generator.generate_quiz(
        slug,
        question_count=body.question_count if body else None,
        privileged=caller.is_super_admin,
        generated_by=caller.user_id,
    )
    return _to_response(quiz)


@router.get("/{slug}", response_model=QuizResponse, summary="Stored question bank for a document")
async def get_quiz(
    slug: str,
    caller: CallerContext = Depends(get_caller),
    access: DocumentAccessPolicy = Depends(get_access_policy),
    store: DocumentStore = Depends(get_store),
) -> QuizResponse:
    _authorize(slug, caller, access)
    quiz = store.load_quiz(slug)
    if quiz is None:
        raise NotFoundError(f"No quiz has been generated for {slug}", context={"document_slug": slug})
    return _to_response(quiz)


def _authorize(slug: str, caller: CallerContext, access: DocumentAccessPolicy) -> None:
    if access.store.get_document(slug) is None:
        raise NotFoundError(f"Document {slug} does not exist", context={"document_slug": slug})
    if not access.may_access(caller, slug):
        raise AccessDeniedError(f"Access to {slug} is not allowed", context={"document_slug": slug})


def _to_response(quiz: QuizSet) -> QuizResponse:
    return QuizResponse(
        document_slug=quiz.document_slug,
        requested=quiz.requested,
        shortfall=quiz.shortfall,
        generated_at=quiz.generated_at,
        generated_by=quiz.generated_by,
        failed_batches=quiz.failed_batches,
        questions=[question.to_dict() for question in quiz.questions],
    )


__all__ = ["router"]
