"""Document access decisions for callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from docchat.db.store import DocumentStore
from docchat.models.entities import Document

SUPER_ADMIN_ROLE = "super_admin"


@dataclass(frozen=True, slots=True)
class CallerContext:
    user_id: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_super_admin(self) -> bool:
        return SUPER_ADMIN_ROLE in self.roles

    @classmethod
    def from_headers(cls, user_id: str | None, roles: str | None) -> "CallerContext":
        """Build from ``X-User-Id`` and a comma separated ``X-User-Roles``."""
        parsed = frozenset(role.strip() for role in (roles or "").split(",") if role.strip())
        return cls(user_id=(user_id or "").strip() or None, roles=parsed)


class AccessPolicy(Protocol):
    def may_access(self, caller: CallerContext, document_slug: str) -> bool:
        ...


class DocumentAccessPolicy:
    """Access by the document's level; inactive documents are closed to everyone."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def may_access(self, caller: CallerContext, document_slug: str) -> bool:
        document = self.store.get_document(document_slug)
        if document is None:
            return False
        return document_allows(document, caller)


def document_allows(document: Document, caller: CallerContext) -> bool:
    if not document.is_active:
        return False
    if document.access_level == "public":
        return True
    if document.access_level == "registered":
        return caller.authenticated
    if document.access_level == "owner_restricted":
        return caller.is_super_admin or (caller.authenticated and caller.user_id == document.owner_id)
    return False


__all__ = ["CallerContext", "AccessPolicy", "DocumentAccessPolicy", "document_allows", "SUPER_ADMIN_ROLE"]
