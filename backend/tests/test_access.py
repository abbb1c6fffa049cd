"""Tests for document access decisions."""

from __future__ import annotations

import pytest

from docchat.models.entities import Document
from docchat.security.access import CallerContext, document_allows

ANONYMOUS = CallerContext()
MEMBER = CallerContext.from_headers("user-2", "")
OWNER = CallerContext.from_headers("user-1", None)
ADMIN = CallerContext.from_headers("admin", " super_admin , editor")


def _document(access_level: str, active: bool = True) -> Document:
    return Document(slug="doc", title="Doc", owner_id="user-1", access_level=access_level, is_active=active)


def test_roles_are_parsed_from_header() -> None:
    assert ADMIN.roles == frozenset({"super_admin", "editor"})
    assert ADMIN.is_super_admin
    assert CallerContext.from_headers("  ", None).authenticated is False


@pytest.mark.parametrize(
    ("access_level", "caller", "allowed"),
    [
        ("public", ANONYMOUS, True),
        ("registered", ANONYMOUS, False),
        ("registered", MEMBER, True),
        ("owner_restricted", MEMBER, False),
        ("owner_restricted", OWNER, True),
        ("owner_restricted", ADMIN, True),
    ],
)
def test_access_levels(access_level: str, caller: CallerContext, allowed: bool) -> None:
    assert document_allows(_document(access_level), caller) is allowed


def test_inactive_documents_are_closed() -> None:
    assert document_allows(_document("public", active=False), ADMIN) is False
