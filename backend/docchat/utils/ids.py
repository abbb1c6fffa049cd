"""Identifier helpers."""

from __future__ import annotations

import re
import uuid

from docchat.core.errors import ValidationError

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,127}$")


def new_id(prefix: str) -> str:
    """Random record id such as ``evt_<hex>``; the prefix names the record kind."""
    return f"{prefix}_{uuid.uuid4().hex}"


def validate_slug(slug: str) -> str:
    """Document slugs are lowercase and URL safe."""
    if not SLUG_RE.match(slug):
        raise ValidationError(
            "Document slugs use lowercase letters, digits, '-' and '_' (at most 128 characters)",
            context={"document_slug": slug},
        )
    return slug


__all__ = ["new_id", "validate_slug", "SLUG_RE"]
