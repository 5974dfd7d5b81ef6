"""Identifier helpers.

Identifiers reach the store in different shapes: plain strings read back from
JSON, ``None`` for missing references, or richer objects (row references,
ObjectId-like values) that only expose a string conversion. Everything that
compares two ids goes through :func:`ids_equal`.
"""

from __future__ import annotations

import secrets
from typing import Any, Iterable, NewType

DocumentId = NewType("DocumentId", str)


def generate_id() -> DocumentId:
    """Return a new 128-bit random identifier as 32 hex chars."""
    return DocumentId(secrets.token_hex(16))


def normalize(value: Any) -> str:
    """Coerce any id representation into a string without raising."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return str(value)
    except Exception:  # noqa: BLE001 - a broken __str__ must not break comparisons
        return ""


def ids_equal(a: Any, b: Any) -> bool:
    """Return True when both values denote the same non-empty identifier."""
    left = normalize(a)
    if not left:
        return False
    if a is b:
        return True
    return left == normalize(b)


def contains_id(values: Iterable[Any] | None, value: Any) -> bool:
    return any(ids_equal(item, value) for item in values or ())


def unique_ids(values: Iterable[Any] | None) -> list[DocumentId]:
    """De-duplicate ids (ID-aware), dropping blanks and keeping first-seen order."""
    seen: set[str] = set()
    result: list[DocumentId] = []
    for value in values or ():
        key = normalize(value).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(DocumentId(key))
    return result


def to_id(value: Any) -> DocumentId:
    """Canonical stored form: the normalised string without surrounding blanks."""
    return DocumentId(normalize(value).strip())
