"""Partial mutations applied to stored documents.

Supported modifiers: merge (``Set``), ``Append`` ($append/$push),
``AddToSet`` ($addToSet) and ``Remove`` ($remove/$pull). There is no
increment: counters are recomputed by callers from list lengths.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from licstore.core.errors import InvalidUpdateError
from licstore.core.utils import now_iso

from .query import partial_match, values_match

# Fields the update engine never overwrites.
PROTECTED_FIELDS = frozenset({"id", "createdAt"})


@dataclass(frozen=True)
class Set:
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class Append:
    field: str
    value: Any


@dataclass(frozen=True)
class AddToSet:
    field: str
    value: Any


@dataclass(frozen=True)
class Remove:
    """Drop list elements equal to ``match`` or, for objects, containing all its pairs."""

    field: str
    match: Any


Modifier = Union[Set, Append, AddToSet, Remove]
MODIFIER_TYPES = (Set, Append, AddToSet, Remove)

_APPEND_OPERATORS = {"$append", "$push"}
_REMOVE_OPERATORS = {"$remove", "$pull"}


def compile_update(update: Any) -> list[Modifier]:
    """
    Accept a modifier, a list of modifiers, a plain mapping (merged as-is) or
    an operator mapping such as ``{"$set": {...}, "$pull": {"tags": "x"}}``.
    """
    if isinstance(update, MODIFIER_TYPES):
        return [update]
    if isinstance(update, Sequence) and not isinstance(update, (str, bytes)):
        modifiers: list[Modifier] = []
        for item in update:
            modifiers.extend(compile_update(item))
        return modifiers
    if not isinstance(update, Mapping):
        raise InvalidUpdateError(f"Unsupported update document: {update!r}")

    operator_keys = [key for key in update if isinstance(key, str) and key.startswith("$")]
    if not operator_keys:
        return [Set(dict(update))]
    if len(operator_keys) != len(update):
        raise InvalidUpdateError("Cannot mix operators and plain fields in one update")

    modifiers = []
    for operator, body in update.items():
        if not isinstance(body, Mapping):
            raise InvalidUpdateError(f"{operator} expects a mapping of field -> value")
        if operator == "$set":
            modifiers.append(Set(dict(body)))
        elif operator in _APPEND_OPERATORS:
            modifiers.extend(Append(field, value) for field, value in body.items())
        elif operator == "$addToSet":
            modifiers.extend(AddToSet(field, value) for field, value in body.items())
        elif operator in _REMOVE_OPERATORS:
            modifiers.extend(Remove(field, value) for field, value in body.items())
        else:
            raise InvalidUpdateError(f"Unknown update operator {operator}")
    return modifiers


def apply_update(document: dict, update: Any, *, timestamp: str | None = None) -> dict:
    """Mutate ``document`` in place and refresh ``updatedAt``."""
    for modifier in compile_update(update):
        _apply(document, modifier)
    document["updatedAt"] = timestamp or now_iso()
    return document


def _apply(document: dict, modifier: Modifier) -> None:
    if isinstance(modifier, Set):
        for key, value in modifier.fields.items():
            if key in PROTECTED_FIELDS:
                continue
            document[key] = value
    elif isinstance(modifier, Append):
        _list_field(document, modifier.field).append(modifier.value)
    elif isinstance(modifier, AddToSet):
        items = _list_field(document, modifier.field)
        if not any(values_match(item, modifier.value, id_field=True) for item in items):
            items.append(modifier.value)
    elif isinstance(modifier, Remove):
        current = document.get(modifier.field)
        if isinstance(current, list):
            document[modifier.field] = [item for item in current if not _removable(item, modifier.match)]


def _list_field(document: dict, field: str) -> list:
    if field in PROTECTED_FIELDS:
        raise InvalidUpdateError(f"Field '{field}' cannot be modified")
    current = document.get(field)
    if current is None:
        current = []
        document[field] = current
    elif not isinstance(current, list):
        raise InvalidUpdateError(f"Field '{field}' is not a list")
    return current


def _removable(item: Any, match: Any) -> bool:
    if isinstance(match, Mapping):
        return isinstance(item, Mapping) and partial_match(item, match)
    return values_match(item, match, id_field=True)
