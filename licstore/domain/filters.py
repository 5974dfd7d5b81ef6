"""Typed filter expressions understood by the query engine.

A filter is a mapping ``field -> Predicate``. Callers may build predicates
directly (``{"vendor": Regex("Micro")}``) or pass Mongo-style operator
documents (``{"vendor": {"$regex": "Micro"}}``); :func:`compile_filter`
turns both into the same typed form.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union


@dataclass(frozen=True)
class Eq:
    value: Any


@dataclass(frozen=True)
class Ne:
    value: Any


@dataclass(frozen=True)
class Regex:
    pattern: Any  # str or compiled re.Pattern


@dataclass(frozen=True)
class Range:
    lt: Any = None
    lte: Any = None
    gt: Any = None
    gte: Any = None


@dataclass(frozen=True)
class In:
    values: tuple


@dataclass(frozen=True)
class Exists:
    present: bool = True


@dataclass(frozen=True)
class ElemMatch:
    """Matches when one element of a list field contains every pair of ``fields``."""

    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Unknown:
    operator: str


@dataclass(frozen=True)
class AllOf:
    """Several predicates on one field, e.g. ``{"$gte": a, "$regex": b}``."""

    predicates: tuple


Predicate = Union[Eq, Ne, Regex, Range, In, Exists, ElemMatch, Unknown, AllOf]
PREDICATE_TYPES = (Eq, Ne, Regex, Range, In, Exists, ElemMatch, Unknown, AllOf)

_RANGE_OPERATORS = {"$lt": "lt", "$lte": "lte", "$gt": "gt", "$gte": "gte"}


def is_operator_document(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(
        isinstance(key, str) and key.startswith("$") for key in value
    )


def compile_predicate(value: Any) -> Predicate:
    if isinstance(value, PREDICATE_TYPES):
        return value
    if not is_operator_document(value):
        return Eq(value)

    predicates: list = []
    bounds: dict[str, Any] = {}
    for operator, operand in value.items():
        if operator in _RANGE_OPERATORS:
            bounds[_RANGE_OPERATORS[operator]] = operand
        elif operator == "$eq":
            predicates.append(Eq(operand))
        elif operator == "$ne":
            predicates.append(Ne(operand))
        elif operator == "$regex":
            predicates.append(Regex(operand))
        elif operator == "$in":
            predicates.append(In(tuple(operand or ())))
        elif operator == "$exists":
            predicates.append(Exists(bool(operand)))
        elif operator == "$elemMatch" and isinstance(operand, Mapping):
            predicates.append(ElemMatch(dict(operand)))
        elif operator == "$options" and "$regex" in value:
            # flags for the $regex next to it, applied below
            continue
        else:
            predicates.append(Unknown(operator))
    if bounds:
        predicates.append(Range(**bounds))

    options = value.get("$options")
    if options and "$regex" in value:
        predicates = [_with_options(p, options) for p in predicates]

    if len(predicates) == 1:
        return predicates[0]
    return AllOf(tuple(predicates))


def _with_options(predicate: Predicate, options: str) -> Predicate:
    if not isinstance(predicate, Regex) or not isinstance(predicate.pattern, str):
        return predicate
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    try:
        return Regex(re.compile(predicate.pattern, flags))
    except re.error:
        return predicate


def compile_filter(query: Mapping[str, Any] | None) -> dict[str, Predicate]:
    """Normalise a caller filter into ``{field: Predicate}``."""
    if not query:
        return {}
    return {key: compile_predicate(value) for key, value in query.items()}
