"""In-memory evaluation of filters against documents.

Queries are total: unknown operators, invalid patterns and unparseable dates
simply fail to match.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping

from licstore.core.ids import ids_equal
from licstore.core.utils import parse_datetime

from .filters import (
    AllOf,
    ElemMatch,
    Eq,
    Exists,
    In,
    Ne,
    Predicate,
    Range,
    Regex,
    Unknown,
    compile_filter,
)

logger = logging.getLogger(__name__)

# Reference fields whose values may arrive as strings or as id objects.
ID_FIELDS = frozenset({"id", "ownerId", "managerId", "owner", "managedBy", "licenseId"})

MISSING = object()


def resolve(document: Mapping[str, Any], path: str) -> Any:
    """
    Follow a dotted path. Lists met along the way fan out, so
    ``licenseRequirements.licenseId`` yields the list of every entry's licenseId.
    Returns ``MISSING`` when nothing is found.
    """
    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list):
            collected = []
            for item in current:
                if isinstance(item, Mapping) and part in item:
                    collected.append(item[part])
            if not collected:
                return MISSING
            current = collected
        else:
            return MISSING
    return current


def is_id_field(path: str) -> bool:
    return path.rsplit(".", 1)[-1] in ID_FIELDS


def matches(document: Mapping[str, Any], query: Mapping[str, Any] | None) -> bool:
    """Return True when ``document`` satisfies every clause of ``query``."""
    predicates = compile_filter(query)
    for path, predicate in predicates.items():
        value = resolve(document, path)
        if not evaluate(predicate, value, id_field=is_id_field(path)):
            return False
    return True


def select(documents: Iterable[Mapping[str, Any]], query: Mapping[str, Any] | None) -> list:
    predicates = compile_filter(query)
    if not predicates:
        return list(documents)
    return [doc for doc in documents if matches(doc, predicates)]


def evaluate(predicate: Predicate, value: Any, *, id_field: bool = False) -> bool:
    present = value is not MISSING
    if not present:
        value = None

    if isinstance(predicate, AllOf):
        return all(
            evaluate(p, value if present else MISSING, id_field=id_field)
            for p in predicate.predicates
        )
    if isinstance(predicate, Eq):
        return values_match(value, predicate.value, id_field=id_field)
    if isinstance(predicate, Ne):
        return not values_match(value, predicate.value, id_field=id_field)
    if isinstance(predicate, In):
        return any(values_match(value, candidate, id_field=id_field) for candidate in predicate.values)
    if isinstance(predicate, Exists):
        return present == predicate.present
    if isinstance(predicate, Regex):
        if id_field:
            pattern = predicate.pattern.pattern if isinstance(predicate.pattern, re.Pattern) else predicate.pattern
            return values_match(value, pattern, id_field=True)
        return _regex_match(value, predicate.pattern)
    if isinstance(predicate, Range):
        if isinstance(value, list):
            return any(_in_range(item, predicate) for item in value)
        return _in_range(value, predicate)
    if isinstance(predicate, ElemMatch):
        if not isinstance(value, list):
            return False
        return any(isinstance(item, Mapping) and partial_match(item, predicate.fields) for item in value)
    if isinstance(predicate, Unknown):
        logger.debug("Unknown query operator %s treated as non-matching", predicate.operator)
    return False


def values_match(value: Any, expected: Any, *, id_field: bool = False) -> bool:
    """Equality with the array rules: scalar-in-list and list intersection, ID-aware."""
    if isinstance(value, list):
        if isinstance(expected, (list, tuple)):
            if value == list(expected):
                return True
            return any(_scalar_equal(item, other, id_aware=True) for item in value for other in expected)
        return any(_scalar_equal(item, expected, id_aware=True) for item in value)
    if id_field:
        return ids_equal(value, expected)
    return _scalar_equal(value, expected, id_aware=False)


def partial_match(element: Mapping[str, Any], fields: Mapping[str, Any]) -> bool:
    """True when ``element`` carries every key/value pair of ``fields``."""
    for key, expected in fields.items():
        if key not in element:
            return False
        if not _scalar_equal(element[key], expected, id_aware=key in ID_FIELDS or key == "_id"):
            return False
    return True


def _scalar_equal(left: Any, right: Any, *, id_aware: bool) -> bool:
    if left is None and right is None:
        return True
    if left == right:
        return True
    if not id_aware:
        return False
    if isinstance(left, (Mapping, list)) or isinstance(right, (Mapping, list)):
        return False
    return ids_equal(left, right)


def _regex_match(value: Any, pattern: Any) -> bool:
    if isinstance(value, list):
        return any(_regex_match(item, pattern) for item in value)
    if not isinstance(value, str):
        return False
    try:
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(str(pattern))
    except re.error as exc:
        logger.warning("Invalid regex %r in query treated as non-matching: %s", pattern, exc)
        return False
    return compiled.search(value) is not None


def _in_range(value: Any, bounds: Range) -> bool:
    current = parse_datetime(value)
    if current is None:
        return False
    checks = (
        (bounds.lt, lambda limit: current < limit),
        (bounds.lte, lambda limit: current <= limit),
        (bounds.gt, lambda limit: current > limit),
        (bounds.gte, lambda limit: current >= limit),
    )
    for raw, check in checks:
        if raw is None:
            continue
        limit = parse_datetime(raw)
        if limit is None or not check(limit):
            return False
    return True
