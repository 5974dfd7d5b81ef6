"""
Backend-neutral CRUD surface.

Callers only see :class:`Database` and :class:`Collection`; whether the file
store or the SQL table answered is invisible to them. Every operation runs in
a unit of work: the backend locks and loads the requested collections into
:class:`DocumentSet` objects, the operation mutates them, and the backend
persists the changes only if the block finishes without raising.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Mapping

from licstore.core.errors import StoreError, UnknownCollectionError
from licstore.core.ids import normalize

from .document_set import DocumentSet

LICENSES = "licenses"
SYSTEMS = "systems"
USERS = "users"
VENDORS = "vendors"
COLLECTIONS = (LICENSES, SYSTEMS, USERS, VENDORS)

# relation field -> collection holding the referenced documents
RELATIONS = {
    "assignedSystems": SYSTEMS,
    "licenseRequirements.licenseId": LICENSES,
    "owner": USERS,
    "ownerId": USERS,
    "managedBy": USERS,
    "manager": USERS,
    "managerId": USERS,
    "vendorId": VENDORS,
}


class UnitOfWork:
    """The DocumentSets opened by one transaction, addressed by collection name."""

    def __init__(self, sets: Mapping[str, DocumentSet]):
        self.sets = dict(sets)

    def __getitem__(self, name: str) -> DocumentSet:
        try:
            return self.sets[name]
        except KeyError:
            raise UnknownCollectionError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self.sets

    def items(self):
        return self.sets.items()


class Database:
    """Common transaction bookkeeping; backends implement ``_begin``."""

    def __init__(self, collection_names: Iterable[str] = COLLECTIONS):
        self.collection_names = tuple(collection_names)
        self._local = threading.local()

    def collection(self, name: str) -> "Collection":
        self._check_names([name])
        return Collection(self, name)

    def __getitem__(self, name: str) -> "Collection":
        return self.collection(name)

    @contextmanager
    def transaction(self, *names: str) -> Iterator[UnitOfWork]:
        """
        Open a unit of work over ``names`` (all collections when omitted).

        Nested calls on the same thread join the outer unit of work, so
        Collection methods used inside a transaction commit with it.
        """
        requested = self._check_names(names or self.collection_names)
        active: UnitOfWork | None = getattr(self._local, "work", None)
        if active is not None:
            missing = [name for name in requested if name not in active]
            if missing:
                raise StoreError(
                    f"Collections {missing} are not part of the open transaction"
                )
            yield active
            return

        with self._begin(requested) as work:
            self._local.work = work
            try:
                yield work
            finally:
                self._local.work = None

    def _begin(self, names: list[str]):
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources; the file store holds none."""

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _check_names(self, names: Iterable[str]) -> list[str]:
        checked = []
        for name in names:
            if name not in self.collection_names:
                raise UnknownCollectionError(name)
            if name not in checked:
                checked.append(name)
        return checked


class Collection:
    """CRUD surface of one collection, identical across backends."""

    def __init__(self, database: Database, name: str):
        self.database = database
        self.name = name

    def __repr__(self) -> str:
        return f"Collection({self.name!r})"

    @contextmanager
    def _work(self) -> Iterator[DocumentSet]:
        with self.database.transaction(self.name) as work:
            yield work[self.name]

    # -------------------------- reads --------------------------
    def find(self, query: Mapping[str, Any] | None = None) -> list[dict]:
        with self._work() as docs:
            return docs.find(query)

    def find_one(self, query: Mapping[str, Any] | None = None) -> dict | None:
        with self._work() as docs:
            return docs.find_one(query)

    def find_by_id(self, document_id: Any) -> dict | None:
        with self._work() as docs:
            return docs.find_by_id(document_id)

    def count(self, query: Mapping[str, Any] | None = None) -> int:
        with self._work() as docs:
            return docs.count(query)

    def distinct(self, field: str, query: Mapping[str, Any] | None = None) -> list:
        with self._work() as docs:
            return docs.distinct(field, query)

    # -------------------------- writes --------------------------
    def create(self, document: Mapping[str, Any]) -> dict:
        with self._work() as docs:
            return docs.create(document)

    def insert_many(self, documents: Iterable[Mapping[str, Any]]) -> list[dict]:
        with self._work() as docs:
            return docs.insert_many(documents)

    def update(self, document_id: Any, patch: Mapping[str, Any]) -> dict | None:
        with self._work() as docs:
            return docs.update(document_id, patch)

    def update_many(self, query: Mapping[str, Any] | None, modifiers: Any) -> int:
        with self._work() as docs:
            return docs.update_many(query, modifiers)

    def delete(self, document_id: Any) -> bool:
        with self._work() as docs:
            return docs.delete(document_id)

    def delete_many(self, query: Mapping[str, Any] | None = None) -> int:
        with self._work() as docs:
            return docs.delete_many(query)

    # -------------------------- relations --------------------------
    def populate(self, documents: Any, field: str) -> Any:
        """
        Replace the foreign id(s) stored under ``field`` with the referenced
        documents. Works on copies; ids that resolve to nothing stay as-is.
        """
        if documents is None:
            return None
        target = RELATIONS.get(field)
        if target is None:
            raise ValueError(f"'{field}' is not a known relation field")

        single = isinstance(documents, Mapping)
        cloned = [copy.deepcopy(dict(documents))] if single else copy.deepcopy(list(documents))
        head, _, tail = field.partition(".")

        with self.database.transaction(target) as work:
            foreign = work[target]

            def lookup(value: Any) -> Any:
                if not normalize(value):
                    return value
                found = foreign.find_by_id(value)
                return found if found is not None else value

            for doc in cloned:
                if head not in doc:
                    continue
                if not tail:
                    doc[head] = _populate_value(doc[head], lookup)
                    continue
                container = doc[head]
                items = container if isinstance(container, list) else [container]
                for item in items:
                    if isinstance(item, dict) and tail in item:
                        item[tail] = _populate_value(item[tail], lookup)

        return cloned[0] if single else cloned


def _populate_value(value: Any, lookup) -> Any:
    if isinstance(value, list):
        return [lookup(item) for item in value]
    return lookup(value)

