"""
In-memory view of one collection inside a unit of work.

Both backends load a collection into a DocumentSet, run the CRUD operations
against it, then persist whatever it reports as changed. Documents handed
back to callers are deep copies.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Mapping

from licstore.core.errors import DuplicateIdError, InvalidDocumentError
from licstore.core.ids import generate_id, ids_equal, to_id
from licstore.core.utils import now_iso, to_storable
from licstore.domain.query import MISSING, resolve, select
from licstore.domain.updates import PROTECTED_FIELDS, apply_update

logger = logging.getLogger(__name__)


class DocumentSet:
    """Working copy of a collection's documents, in storage order."""

    def __init__(self, name: str, documents: Iterable[dict], version: int = 0):
        self.name = name
        self.documents: list[dict] = list(documents)
        self.version = version
        self.created: set[str] = set()
        self.updated: set[str] = set()
        self.deleted: set[str] = set()

    @property
    def dirty(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    # -------------------------- reads --------------------------
    def find(self, query: Mapping[str, Any] | None = None) -> list[dict]:
        return copy.deepcopy(select(self.documents, query))

    def find_one(self, query: Mapping[str, Any] | None = None) -> dict | None:
        found = select(self.documents, query)
        return copy.deepcopy(found[0]) if found else None

    def find_by_id(self, document_id: Any) -> dict | None:
        stored = self._get(document_id)
        return copy.deepcopy(stored) if stored is not None else None

    def count(self, query: Mapping[str, Any] | None = None) -> int:
        return len(select(self.documents, query))

    def distinct(self, field: str, query: Mapping[str, Any] | None = None) -> list:
        values: list = []
        for doc in select(self.documents, query):
            value = resolve(doc, field)
            if not isinstance(value, list):
                value = [value]
            for item in value:
                if item is MISSING or item is None or item in values:
                    continue
                values.append(copy.deepcopy(item))
        return values

    # -------------------------- writes --------------------------
    def create(self, document: Mapping[str, Any]) -> dict:
        raw = dict(document)
        document_id = to_id(raw.pop("id", None)) or generate_id()
        if self._get(document_id) is not None:
            raise DuplicateIdError(self.name, document_id)
        stored = {"id": document_id, **self._storable(raw)}
        now = now_iso()
        stored.setdefault("createdAt", now)
        stored["updatedAt"] = stored.get("updatedAt") or now
        self.documents.append(stored)
        self._mark_created(document_id)
        logger.debug("Created %s/%s", self.name, document_id)
        return copy.deepcopy(stored)

    def insert_many(self, documents: Iterable[Mapping[str, Any]]) -> list[dict]:
        return [self.create(doc) for doc in documents]

    def update(self, document_id: Any, patch: Mapping[str, Any]) -> dict | None:
        stored = self._get(document_id)
        if stored is None:
            return None
        changes = {key: value for key, value in dict(patch).items() if key not in PROTECTED_FIELDS}
        self._apply(stored, changes)
        self._mark_updated(stored["id"])
        return copy.deepcopy(stored)

    def update_many(self, query: Mapping[str, Any] | None, modifiers: Any) -> int:
        targets = select(self.documents, query)
        timestamp = now_iso()
        for stored in targets:
            self._apply(stored, modifiers, timestamp=timestamp)
            self._mark_updated(stored["id"])
        return len(targets)

    def delete(self, document_id: Any) -> bool:
        for index, doc in enumerate(self.documents):
            if ids_equal(doc.get("id"), document_id):
                del self.documents[index]
                self._mark_deleted(doc["id"])
                return True
        return False

    def delete_many(self, query: Mapping[str, Any] | None = None) -> int:
        doomed = select(self.documents, query)
        if not doomed:
            return 0
        doomed_ids = {id(doc) for doc in doomed}
        self.documents = [doc for doc in self.documents if id(doc) not in doomed_ids]
        for doc in doomed:
            self._mark_deleted(doc["id"])
        return len(doomed)

    # -------------------------- helpers --------------------------
    def _storable(self, document: dict) -> dict:
        try:
            return to_storable(document)
        except TypeError as exc:
            logger.error("Rejected document for %s: %s", self.name, exc)
            raise InvalidDocumentError(self.name, str(exc)) from exc

    def _apply(self, stored: dict, update: Any, timestamp: str | None = None) -> None:
        """Apply ``update`` to a copy and keep it only if the result is storable."""
        candidate = apply_update(copy.deepcopy(stored), copy.deepcopy(update), timestamp=timestamp)
        candidate = self._storable(candidate)
        stored.clear()
        stored.update(candidate)

    def _get(self, document_id: Any) -> dict | None:
        for doc in self.documents:
            if ids_equal(doc.get("id"), document_id):
                return doc
        return None

    def _mark_created(self, document_id: str) -> None:
        if document_id in self.deleted:
            # deleted then recreated: the stored row is overwritten
            self.deleted.discard(document_id)
            self.updated.add(document_id)
            return
        self.created.add(document_id)

    def _mark_updated(self, document_id: str) -> None:
        if document_id not in self.created:
            self.updated.add(document_id)

    def _mark_deleted(self, document_id: str) -> None:
        if document_id in self.created:
            self.created.discard(document_id)
            return
        self.updated.discard(document_id)
        self.deleted.add(document_id)

    def changed_documents(self) -> tuple[list[dict], list[dict], list[str]]:
        """Return (created, updated, deleted ids) for row-oriented backends."""
        created = [doc for doc in self.documents if doc["id"] in self.created]
        updated = [doc for doc in self.documents if doc["id"] in self.updated]
        return created, updated, sorted(self.deleted)
