"""Exception hierarchy shared by both storage backends.

Absent documents are not errors: lookups return ``None`` and deletes return
``False`` so callers branch explicitly.
"""

from __future__ import annotations

from pathlib import Path


class StoreError(Exception):
    """Base class for storage-related exceptions."""


class StoreCorruptionError(StoreError):
    """Raised when a backing file exists but cannot be read as a collection."""

    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"Collection file {path} is corrupt: {reason}")
        self.path = Path(path)
        self.reason = reason


class WriteFailureError(StoreError):
    """Raised when persisting a collection fails; wraps the underlying error."""

    def __init__(self, target: Path | str, cause: Exception):
        super().__init__(f"Failed to write {target}: {cause}")
        self.target = str(target)
        self.cause = cause


class ConflictError(StoreError):
    """Raised when a collection changed underneath an in-flight write."""

    def __init__(self, collection: str, expected: int | None = None, found: int | None = None):
        detail = ""
        if expected is not None and found is not None:
            detail = f" (expected version {expected}, found {found})"
        super().__init__(f"Concurrent modification of collection '{collection}'{detail}")
        self.collection = collection
        self.expected = expected
        self.found = found


class DuplicateIdError(StoreError):
    def __init__(self, collection: str, document_id: str):
        super().__init__(f"Document '{document_id}' already exists in '{collection}'")
        self.collection = collection
        self.document_id = document_id


class UnknownCollectionError(StoreError):
    def __init__(self, name: str):
        super().__init__(f"Unknown collection '{name}'")
        self.name = name


class InvalidUpdateError(StoreError):
    """Raised when an update document uses an operator the engine does not know."""


class InvalidDocumentError(StoreError):
    """Raised when a document holds a value JSON cannot represent."""

    def __init__(self, collection: str, reason: str):
        super().__init__(f"Cannot store document in '{collection}': {reason}")
        self.collection = collection
        self.reason = reason


class ValidationError(Exception):
    """Caller-level validation failure; the store itself never raises it."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
