"""
Persistence adapters.

Callers depend on :class:`Database`/:class:`Collection`; ``get_database``
picks the JSON file store or the SQL table from configuration.
"""

from __future__ import annotations

from licstore.core.config import BACKEND_SQL, Settings, get_settings

from .base import (
    COLLECTIONS,
    LICENSES,
    RELATIONS,
    SYSTEMS,
    USERS,
    VENDORS,
    Collection,
    Database,
    UnitOfWork,
)
from .document_set import DocumentSet
from .json_storage import JsonDatabase


def get_database(settings: Settings | None = None) -> Database:
    settings = settings or get_settings()
    if settings.backend == BACKEND_SQL:
        from licstore.db.create_tables import create_all
        from .sql_repository import SQLDatabase

        database = SQLDatabase()
        create_all(database.engine)
        return database
    return JsonDatabase(settings.data_dir)


__all__ = [
    "COLLECTIONS",
    "LICENSES",
    "RELATIONS",
    "SYSTEMS",
    "USERS",
    "VENDORS",
    "Collection",
    "Database",
    "DocumentSet",
    "JsonDatabase",
    "UnitOfWork",
    "get_database",
]
