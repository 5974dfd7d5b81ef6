"""
One-off data movers: the legacy combined ``db.json`` into the per-collection
layout, and one backend into another (file store -> SQL).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from licstore.core.errors import StoreCorruptionError
from licstore.core.ids import to_id

from .base import Database

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    imported: dict[str, int] = field(default_factory=dict)
    existing: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.imported.values())


def read_legacy_file(path: Path | str) -> dict[str, list]:
    """Load ``{collection: [documents]}`` from the combined legacy file."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        logger.error("Legacy file %s is not valid JSON: %s", path, exc)
        raise StoreCorruptionError(path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc
    if not isinstance(data, dict):
        raise StoreCorruptionError(path, "expected an object keyed by collection name")
    for name, documents in data.items():
        if not isinstance(documents, list):
            raise StoreCorruptionError(path, f"'{name}' is not a list")
    return data


def legacy_document(raw: dict) -> dict:
    """Rename ``_id`` to ``id``; everything else is kept verbatim."""
    doc = dict(raw)
    legacy_id = doc.pop("_id", None)
    if not to_id(doc.get("id")) and to_id(legacy_id):
        doc["id"] = to_id(legacy_id)
    return doc


def migrate_legacy_file(legacy_path: Path | str, database: Database) -> MigrationReport:
    """
    Import every known collection of the legacy combined file into
    ``database`` in one unit of work. Collections the store does not manage
    (``subscriptions``) are skipped and reported; documents whose id already
    exists are left untouched.
    """
    data = read_legacy_file(legacy_path)
    report = MigrationReport()
    known = [name for name in data if name in database.collection_names]
    for name in data:
        if name not in database.collection_names:
            report.skipped[name] = len(data[name])
            logger.warning("Skipping legacy collection %s (%d documents)", name, len(data[name]))

    if not known:
        return report

    with database.transaction(*known) as work:
        for name in known:
            documents = [legacy_document(raw) for raw in data[name] if isinstance(raw, dict)]
            imported, existing = _import(work[name], documents)
            report.imported[name] = imported
            report.existing[name] = existing
    logger.info("Migrated %d documents from %s", report.total, legacy_path)
    return report


def copy_database(source: Database, target: Database, names: Iterable[str] | None = None) -> MigrationReport:
    """Copy documents between backends, keeping ids and timestamps."""
    report = MigrationReport()
    names = list(names or source.collection_names)
    with source.transaction(*names) as src:
        snapshot = {name: src[name].find() for name in names}
    with target.transaction(*names) as dst:
        for name in names:
            imported, existing = _import(dst[name], snapshot[name])
            report.imported[name] = imported
            report.existing[name] = existing
    logger.info("Copied %d documents", report.total)
    return report


def _import(documents: Any, incoming: list[dict]) -> tuple[int, int]:
    imported = existing = 0
    for doc in incoming:
        if documents.find_by_id(doc.get("id")) is not None:
            existing += 1
            continue
        documents.create(doc)
        imported += 1
    return imported, existing
