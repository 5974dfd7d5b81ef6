"""
SQL backend against a temporary SQLite database, plus the CRUD behaviour both
backends must share.
"""
from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from licstore.core.errors import ConflictError, DuplicateIdError, InvalidDocumentError
from licstore.db.models import DocumentRow
from licstore.repositories import LICENSES, SYSTEMS, get_database
from licstore.repositories.sql_repository import SQLDatabase


def test_crud_parity(database):
    systems = database.collection(SYSTEMS)
    systems.insert_many(
        [
            {"id": "s1", "name": "Build", "os": "linux"},
            {"id": "s2", "name": "Desk", "os": "windows"},
        ]
    )
    created = systems.create({"name": "Mail", "os": "linux"})

    assert systems.find_by_id(created["id"]) == created
    assert [doc["id"] for doc in systems.find({"os": "linux"})] == ["s1", created["id"]]
    assert systems.find({"name": {"$regex": "^B"}})[0]["id"] == "s1"

    updated = systems.update("s2", {"name": "Desktop"})
    assert updated["name"] == "Desktop"
    assert updated["createdAt"] == systems.find_by_id("s2")["createdAt"]

    assert systems.delete("s1") is True
    assert systems.delete("s1") is False
    assert systems.count() == 2
    assert systems.find_by_id("does-not-exist") is None


def test_duplicate_id_parity(database):
    database.collection(LICENSES).create({"id": "lic-1"})
    with pytest.raises(DuplicateIdError):
        database.collection(LICENSES).create({"id": "lic-1"})


def test_rollback_parity(database):
    with pytest.raises(RuntimeError):
        with database.transaction(LICENSES, SYSTEMS) as work:
            work[LICENSES].create({"id": "lic-1"})
            work[SYSTEMS].create({"id": "sys-1"})
            raise RuntimeError("abort")

    assert database.collection(LICENSES).count() == 0
    assert database.collection(SYSTEMS).count() == 0


def test_delete_then_recreate_same_id(database):
    licenses = database.collection(LICENSES)
    licenses.create({"id": "lic-1", "name": "Old"})
    with database.transaction(LICENSES) as work:
        work[LICENSES].delete("lic-1")
        work[LICENSES].create({"id": "lic-1", "name": "New"})

    assert [doc["name"] for doc in licenses.find()] == ["New"]


def test_rows_keep_insertion_order(sql_db):
    systems = sql_db.collection(SYSTEMS)
    for name in ("c", "a", "b"):
        systems.create({"id": name})

    assert [doc["id"] for doc in systems.find()] == ["c", "a", "b"]
    with sql_db._sessionmaker() as session:
        rows = session.execute(select(DocumentRow).order_by(DocumentRow.seq)).scalars().all()
    assert [(row.collection, row.id, row.seq) for row in rows] == [
        (SYSTEMS, "c", 1),
        (SYSTEMS, "a", 2),
        (SYSTEMS, "b", 3),
    ]


def test_stale_row_raises_conflict(sql_db):
    sql_db.collection(LICENSES).create({"id": "lic-1", "name": "Office"})
    other = SQLDatabase(sql_db.engine)

    with pytest.raises(ConflictError):
        with sql_db.transaction(LICENSES) as work:
            work[LICENSES].update("lic-1", {"name": "Mine"})
            other.collection(LICENSES).update("lic-1", {"name": "Theirs"})

    assert sql_db.collection(LICENSES).find_by_id("lic-1")["name"] == "Theirs"


def test_concurrent_create_with_same_id_is_a_duplicate(sql_db):
    other = SQLDatabase(sql_db.engine)

    with pytest.raises(DuplicateIdError) as excinfo:
        with sql_db.transaction(LICENSES) as work:
            work[LICENSES].create({"id": "lic-1", "name": "Mine"})
            other.collection(LICENSES).create({"id": "lic-1", "name": "Theirs"})

    assert excinfo.value.document_id == "lic-1"
    assert [doc["name"] for doc in sql_db.collection(LICENSES).find()] == ["Theirs"]


def test_dates_are_stored_as_iso_strings(database):
    licenses = database.collection(LICENSES)
    created = licenses.create(
        {
            "id": "lic-1",
            "expiryDate": datetime(2025, 6, 30, tzinfo=timezone.utc),
            "renewals": (date(2024, 6, 30),),
        }
    )

    assert created["expiryDate"] == "2025-06-30T00:00:00+00:00"
    assert created["renewals"] == ["2024-06-30"]
    assert licenses.find_by_id("lic-1") == created
    assert licenses.count({"expiryDate": {"$lt": date(2026, 1, 1)}}) == 1

    updated = licenses.update("lic-1", {"renewedAt": date(2025, 1, 2)})
    assert updated["renewedAt"] == "2025-01-02"
    assert licenses.find_by_id("lic-1") == updated


def test_unstorable_values_are_rejected(database):
    licenses = database.collection(LICENSES)
    with pytest.raises(InvalidDocumentError):
        licenses.create({"id": "lic-1", "tags": {"a", "b"}})

    licenses.create({"id": "lic-2"})
    with pytest.raises(InvalidDocumentError):
        licenses.update("lic-2", {"owner": object()})

    assert licenses.count() == 1
    assert "owner" not in licenses.find_by_id("lic-2")


def test_row_validation_rejects_mismatched_id():
    with pytest.raises(ValueError):
        DocumentRow(collection=LICENSES, id="lic-1", seq=1, data={"id": "lic-2"})


def test_get_database_uses_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "sql")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'facade.db'}")
    from licstore.core.config import get_settings
    from licstore.db import session as db_session

    get_settings.cache_clear()
    db_session.get_engine.cache_clear()
    try:
        with get_database() as database:
            assert isinstance(database, SQLDatabase)
            database.collection(LICENSES).create({"id": "lic-1"})
            assert database.collection(LICENSES).count() == 1
    finally:
        db_session.get_engine.cache_clear()

    monkeypatch.setenv("STORE_BACKEND", "file")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "files"))
    get_settings.cache_clear()
    database = get_database()
    assert database.path_for(LICENSES) == tmp_path / "files" / "licenses.json"
