from __future__ import annotations

import sys
from pathlib import Path

import pytest

# make the licstore package importable for local test runs
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from licstore.core import config as core_config
from licstore.db import session as db_session
from licstore.db.create_tables import create_all, drop_all
from licstore.repositories import JsonDatabase
from licstore.repositories.sql_repository import SQLDatabase


@pytest.fixture(autouse=True)
def _fresh_settings():
    core_config.get_settings.cache_clear()
    yield
    core_config.get_settings.cache_clear()


@pytest.fixture()
def file_db(tmp_path):
    return JsonDatabase(tmp_path / "data")


@pytest.fixture()
def sql_db(tmp_path, monkeypatch):
    """SQLite file database with the documents table created."""
    db_file = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_file}")
    core_config.get_settings.cache_clear()
    db_session.get_engine.cache_clear()

    engine = db_session.get_engine()
    create_all(engine)
    database = SQLDatabase(engine)

    yield database

    drop_all(engine)
    database.close()
    db_session.get_engine.cache_clear()


@pytest.fixture(params=["file", "sql"])
def database(request):
    """Runs a test once per backend."""
    return request.getfixturevalue(f"{request.param}_db")
