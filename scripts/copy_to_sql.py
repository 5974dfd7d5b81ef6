"""Copy every collection from the JSON file store into the SQL backend."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# make the licstore package importable when run directly
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from licstore.core.config import get_settings
from licstore.core.logging import configure_logging
from licstore.db.create_tables import create_all
from licstore.repositories import JsonDatabase
from licstore.repositories.legacy import copy_database
from licstore.repositories.sql_repository import SQLDatabase


def main() -> None:
    settings = get_settings()
    ap = argparse.ArgumentParser(description="Copy the JSON file store into DATABASE_URL")
    ap.add_argument("--data-dir", type=Path, default=settings.data_dir, help="Directory holding the collection files")
    args = ap.parse_args()

    if not settings.database_url:
        ap.error("DATABASE_URL is not set")

    configure_logging()
    source = JsonDatabase(args.data_dir)
    with SQLDatabase() as target:
        create_all(target.engine)
        report = copy_database(source, target)

    for name, count in report.imported.items():
        print(f"  {name}: {count} copied, {report.existing.get(name, 0)} already present")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # pragma: no cover - CLI
        sys.stderr.write(f"Error: {exc}\n")
        raise SystemExit(1)
