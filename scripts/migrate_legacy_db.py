"""Import the legacy combined db.json into the per-collection store."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# make the licstore package importable when run directly
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from licstore.core.logging import configure_logging
from licstore.repositories import get_database
from licstore.repositories.legacy import migrate_legacy_file


def main() -> None:
    ap = argparse.ArgumentParser(description="Migrate a legacy db.json into the configured store")
    ap.add_argument("legacy_file", type=Path, help="Path to the combined db.json")
    args = ap.parse_args()

    if not args.legacy_file.exists():
        ap.error(f"File not found: {args.legacy_file}")

    configure_logging()
    with get_database() as database:
        report = migrate_legacy_file(args.legacy_file, database)

    for name, count in report.imported.items():
        print(f"  {name}: {count} imported, {report.existing.get(name, 0)} already present")
    for name, count in report.skipped.items():
        print(f"  {name}: skipped ({count} documents, not managed by the store)")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # pragma: no cover - CLI
        sys.stderr.write(f"Error: {exc}\n")
        raise SystemExit(1)
