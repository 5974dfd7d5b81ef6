"""Report or repair License/System assignment drift."""
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
from licstore.services.assignment_service import AssignmentService


def main() -> None:
    ap = argparse.ArgumentParser(description="Check License/System assignments")
    ap.add_argument("--fix", action="store_true", help="Repair the violations instead of only listing them")
    args = ap.parse_args()

    configure_logging()
    with get_database() as database:
        service = AssignmentService(database)
        violations = service.check()
        if not violations:
            print("Assignments are consistent.")
            return
        for violation in violations:
            target = f" system={violation.system_id}" if violation.system_id else ""
            detail = f" ({violation.detail})" if violation.detail else ""
            print(f"  {violation.kind}: license={violation.license_id}{target}{detail}")
        if not args.fix:
            raise SystemExit(2)

        report = service.repair()
        print(
            f"Repaired: {len(report.licenses_updated)} licenses, "
            f"{len(report.systems_updated)} systems, "
            f"{report.links_added} links added, {report.dangling_removed} dangling references dropped"
        )


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # pragma: no cover - CLI
        sys.stderr.write(f"Error: {exc}\n")
        raise SystemExit(1)
