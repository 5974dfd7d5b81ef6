"""
License <-> System assignment synchronizer.

A License lists the Systems it is installed on in ``assignedSystems``; each of
those Systems carries a ``{licenseType, quantity, licenseId}`` entry in
``licenseRequirements``. Every mutation that touches either side runs in one
unit of work over both collections, so the pair is written together or not
at all. ``usedSeats`` is always derived from ``len(assignedSystems)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from licstore.core.ids import contains_id, ids_equal, to_id, unique_ids
from licstore.repositories.base import LICENSES, SYSTEMS, Database
from licstore.repositories.document_set import DocumentSet

logger = logging.getLogger(__name__)

MISSING_REQUIREMENT = "missing-requirement"
MISSING_ASSIGNMENT = "missing-assignment"
DANGLING_SYSTEM = "dangling-system"
DANGLING_LICENSE = "dangling-license"
SEAT_COUNT = "seat-count"


@dataclass(frozen=True)
class Violation:
    kind: str
    license_id: str
    system_id: str = ""
    detail: str = ""


@dataclass
class RepairReport:
    licenses_updated: list[str] = field(default_factory=list)
    systems_updated: list[str] = field(default_factory=list)
    links_added: int = 0
    dangling_removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.licenses_updated or self.systems_updated)


class AssignmentService:
    """License/System writes that keep both sides of the assignment in step."""

    def __init__(self, database: Database):
        self.database = database

    # -------------------------- licenses --------------------------
    def create_license(self, data: Mapping[str, Any]) -> dict:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            doc = dict(data)
            assigned = self._known_systems(systems, doc.get("assignedSystems"))
            doc["assignedSystems"] = assigned
            doc["usedSeats"] = len(assigned)
            created = licenses.create(doc)
            self._attach(systems, created, assigned)
            return created

    def update_license(self, license_id: Any, patch: Mapping[str, Any]) -> dict | None:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            before = licenses.find_by_id(license_id)
            if before is None:
                return None
            changed = licenses.update(license_id, patch)
            assigned = self._known_systems(systems, changed.get("assignedSystems"))
            updated = licenses.update(
                license_id, {"assignedSystems": assigned, "usedSeats": len(assigned)}
            )
            removed = [
                system_id
                for system_id in before.get("assignedSystems") or []
                if not contains_id(assigned, system_id)
            ]
            self._detach(systems, updated["id"], removed)
            self._attach(systems, updated, assigned)
            return updated

    def delete_license(self, license_id: Any) -> bool:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            existing = licenses.find_by_id(license_id)
            if existing is None:
                return False
            holders = [
                system["id"]
                for system in systems.find()
                if _requirement_index(system, existing["id"]) is not None
            ]
            self._detach(systems, existing["id"], holders)
            return licenses.delete(existing["id"])

    # -------------------------- systems --------------------------
    def create_system(self, data: Mapping[str, Any]) -> dict:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            doc = dict(data)
            doc["licenseRequirements"] = self._known_requirements(
                licenses, doc.get("licenseRequirements")
            )
            created = systems.create(doc)
            for requirement in created["licenseRequirements"]:
                self._assign(licenses, requirement["licenseId"], created["id"])
            return created

    def update_system(self, system_id: Any, patch: Mapping[str, Any]) -> dict | None:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            before = systems.find_by_id(system_id)
            if before is None:
                return None
            changed = systems.update(system_id, patch)
            requirements = self._known_requirements(
                licenses, changed.get("licenseRequirements")
            )
            updated = systems.update(system_id, {"licenseRequirements": requirements})
            kept = [requirement["licenseId"] for requirement in requirements]
            for old in before.get("licenseRequirements") or []:
                old_id = _reference_id(old.get("licenseId")) if isinstance(old, Mapping) else ""
                if old_id and not contains_id(kept, old_id):
                    self._unassign(licenses, old_id, updated["id"])
            for license_id in kept:
                self._assign(licenses, license_id, updated["id"])
            return updated

    def delete_system(self, system_id: Any) -> bool:
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses, systems = work[LICENSES], work[SYSTEMS]
            existing = systems.find_by_id(system_id)
            if existing is None:
                return False
            for license in licenses.find():
                if contains_id(license.get("assignedSystems"), existing["id"]):
                    self._unassign(licenses, license["id"], existing["id"])
            return systems.delete(existing["id"])

    # -------------------------- consistency --------------------------
    def check(self) -> list[Violation]:
        """List every place where the two sides of the assignment disagree."""
        violations: list[Violation] = []
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses = _index(work[LICENSES].find())
            systems = _index(work[SYSTEMS].find())

        for license_id, license in licenses.items():
            assigned = license.get("assignedSystems") or []
            for system_id in assigned:
                system = systems.get(_reference_id(system_id))
                if system is None:
                    violations.append(Violation(DANGLING_SYSTEM, license_id, _reference_id(system_id)))
                elif _requirement_index(system, license_id) is None:
                    violations.append(Violation(MISSING_REQUIREMENT, license_id, system["id"]))
            if license.get("usedSeats") != len(assigned):
                violations.append(
                    Violation(
                        SEAT_COUNT,
                        license_id,
                        detail=f"usedSeats={license.get('usedSeats')!r}, assigned={len(assigned)}",
                    )
                )

        for system_id, system in systems.items():
            for requirement in system.get("licenseRequirements") or []:
                if not isinstance(requirement, Mapping):
                    continue
                license_id = _reference_id(requirement.get("licenseId"))
                license = licenses.get(license_id)
                if license is None:
                    violations.append(Violation(DANGLING_LICENSE, license_id, system_id))
                elif not contains_id(license.get("assignedSystems"), system_id):
                    violations.append(Violation(MISSING_ASSIGNMENT, license["id"], system_id))
        return violations

    def repair(self) -> RepairReport:
        """
        Make both sides agree: a link recorded on either side is added to the
        other, references to missing documents are dropped and ``usedSeats``
        is recomputed.
        """
        report = RepairReport()
        with self.database.transaction(LICENSES, SYSTEMS) as work:
            licenses_set, systems_set = work[LICENSES], work[SYSTEMS]
            licenses = _index(licenses_set.find())
            systems = _index(systems_set.find())

            from_licenses: list[tuple[str, str]] = []
            for license_id, license in licenses.items():
                for system_id in license.get("assignedSystems") or []:
                    key = _reference_id(system_id)
                    if key in systems:
                        from_licenses.append((license_id, key))
                    else:
                        report.dangling_removed += 1

            from_systems: list[tuple[str, str]] = []
            for system_id, system in systems.items():
                for requirement in system.get("licenseRequirements") or []:
                    key = _reference_id(requirement.get("licenseId")) if isinstance(requirement, Mapping) else ""
                    if key in licenses:
                        from_systems.append((key, system_id))
                    else:
                        report.dangling_removed += 1

            links = list(dict.fromkeys(from_licenses + from_systems))
            report.links_added = (
                len(set(links) - set(from_licenses)) + len(set(links) - set(from_systems))
            )

            for license_id, license in licenses.items():
                assigned = [system_id for owner, system_id in links if owner == license_id]
                if license.get("assignedSystems") != assigned or license.get("usedSeats") != len(assigned):
                    licenses_set.update(
                        license_id, {"assignedSystems": assigned, "usedSeats": len(assigned)}
                    )
                    report.licenses_updated.append(license_id)

            for system_id, system in systems.items():
                wanted = [owner for owner, linked in links if linked == system_id]
                requirements = self._known_requirements(
                    licenses_set, system.get("licenseRequirements")
                )
                for license_id in wanted:
                    if not any(ids_equal(r["licenseId"], license_id) for r in requirements):
                        requirements.append(_requirement_for(licenses[license_id]))
                if system.get("licenseRequirements") != requirements:
                    systems_set.update(system_id, {"licenseRequirements": requirements})
                    report.systems_updated.append(system_id)

        logger.info(
            "Repair finished: %d licenses and %d systems updated, %d links added, %d dangling references dropped",
            len(report.licenses_updated),
            len(report.systems_updated),
            report.links_added,
            report.dangling_removed,
        )
        return report

    # -------------------------- helpers --------------------------
    @staticmethod
    def _known_systems(systems: DocumentSet, value: Any) -> list[str]:
        """Normalise an ``assignedSystems`` value to stored System ids."""
        if value is None:
            return []
        if isinstance(value, (str, Mapping)) or not isinstance(value, Iterable):
            value = [value]
        known: list[str] = []
        for system_id in unique_ids(_reference_id(item) for item in value):
            system = systems.find_by_id(system_id)
            if system is None:
                logger.warning("Dropping unknown system %s from assignedSystems", system_id)
                continue
            known.append(system["id"])
        return known

    @staticmethod
    def _known_requirements(licenses: DocumentSet, value: Any) -> list[dict]:
        """Normalise ``licenseRequirements`` to one entry per existing License."""
        if value is None:
            return []
        if isinstance(value, Mapping):
            value = [value]
        requirements: list[dict] = []
        for entry in value:
            if not isinstance(entry, Mapping):
                logger.warning("Dropping malformed license requirement %r", entry)
                continue
            license_id = _reference_id(entry.get("licenseId"))
            if not license_id:
                logger.warning("Dropping license requirement without licenseId: %r", dict(entry))
                continue
            license = licenses.find_by_id(license_id)
            if license is None:
                logger.warning("Dropping license requirement for unknown license %s", license_id)
                continue
            if any(ids_equal(r["licenseId"], license["id"]) for r in requirements):
                continue
            requirement = dict(entry)
            requirement["licenseId"] = license["id"]
            requirement["licenseType"] = requirement.get("licenseType") or _license_type(license)
            requirement["quantity"] = _quantity(requirement.get("quantity"))
            requirements.append(requirement)
        return requirements

    @staticmethod
    def _attach(systems: DocumentSet, license: Mapping[str, Any], system_ids: Iterable[str]) -> None:
        for system_id in system_ids:
            system = systems.find_by_id(system_id)
            if system is None or _requirement_index(system, license["id"]) is not None:
                continue
            requirements = list(system.get("licenseRequirements") or [])
            requirements.append(_requirement_for(license))
            systems.update(system["id"], {"licenseRequirements": requirements})
            logger.info("Added requirement for license %s to system %s", license["id"], system["id"])

    @staticmethod
    def _detach(systems: DocumentSet, license_id: str, system_ids: Iterable[Any]) -> None:
        for system_id in system_ids:
            system = systems.find_by_id(system_id)
            if system is None:
                continue
            requirements = system.get("licenseRequirements") or []
            kept = [
                r for r in requirements
                if not (isinstance(r, Mapping) and ids_equal(_reference_id(r.get("licenseId")), license_id))
            ]
            if len(kept) != len(requirements):
                systems.update(system["id"], {"licenseRequirements": kept})
                logger.info("Removed requirement for license %s from system %s", license_id, system["id"])

    @staticmethod
    def _assign(licenses: DocumentSet, license_id: str, system_id: str) -> None:
        license = licenses.find_by_id(license_id)
        if license is None:
            return
        assigned = list(license.get("assignedSystems") or [])
        if contains_id(assigned, system_id):
            return
        assigned.append(system_id)
        licenses.update(license["id"], {"assignedSystems": assigned, "usedSeats": len(assigned)})
        logger.info("Assigned system %s to license %s", system_id, license["id"])

    @staticmethod
    def _unassign(licenses: DocumentSet, license_id: str, system_id: str) -> None:
        license = licenses.find_by_id(license_id)
        if license is None:
            return
        current = license.get("assignedSystems") or []
        assigned = [item for item in current if not ids_equal(_reference_id(item), system_id)]
        if len(assigned) == len(current) and license.get("usedSeats") == len(assigned):
            return
        licenses.update(license["id"], {"assignedSystems": assigned, "usedSeats": len(assigned)})
        logger.info("Unassigned system %s from license %s", system_id, license["id"])


def _reference_id(value: Any) -> str:
    """Id of a reference that may already be populated with the full document."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return to_id(value)


def _index(documents: Iterable[dict]) -> dict[str, dict]:
    return {_reference_id(doc.get("id")): doc for doc in documents}


def _requirement_index(system: Mapping[str, Any], license_id: str) -> int | None:
    for index, requirement in enumerate(system.get("licenseRequirements") or []):
        if isinstance(requirement, Mapping) and ids_equal(_reference_id(requirement.get("licenseId")), license_id):
            return index
    return None


def _license_type(license: Mapping[str, Any]) -> str:
    return license.get("product") or license.get("name") or ""


def _requirement_for(license: Mapping[str, Any]) -> dict:
    return {"licenseType": _license_type(license), "quantity": 1, "licenseId": license["id"]}


def _quantity(value: Any) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1
