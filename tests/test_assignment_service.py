from __future__ import annotations

import os
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from licstore.core.errors import WriteFailureError
from licstore.repositories import LICENSES, SYSTEMS, JsonDatabase, json_storage
from licstore.services.assignment_service import (
    DANGLING_LICENSE,
    DANGLING_SYSTEM,
    MISSING_ASSIGNMENT,
    SEAT_COUNT,
    AssignmentService,
)


@pytest.fixture()
def service(database):
    svc = AssignmentService(database)
    for system_id in ("S1", "S2", "S3"):
        svc.create_system({"id": system_id, "name": f"System {system_id}"})
    return svc


def _systems(service):
    return {doc["id"]: doc for doc in service.database.collection(SYSTEMS).find()}


def _requirement_ids(system):
    return [r["licenseId"] for r in system.get("licenseRequirements", [])]


def _assert_symmetric(service):
    licenses = service.database.collection(LICENSES).find()
    systems = service.database.collection(SYSTEMS).find()
    for license in licenses:
        assert license["usedSeats"] == len(license["assignedSystems"])
        for system in systems:
            assigned = system["id"] in license["assignedSystems"]
            required = license["id"] in _requirement_ids(system)
            assert assigned == required, (license["id"], system["id"])
    assert service.check() == []


def test_assignment_then_unassignment(service):
    license = service.create_license(
        {"name": "Office", "product": "Office 365", "assignedSystems": ["S1", "S2"]}
    )
    systems = _systems(service)
    assert systems["S1"]["licenseRequirements"] == [
        {"licenseType": "Office 365", "quantity": 1, "licenseId": license["id"]}
    ]
    assert _requirement_ids(systems["S2"]) == [license["id"]]
    assert license["usedSeats"] == 2

    updated = service.update_license(license["id"], {"assignedSystems": ["S1"]})
    systems = _systems(service)
    assert _requirement_ids(systems["S1"]) == [license["id"]]
    assert _requirement_ids(systems["S2"]) == []
    assert updated["usedSeats"] == 1
    _assert_symmetric(service)


def test_license_sync_is_idempotent(service):
    license = service.create_license({"name": "IDE", "assignedSystems": "S1"})
    service.update_license(license["id"], {"assignedSystems": ["S1", "S1", " "]})
    service.update_license(license["id"], {"assignedSystems": ["S1"]})

    system = service.database.collection(SYSTEMS).find_by_id("S1")
    assert _requirement_ids(system) == [license["id"]]
    assert system["licenseRequirements"][0]["licenseType"] == "IDE"
    assert service.database.collection(LICENSES).find_by_id(license["id"])["assignedSystems"] == ["S1"]


def test_unknown_systems_are_dropped(service):
    license = service.create_license({"name": "IDE", "assignedSystems": ["S1", "nope"]})
    assert license["assignedSystems"] == ["S1"]
    assert license["usedSeats"] == 1


def test_operator_patch_on_license(service):
    license = service.create_license({"name": "IDE", "assignedSystems": ["S1"]})
    service.update_license(license["id"], {"$push": {"assignedSystems": "S3"}})

    assert _requirement_ids(_systems(service)["S3"]) == [license["id"]]
    _assert_symmetric(service)


def test_delete_license_pulls_requirements(service):
    keep = service.create_license({"name": "Keep", "assignedSystems": ["S1"]})
    doomed = service.create_license({"name": "Doomed", "assignedSystems": ["S1", "S2"]})

    assert service.delete_license(doomed["id"]) is True
    assert service.delete_license(doomed["id"]) is False
    systems = _systems(service)
    assert _requirement_ids(systems["S1"]) == [keep["id"]]
    assert _requirement_ids(systems["S2"]) == []


def test_system_side_propagates_to_licenses(service):
    office = service.create_license({"name": "Office", "product": "Office 365"})
    ide = service.create_license({"name": "IDE"})

    system = service.create_system(
        {
            "id": "S4",
            "licenseRequirements": [
                {"licenseId": office["id"]},
                {"licenseId": office["id"], "quantity": 3},
                {"licenseId": "unknown"},
                {"licenseType": "orphan"},
            ],
        }
    )
    assert system["licenseRequirements"] == [
        {"licenseId": office["id"], "licenseType": "Office 365", "quantity": 1}
    ]
    licenses = service.database.collection(LICENSES)
    assert licenses.find_by_id(office["id"])["assignedSystems"] == ["S4"]

    service.update_system("S4", {"licenseRequirements": [{"licenseId": ide["id"], "quantity": "2"}]})
    assert licenses.find_by_id(office["id"])["assignedSystems"] == []
    assert licenses.find_by_id(ide["id"])["assignedSystems"] == ["S4"]
    assert licenses.find_by_id(ide["id"])["usedSeats"] == 1
    assert _systems(service)["S4"]["licenseRequirements"][0]["quantity"] == 2

    assert service.delete_system("S4") is True
    assert licenses.find_by_id(ide["id"])["assignedSystems"] == []
    assert licenses.find_by_id(ide["id"])["usedSeats"] == 0
    _assert_symmetric(service)


def test_missing_records(service):
    assert service.update_license("does-not-exist", {"name": "x"}) is None
    assert service.update_system("does-not-exist", {"name": "x"}) is None
    assert service.delete_system("does-not-exist") is False


def test_failure_leaves_both_collections_untouched(service, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk gone")

    monkeypatch.setattr(AssignmentService, "_attach", staticmethod(explode))
    with pytest.raises(RuntimeError):
        service.create_license({"name": "Office", "assignedSystems": ["S1"]})

    assert service.database.collection(LICENSES).count() == 0
    assert all(not s.get("licenseRequirements") for s in _systems(service).values())


def test_symmetry_after_random_mutations(service):
    rng = random.Random(7)
    system_ids = ["S1", "S2", "S3"]
    license_ids = []

    for _ in range(60):
        action = rng.choice(["create_license", "update_license", "delete_license", "update_system"])
        if action == "create_license" or not license_ids:
            created = service.create_license(
                {"name": f"L{len(license_ids)}", "assignedSystems": rng.sample(system_ids, rng.randint(0, 3))}
            )
            license_ids.append(created["id"])
        elif action == "update_license":
            service.update_license(
                rng.choice(license_ids), {"assignedSystems": rng.sample(system_ids, rng.randint(0, 3))}
            )
        elif action == "delete_license":
            doomed = rng.choice(license_ids)
            license_ids.remove(doomed)
            service.delete_license(doomed)
        else:
            chosen = rng.sample(license_ids, rng.randint(0, len(license_ids)))
            service.update_system(
                rng.choice(system_ids), {"licenseRequirements": [{"licenseId": lid} for lid in chosen]}
            )
        _assert_symmetric(service)


def test_check_and_repair(file_db):
    licenses = file_db.collection(LICENSES)
    systems = file_db.collection(SYSTEMS)
    # drifted data written around the synchronizer
    systems.insert_many(
        [
            {"id": "S1", "licenseRequirements": [{"licenseType": "Office", "quantity": 1, "licenseId": "L1"}]},
            {"id": "S2", "licenseRequirements": [{"licenseType": "Gone", "quantity": 1, "licenseId": "L9"}]},
        ]
    )
    licenses.create({"id": "L1", "name": "Office", "assignedSystems": ["S2", "S7"], "usedSeats": 5})

    service = AssignmentService(file_db)
    kinds = {violation.kind for violation in service.check()}
    assert {MISSING_ASSIGNMENT, DANGLING_SYSTEM, DANGLING_LICENSE, SEAT_COUNT} <= kinds

    report = service.repair()
    assert report.changed
    assert report.dangling_removed == 2
    assert report.links_added == 2

    license = licenses.find_by_id("L1")
    assert license["assignedSystems"] == ["S2", "S1"]
    assert license["usedSeats"] == 2
    assert _requirement_ids(systems.find_by_id("S2")) == ["L1"]
    assert service.check() == []
    assert not service.repair().changed


@pytest.mark.parametrize("licenses_file_exists", [True, False])
def test_failed_replace_rolls_back_files_already_replaced(file_db, monkeypatch, licenses_file_exists):
    service = AssignmentService(file_db)
    service.create_system({"id": "S1", "name": "Build"})
    if licenses_file_exists:
        service.create_license({"id": "L0", "name": "Seed"})

    real_replace = os.replace
    calls = []

    def fail_second(src, dst):
        calls.append(dst)
        if len(calls) == 2:
            raise OSError(13, "Permission denied")
        return real_replace(src, dst)

    monkeypatch.setattr(json_storage.os, "replace", fail_second)
    with pytest.raises(WriteFailureError):
        service.create_license({"id": "L1", "name": "Office", "assignedSystems": ["S1"]})
    monkeypatch.undo()

    assert service.database.collection(LICENSES).find_by_id("L1") is None
    assert file_db.path_for(LICENSES).exists() is licenses_file_exists
    assert _systems(service)["S1"]["licenseRequirements"] == []
    assert service.check() == []
    leftovers = [p.name for p in file_db.data_dir.iterdir() if p.suffix in (".tmp", ".bak")]
    assert leftovers == []

    service.create_license({"id": "L1", "name": "Office", "assignedSystems": ["S1"]})
    _assert_symmetric(service)


def test_concurrent_synchronizer_writes(file_db):
    service = AssignmentService(file_db)
    service.create_system({"id": "S1", "name": "Build"})

    def assign(index):
        return service.create_license({"name": f"L{index}", "assignedSystems": ["S1"]})

    def rename(index):
        return service.update_system("S1", {"name": f"Build {index}"})

    with ThreadPoolExecutor(max_workers=8) as pool:
        assigned = [pool.submit(assign, index) for index in range(20)]
        renamed = [pool.submit(rename, index) for index in range(10)]
        created = [future.result() for future in assigned]
        for future in renamed:
            future.result()

    reloaded = AssignmentService(JsonDatabase(file_db.data_dir))
    system = reloaded.database.collection(SYSTEMS).find_by_id("S1")
    assert sorted(_requirement_ids(system)) == sorted(doc["id"] for doc in created)
    for license in reloaded.database.collection(LICENSES).find():
        assert license["assignedSystems"] == ["S1"]
        assert license["usedSeats"] == 1
    assert reloaded.check() == []
