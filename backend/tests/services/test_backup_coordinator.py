"""Backup Coordinator — consistent snapshots, retention, listing, retrieval and restore.

Tests cover:
    - manual backup counts reconcile with export_all()
    - retention: 55 manual backups with cap 50 keep exactly the 50 newest
    - auto backups have their own prefix and cap and never raise
    - a held write gate bounds capture (BackupError / None, never a hang)
    - backups taken while patients are deleted are each one consistent point in time
    - retrieve_backup rejects traversal, missing files, bad JSON, bad envelopes
    - restore_backup replaces clinical tables, merges users, keeps audit_log
"""

import asyncio
import json

import pytest

from angiolab.core.backup_rules import AUTO_PREFIX, MANUAL_PREFIX
from angiolab.core.errors import BackupError, RecordValidationError, ResourceNotFoundError
from angiolab.services.backup_coordinator import BackupCoordinator
from angiolab.services.export_service import export_counts


# ─── Create ──────────────────────────────────────────────────────

async def test_manual_backup_counts_match_export(coordinator, exports, seeded_patient):
    path = await coordinator.create_manual_backup()

    assert path.name.startswith(MANUAL_PREFIX)
    assert path.exists()
    envelope = await coordinator.retrieve_backup(path.name)
    counts = envelope["metadata"]["counts"]
    tree_counts = export_counts(await exports.export_all())
    for table in ("patients", "procedures", "vessel_measurements"):
        assert counts[table] == tree_counts[table]
    assert envelope["metadata"]["kind"] == "manual"
    assert envelope["metadata"]["schema_version"] == "001_initial"


async def test_backup_payload_has_every_table(coordinator, seeded_patient):
    envelope = await coordinator.retrieve_backup(
        (await coordinator.create_manual_backup()).name,
    )

    assert list(envelope["data"]) == [
        "users", "studies", "patients", "procedures", "vessel_measurements", "audit_log",
    ]
    patient = envelope["data"]["patients"][0]
    assert patient["patient_id"] == "P-100"
    assert patient["date_of_birth"] == "1960-05-01"
    assert envelope["data"]["vessel_measurements"][0]["stenosis_percentage"] == 75.0


async def test_manual_retention_keeps_newest_fifty(coordinator, backup_dir):
    paths = [await coordinator.create_manual_backup() for _ in range(55)]

    remaining = sorted(p.name for p in backup_dir.iterdir())

    assert len(remaining) == 50
    assert remaining == sorted(p.name for p in paths[-50:])


async def test_auto_backups_use_own_prefix_and_cap(db, backup_dir):
    coordinator = BackupCoordinator(db, backup_dir, max_manual_backups=3, max_auto_backups=2)
    manual = await coordinator.create_manual_backup()
    autos = [await coordinator.create_auto_backup() for _ in range(4)]

    names = {p.name for p in backup_dir.iterdir()}

    assert all(p.name.startswith(AUTO_PREFIX) for p in autos)
    assert names == {manual.name, autos[2].name, autos[3].name}


async def test_auto_backup_never_raises(db, tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    coordinator = BackupCoordinator(db, blocker)

    assert await coordinator.create_auto_backup() is None
    with pytest.raises(BackupError) as exc_info:
        await coordinator.create_manual_backup()
    assert exc_info.value.operation == "write"


async def test_capture_times_out_while_gate_held(db, backup_dir):
    coordinator = BackupCoordinator(db, backup_dir, lock_timeout=0.05)

    async with db.write_gate():
        with pytest.raises(BackupError) as exc_info:
            await coordinator.create_manual_backup()
        assert await coordinator.create_auto_backup() is None

    assert exc_info.value.operation == "capture"
    assert not backup_dir.exists() or not any(backup_dir.iterdir())


async def test_backups_during_deletes_are_self_consistent(coordinator, store, actor):
    for i in range(6):
        patient_id = f"P-50{i}"
        await store.create_patient(patient_id, f"Patient {i}", "1960-05-01", "F", actor.id)
        for day in ("2024-01-10", "2024-02-10"):
            await store.create_procedure(
                patient_id, "VIKING", day,
                [
                    {"vessel_name": "LAD", "stenosis_percentage": 40.0},
                    {"vessel_name": "RCA", "stenosis_percentage": 60.0},
                ],
                None, actor.id,
            )

    results = await asyncio.gather(
        *(store.delete_patient(f"P-50{i}", actor.id) for i in range(6)),
        *(coordinator.create_manual_backup() for _ in range(4)),
    )

    for path in results[6:]:
        data = (await coordinator.retrieve_backup(path.name))["data"]
        patient_ids = {p["id"] for p in data["patients"]}
        procedure_ids = {p["id"] for p in data["procedures"]}
        assert all(p["patient_id"] in patient_ids for p in data["procedures"])
        assert all(m["procedure_id"] in procedure_ids for m in data["vessel_measurements"])
        assert len(data["procedures"]) == 2 * len(data["patients"])
        assert len(data["vessel_measurements"]) == 2 * len(data["procedures"])


# ─── List / retrieve ─────────────────────────────────────────────

async def test_list_backups_newest_first(coordinator, backup_dir):
    first = await coordinator.create_manual_backup()
    second = await coordinator.create_auto_backup()
    (backup_dir / "hand-copied.json").write_text("{}")
    (backup_dir / "notes.txt").write_text("ignored")

    listing = await coordinator.list_backups()

    assert {b.name for b in listing} == {first.name, second.name, "hand-copied.json"}
    kinds = {b.name: b.type for b in listing}
    assert kinds[first.name] == "manual"
    assert kinds[second.name] == "auto"
    assert kinds["hand-copied.json"] == "manual"
    assert [b.created_at for b in listing] == sorted(
        (b.created_at for b in listing), reverse=True,
    )


async def test_list_backups_empty_dir(coordinator):
    assert await coordinator.list_backups() == []


@pytest.mark.parametrize("name", ["../secrets.json", "sub/dir.json", ".hidden.json", "x.txt"])
async def test_retrieve_rejects_unsafe_names(coordinator, name):
    with pytest.raises(RecordValidationError):
        await coordinator.retrieve_backup(name)


async def test_retrieve_missing_backup(coordinator):
    with pytest.raises(ResourceNotFoundError):
        await coordinator.retrieve_backup("angio-lab-backup-missing.json")


@pytest.mark.parametrize("content", [
    "not json at all",
    json.dumps([1, 2, 3]),
    json.dumps({"data": {}}),
    json.dumps({"metadata": {}, "data": []}),
])
async def test_retrieve_rejects_malformed_artifacts(coordinator, backup_dir, content):
    backup_dir.mkdir(parents=True, exist_ok=True)
    (backup_dir / "broken.json").write_text(content)

    with pytest.raises(RecordValidationError):
        await coordinator.retrieve_backup("broken.json")


# ─── Restore ─────────────────────────────────────────────────────

async def test_restore_replaces_clinical_tables(coordinator, store, seeded_patient, actor):
    backup = await coordinator.create_manual_backup()
    await store.delete_patient("P-100", actor.id)
    await store.create_patient("P-200", "Bo Berg", "1970-01-31", "M", actor.id)

    result = await coordinator.restore_backup(backup.name, actor.id)

    assert [p.patient_id for p in await store.list_patients()] == ["P-100"]
    procedures = await store.get_procedures("P-100")
    assert procedures[0].vessel_measurements[0].vessel_name == "LAD"
    assert procedures[0].vessel_measurements[0].stenosis_percentage == 75.0
    assert result.restored["patients"] == 1
    assert result.restored["vessel_measurements"] == 1
    assert result.users_merged == 0
    assert result.safety_backup != backup.name


async def test_restore_takes_safety_backup_and_keeps_audit(
    coordinator, audit, store, seeded_patient, actor,
):
    backup = await coordinator.create_manual_backup()
    await store.create_patient("P-200", "Bo Berg", "1970-01-31", "M", actor.id)
    audit_before = len(await audit.recent(limit=1000))

    result = await coordinator.restore_backup(backup.name)

    safety = await coordinator.retrieve_backup(result.safety_backup)
    assert safety["metadata"]["counts"]["patients"] == 2
    entries = await audit.recent(limit=1000)
    assert len(entries) == audit_before + 1
    assert entries[0]["action"] == "restore"
    assert entries[0]["table_name"] == "*"
    assert entries[0]["new_values"]["name"] == backup.name


async def test_restore_merges_users(coordinator, store, seeded_patient, actor):
    backup = await coordinator.create_manual_backup()
    later = await store.create_user("late@angiolab.org", "hash", "Late Joiner", "physician")

    await coordinator.restore_backup(backup.name)

    assert await store.get_user_by_id(later.id) is not None
    assert await store.get_user_by_id(actor.id) is not None


async def test_restored_ids_do_not_collide_with_new_rows(coordinator, store, seeded_patient, actor):
    backup = await coordinator.create_manual_backup()
    await coordinator.restore_backup(backup.name)

    created = await store.create_patient("P-300", "New After Restore", "1990-09-09", "F", actor.id)

    assert created.id != seeded_patient.id


async def test_restore_rejects_bad_rows_before_writing(coordinator, store, backup_dir, seeded_patient):
    backup_dir.mkdir(parents=True, exist_ok=True)
    (backup_dir / "bad-rows.json").write_text(json.dumps({
        "metadata": {"kind": "manual"},
        "data": {"patients": [{"id": 1, "date_of_birth": "not-a-date"}]},
    }))

    with pytest.raises(RecordValidationError):
        await coordinator.restore_backup("bad-rows.json")

    assert [p.patient_id for p in await store.list_patients()] == ["P-100"]
