"""Record Store — transactional CRUD over patients, procedures, measurements and users.

Tests cover:
    - create_patient / list_patients round trip with live procedure_count
    - UNIQUE-constraint conflicts, including two concurrent creates of one patient_id
    - create_procedure atomicity: invalid measurement anywhere → nothing persisted
    - stenosis boundaries 0 and 100 accepted; 100.1 and overflowing integers rejected
    - a storage failure on a later measurement leaves no procedure, measurement or study
    - delete_patient cascade N + M + 1 and the audit entry per removed row
    - update_patient, user lookups, last_login, deactivation
"""

import asyncio

import pytest
from sqlalchemy import func, select, text

from angiolab.core.domain_types import Gender, UserRole
from angiolab.core.errors import (
    ConflictError, RecordValidationError, ResourceNotFoundError, StorageError,
)
from angiolab.models import Procedure, Study, VesselMeasurement


# ─── Patients ────────────────────────────────────────────────────

async def test_create_patient_then_list_returns_exactly_one(store, actor):
    created = await store.create_patient("P-001", "Ana Silva", "1960-05-01", "F", actor.id)

    patients = await store.list_patients()

    matches = [p for p in patients if p.patient_id == "P-001"]
    assert len(matches) == 1
    assert matches[0].id == created.id
    assert matches[0].procedure_count == 0
    assert matches[0].created_by_name == "Tina Tech"
    assert matches[0].gender == Gender.FEMALE


async def test_create_patient_without_actor(store):
    created = await store.create_patient("P-002", "Bo Berg", "1970-01-31", "M", None)
    assert created.created_by is None
    assert created.created_by_name is None


async def test_duplicate_patient_id_conflicts(store, actor):
    await store.create_patient("P-001", "Ana Silva", "1960-05-01", "F", actor.id)

    with pytest.raises(ConflictError) as exc_info:
        await store.create_patient("P-001", "Other Person", "1980-02-02", "M", actor.id)

    assert exc_info.value.http_status == 409
    assert len(await store.list_patients()) == 1


async def test_concurrent_duplicate_creates_yield_one_row(store, actor):
    results = await asyncio.gather(
        store.create_patient("P-777", "First Caller", "1960-05-01", "F", actor.id),
        store.create_patient("P-777", "Second Caller", "1960-05-01", "F", actor.id),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert [p.patient_id for p in await store.list_patients()] == ["P-777"]


async def test_patient_id_is_case_sensitive(store, actor):
    await store.create_patient("p-100", "Lower Case", "1960-05-01", "F", actor.id)
    await store.create_patient("P-100", "Upper Case", "1960-05-01", "F", actor.id)
    assert len(await store.list_patients()) == 2


@pytest.mark.parametrize("patient_id", ["P 100", "P_100", "", "x" * 51])
async def test_invalid_patient_id_rejected(store, actor, patient_id):
    with pytest.raises(RecordValidationError) as exc_info:
        await store.create_patient(patient_id, "Ana Silva", "1960-05-01", "F", actor.id)
    assert exc_info.value.field == "patient_id"


@pytest.mark.parametrize("dob", ["1960-02-30", "01/05/1960", "1960-5-1", None])
async def test_invalid_date_of_birth_rejected(store, actor, dob):
    with pytest.raises(RecordValidationError):
        await store.create_patient("P-001", "Ana Silva", dob, "F", actor.id)
    assert await store.list_patients() == []


async def test_invalid_gender_rejected(store, actor):
    with pytest.raises(RecordValidationError) as exc_info:
        await store.create_patient("P-001", "Ana Silva", "1960-05-01", "X", actor.id)
    assert exc_info.value.field == "gender"


async def test_unknown_actor_is_not_found(store):
    with pytest.raises(ResourceNotFoundError):
        await store.create_patient("P-001", "Ana Silva", "1960-05-01", "F", 9999)
    assert await store.list_patients() == []


async def test_list_patients_newest_first_with_pagination(store, actor):
    for i in range(3):
        await store.create_patient(f"P-00{i}", f"Patient {i}", "1960-05-01", "F", actor.id)

    page = await store.list_patients(limit=2, offset=0)
    rest = await store.list_patients(limit=2, offset=2)

    assert [p.patient_id for p in page] == ["P-002", "P-001"]
    assert [p.patient_id for p in rest] == ["P-000"]


@pytest.mark.parametrize("limit,offset", [(0, 0), (1001, 0), (10, -1)])
async def test_list_patients_rejects_bad_pagination(store, limit, offset):
    with pytest.raises(RecordValidationError):
        await store.list_patients(limit=limit, offset=offset)


async def test_get_patient_returns_count(store, seeded_patient):
    patient = await store.get_patient("P-100")
    assert patient.procedure_count == 1
    with pytest.raises(ResourceNotFoundError):
        await store.get_patient("P-404")


async def test_update_patient_changes_fields_and_audits(store, audit, seeded_patient, actor):
    updated = await store.update_patient(
        "P-100", {"name": "Ana S. Silva", "gender": "F"}, actor.id,
    )

    assert updated.name == "Ana S. Silva"
    assert updated.updated_at >= seeded_patient.updated_at
    entries = await audit.recent(table_name="patients", record_id=seeded_patient.id)
    assert entries[0]["action"] == "update"
    assert entries[0]["old_values"] == {"name": "Ana Silva"}
    assert entries[0]["new_values"] == {"name": "Ana S. Silva"}


async def test_noop_update_writes_no_audit(store, audit, seeded_patient, actor):
    stored = await store.get_patient("P-100")
    before = await audit.recent(table_name="patients")
    updated = await store.update_patient("P-100", {"name": "Ana Silva"}, actor.id)
    after = await audit.recent(table_name="patients")

    assert updated.updated_at == stored.updated_at
    assert len(after) == len(before)


async def test_update_patient_rejects_immutable_fields(store, seeded_patient, actor):
    with pytest.raises(RecordValidationError):
        await store.update_patient("P-100", {"patient_id": "P-200"}, actor.id)


# ─── Procedures ──────────────────────────────────────────────────

async def test_create_procedure_example(store, actor):
    await store.create_patient("P-100", "Ana Silva", "1960-05-01", "F", actor.id)

    procedure = await store.create_procedure(
        "P-100", "VIKING", "2024-03-15",
        [{"vessel_name": "LAD", "stenosis_percentage": 75.0}],
        "Routine follow-up", actor.id,
    )

    assert procedure.study_name == "VIKING"
    assert procedure.performed_by_name == "Tina Tech"
    assert [(m.vessel_name, m.stenosis_percentage) for m in procedure.vessel_measurements] == [
        ("LAD", 75.0),
    ]
    stored = await store.get_procedures("P-100")
    assert len(stored) == 1
    assert stored[0].vessel_measurements[0].vessel_name == "LAD"
    assert (await store.list_patients())[0].procedure_count == 1


async def test_create_procedure_accepts_legacy_vessel_keys(store, seeded_patient, actor):
    procedure = await store.create_procedure(
        "P-100", "VIKING", "2024-04-01",
        [{"vessel": "RCA", "stenosisPercentage": 40, "measurementMethod": "QCA"}],
        None, actor.id,
    )
    assert procedure.vessel_measurements[0].vessel_name == "RCA"
    assert procedure.vessel_measurements[0].measurement_method == "QCA"


async def test_measurements_keep_insertion_order(store, seeded_patient, actor):
    vessels = ["RCA", "LAD", "LCX", "LM"]
    procedure = await store.create_procedure(
        "P-100", "VIKING", "2024-04-01",
        [{"vessel_name": v, "stenosis_percentage": 10.0} for v in vessels],
        None, actor.id,
    )
    assert [m.vessel_name for m in procedure.vessel_measurements] == vessels


async def test_empty_vessel_list_rejected_and_nothing_persisted(store, seeded_patient, actor):
    with pytest.raises(RecordValidationError) as exc_info:
        await store.create_procedure("P-100", "VIKING", "2024-04-01", [], None, actor.id)

    assert exc_info.value.field == "vessel_measurements"
    assert len(await store.get_procedures("P-100")) == 1


async def test_stenosis_boundaries_accepted(store, seeded_patient, actor):
    procedure = await store.create_procedure(
        "P-100", "VIKING", "2024-04-01",
        [
            {"vessel_name": "LAD", "stenosis_percentage": 0},
            {"vessel_name": "RCA", "stenosis_percentage": 100},
        ],
        None, actor.id,
    )
    assert [m.stenosis_percentage for m in procedure.vessel_measurements] == [0.0, 100.0]


@pytest.mark.parametrize("value", [100.1, -0.5, 10**400, "75", True, None, float("nan")])
async def test_invalid_stenosis_rejected_and_nothing_persisted(store, seeded_patient, actor, value):
    with pytest.raises(RecordValidationError):
        await store.create_procedure(
            "P-100", "NEW-STUDY", "2024-04-01",
            [
                {"vessel_name": "LAD", "stenosis_percentage": 50.0},
                {"vessel_name": "RCA", "stenosis_percentage": value},
            ],
            None, actor.id,
        )

    procedures = await store.get_procedures("P-100")
    assert len(procedures) == 1
    assert all(p.study_name == "VIKING" for p in procedures)


async def _row_counts(db):
    async with db.session() as session:
        return {
            model.__tablename__: (await session.execute(
                select(func.count()).select_from(model),
            )).scalar_one()
            for model in (Study, Procedure, VesselMeasurement)
        }


async def test_storage_failure_mid_measurements_leaves_nothing(db, store, seeded_patient, actor):
    async with db.engine.begin() as conn:
        await conn.execute(text(
            "CREATE TRIGGER reject_second_measurement "
            "BEFORE INSERT ON vessel_measurements "
            "WHEN (SELECT count(*) FROM vessel_measurements "
            "      WHERE procedure_id = NEW.procedure_id) >= 1 "
            "BEGIN SELECT RAISE(ABORT, 'second measurement rejected'); END"
        ))
    before = await _row_counts(db)

    with pytest.raises(StorageError):
        await store.create_procedure(
            "P-100", "NEW-STUDY", "2024-04-01",
            [
                {"vessel_name": "LAD", "stenosis_percentage": 50.0},
                {"vessel_name": "RCA", "stenosis_percentage": 20.0},
            ],
            None, actor.id,
        )

    assert await _row_counts(db) == before
    procedures = await store.get_procedures("P-100")
    assert [p.study_name for p in procedures] == ["VIKING"]


async def test_procedure_for_unknown_patient_not_found(store, actor):
    with pytest.raises(ResourceNotFoundError):
        await store.create_procedure(
            "P-404", "VIKING", "2024-04-01",
            [{"vessel_name": "LAD", "stenosis_percentage": 50.0}],
            None, actor.id,
        )


async def test_new_study_created_once_and_audited(store, audit, seeded_patient, actor):
    for day in ("2024-04-01", "2024-04-02"):
        await store.create_procedure(
            "P-100", "DANAMI", day,
            [{"vessel_name": "LAD", "stenosis_percentage": 30.0}],
            None, actor.id,
        )

    study_entries = await audit.recent(table_name="studies")
    assert len(study_entries) == 1
    assert study_entries[0]["new_values"]["name"] == "DANAMI"


async def test_procedures_ordered_by_date_desc(store, seeded_patient, actor):
    for day in ("2023-01-10", "2025-06-01"):
        await store.create_procedure(
            "P-100", "VIKING", day,
            [{"vessel_name": "LAD", "stenosis_percentage": 30.0}],
            None, actor.id,
        )

    dates = [p.procedure_date.isoformat() for p in await store.get_procedures("P-100")]
    assert dates == ["2025-06-01", "2024-03-15", "2023-01-10"]


async def test_get_procedures_unknown_patient(store):
    with pytest.raises(ResourceNotFoundError):
        await store.get_procedures("P-404")


# ─── Cascade delete ──────────────────────────────────────────────

async def test_delete_patient_removes_every_row(store, audit, seeded_patient, actor):
    await store.create_procedure(
        "P-100", "VIKING", "2024-05-01",
        [
            {"vessel_name": "LAD", "stenosis_percentage": 20.0},
            {"vessel_name": "RCA", "stenosis_percentage": 60.0},
        ],
        None, actor.id,
    )

    summary = await store.delete_patient("P-100", actor.id)

    assert (summary.patients, summary.procedures, summary.vessel_measurements) == (1, 2, 3)
    assert summary.total == 6
    with pytest.raises(ResourceNotFoundError):
        await store.get_procedures("P-100")
    deletes = [e for e in await audit.recent(limit=1000) if e["action"] == "delete"]
    assert len(deletes) == 6
    assert {e["table_name"] for e in deletes} == {"patients", "procedures", "vessel_measurements"}


async def test_delete_patient_twice_fails(store, seeded_patient):
    await store.delete_patient("P-100")
    with pytest.raises(ResourceNotFoundError):
        await store.delete_patient("P-100")


async def test_delete_leaves_other_patients(store, seeded_patient, actor):
    await store.create_patient("P-200", "Bo Berg", "1970-01-31", "M", actor.id)
    await store.delete_patient("P-100")
    assert [p.patient_id for p in await store.list_patients()] == ["P-200"]


# ─── Users ───────────────────────────────────────────────────────

async def test_create_user_normalizes_email(store, actor):
    assert actor.email == "tina.tech@angiolab.org"
    assert actor.role == UserRole.TECHNICIAN
    assert actor.active is True


async def test_duplicate_email_case_insensitive(store, actor):
    with pytest.raises(ConflictError):
        await store.create_user("TINA.TECH@angiolab.org", "hash", "Tina Again", "physician")


@pytest.mark.parametrize("email,name,role", [
    ("not-an-email", "Valid Name", "admin"),
    ("ok@lab.org", "X", "admin"),
    ("ok@lab.org", "Valid Name", "nurse"),
])
async def test_invalid_user_rejected(store, email, name, role):
    with pytest.raises(RecordValidationError):
        await store.create_user(email, "hash", name, role)


async def test_get_user_by_email_includes_hash(store, actor):
    user = await store.get_user_by_email("  TINA.tech@angiolab.org ")
    assert user is not None
    assert user.password_hash == "$2b$12$fakehash"
    assert await store.get_user_by_email("nobody@lab.org") is None


async def test_get_user_by_id_omits_hash(store, actor):
    user = await store.get_user_by_id(actor.id)
    assert user.name == "Tina Tech"
    assert not hasattr(user, "password_hash")
    assert await store.get_user_by_id(9999) is None


async def test_update_last_login(store, audit, actor):
    assert actor.last_login is None
    await store.update_last_login(actor.id)

    user = await store.get_user_by_id(actor.id)
    assert user.last_login is not None
    entries = await audit.recent(table_name="users", record_id=actor.id)
    assert entries[0]["action"] == "login"


async def test_update_last_login_unknown_user(store):
    with pytest.raises(ResourceNotFoundError):
        await store.update_last_login(9999)


async def test_deactivated_user_hidden_from_lookups(store, actor):
    admin = await store.create_user("admin@angiolab.org", "hash", "Ada Admin", "admin")

    result = await store.deactivate_user(actor.id, admin.id)

    assert result.active is False
    assert await store.get_user_by_email("tina.tech@angiolab.org") is None
    assert await store.get_user_by_id(actor.id) is None
