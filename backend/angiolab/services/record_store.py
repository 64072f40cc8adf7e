"""Record Store — the sole mutator of clinical data: patients, procedures, measurements, users.

Invariants:
    - Inputs validated by core/enforce_records BEFORE any transaction opens
    - Every mutation runs under the storage write gate inside one explicit transaction
    - Uniqueness (patient_id, email) decided by the UNIQUE constraint: IntegrityError → ConflictError
    - A Procedure and all its VesselMeasurements persist together or not at all
    - Patient delete removes measurements, then procedures, then the patient, in one transaction
    - Audit entries are written after commit, one per affected row; audit failure never undoes the mutation

Design Decisions:
    - Study get-or-create is an upsert (INSERT … ON CONFLICT DO NOTHING, then re-read)
    - Results are detached Pydantic schemas, built before the session closes
    - actor_id may be None for system operations; a given actor must exist
"""

import logging
from typing import Any, Mapping, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from angiolab.core.domain_types import AuditAction, TableName, UserId
from angiolab.core.enforce_records import (
    validate_patient_changes,
    validate_patient_external_id,
    validate_pagination,
    validate_patient_input,
    validate_procedure_input,
    validate_user_input,
)
from angiolab.core.errors import ConflictError, ErrorContext
from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.models.patient import Patient
from angiolab.models.procedure import Procedure
from angiolab.models.study import Study
from angiolab.models.user import User
from angiolab.models.vessel_measurement import VesselMeasurement
from angiolab.schemas.records import (
    DeletionSummary,
    PatientResponse,
    ProcedureResponse,
    UserRecord,
    UserResponse,
)
from angiolab.services.audit_log import AuditLog, AuditRecord
from angiolab.services.persistence_helpers import (
    build_procedure_response,
    fetch_procedures,
    get_patient_or_404,
    get_user_or_404,
    insert_ignore,
    snapshot_row,
    user_name,
    utcnow,
)

logger = logging.getLogger(__name__)

_USER_AUDIT_EXCLUDE = ("password_hash",)


class RecordStore:
    """Transactional CRUD over User / Patient / Study / Procedure / VesselMeasurement."""

    def __init__(self, db: DatabaseSessionManager, audit: AuditLog):
        self._db = db
        self._audit = audit

    # ─── Patients ────────────────────────────────────────────────

    async def create_patient(
        self,
        patient_id: str,
        name: str,
        date_of_birth: Any,
        gender: str,
        actor_id: UserId | None,
    ) -> PatientResponse:
        """Insert a patient; ConflictError if the external patient_id exists."""
        data = validate_patient_input(patient_id, name, date_of_birth, gender)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                creator = await _actor_name(session, actor_id)
                now = utcnow()
                patient = Patient(
                    patient_id=data.patient_id,
                    name=data.name,
                    date_of_birth=data.date_of_birth,
                    gender=data.gender.value,
                    created_by=actor_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(patient)
                await _flush_unique(
                    session, ConflictError(
                        "Patient", "patient_id", data.patient_id,
                        ErrorContext(patient_id=data.patient_id, table_name="patients"),
                    ),
                )
                response = PatientResponse.model_validate(patient).model_copy(
                    update={"created_by_name": creator, "procedure_count": 0},
                )
                audit = [AuditRecord(
                    AuditAction.CREATE, TableName.PATIENTS.value, patient.id,
                    user_id=actor_id, new_values=snapshot_row(patient),
                )]
            await self._audit.record(audit)

        logger.info(
            f"Patient {data.patient_id} created",
            extra={"patient_id": data.patient_id, "record_id": response.id},
        )
        return response

    async def update_patient(
        self, patient_id: str, changes: Mapping[str, Any], actor_id: UserId | None,
    ) -> PatientResponse:
        """Apply name / date_of_birth / gender changes; updated_at moves only on a real change."""
        external_id = validate_patient_external_id(patient_id)
        normalized = validate_patient_changes(changes)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                await _actor_name(session, actor_id)
                patient = await get_patient_or_404(session, external_id)
                old_values: dict[str, Any] = {}
                new_values: dict[str, Any] = {}
                for field, value in normalized.items():
                    if getattr(patient, field) != value:
                        old_values[field] = snapshot_row(patient)[field]
                        setattr(patient, field, value)
                        new_values[field] = snapshot_row(patient)[field]
                if new_values:
                    patient.updated_at = utcnow()
                    await session.flush()
                response = await self._patient_response(session, patient)
                audit = [AuditRecord(
                    AuditAction.UPDATE, TableName.PATIENTS.value, patient.id,
                    user_id=actor_id, old_values=old_values, new_values=new_values,
                )] if new_values else []
            await self._audit.record(audit)

        if new_values:
            logger.info(
                f"Patient {external_id} updated: {', '.join(new_values)}",
                extra={"patient_id": external_id},
            )
        return response

    async def get_patient(self, patient_id: str) -> PatientResponse:
        external_id = validate_patient_external_id(patient_id)
        async with self._db.session() as session:
            patient = await get_patient_or_404(session, external_id)
            return await self._patient_response(session, patient)

    async def list_patients(self, limit: int = 100, offset: int = 0) -> list[PatientResponse]:
        """Newest first, each with a live procedure_count."""
        limit, offset = validate_pagination(limit, offset)
        creator = aliased(User)
        procedure_count = func.count(Procedure.id).label("procedure_count")
        stmt = (
            select(Patient, procedure_count, creator.name)
            .outerjoin(Procedure, Procedure.patient_id == Patient.id)
            .outerjoin(creator, creator.id == Patient.created_by)
            .group_by(Patient.id, creator.name)
            .order_by(Patient.created_at.desc(), Patient.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).all()
            return [
                PatientResponse.model_validate(patient).model_copy(
                    update={"procedure_count": count, "created_by_name": creator_name},
                )
                for patient, count, creator_name in rows
            ]

    async def delete_patient(
        self, patient_id: str, actor_id: UserId | None = None,
    ) -> DeletionSummary:
        """Cascade delete: measurements, procedures, then the patient, atomically."""
        external_id = validate_patient_external_id(patient_id)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                await _actor_name(session, actor_id)
                patient = await get_patient_or_404(session, external_id)
                procedures = (await session.execute(
                    select(Procedure)
                    .where(Procedure.patient_id == patient.id)
                    .order_by(Procedure.id),
                )).scalars().all()
                procedure_ids = [p.id for p in procedures]
                measurements: Sequence[VesselMeasurement] = []
                if procedure_ids:
                    measurements = (await session.execute(
                        select(VesselMeasurement)
                        .where(VesselMeasurement.procedure_id.in_(procedure_ids))
                        .order_by(VesselMeasurement.id),
                    )).scalars().all()

                audit = [
                    AuditRecord(
                        AuditAction.DELETE, TableName.VESSEL_MEASUREMENTS.value, m.id,
                        user_id=actor_id, old_values=snapshot_row(m),
                    )
                    for m in measurements
                ] + [
                    AuditRecord(
                        AuditAction.DELETE, TableName.PROCEDURES.value, p.id,
                        user_id=actor_id, old_values=snapshot_row(p),
                    )
                    for p in procedures
                ] + [AuditRecord(
                    AuditAction.DELETE, TableName.PATIENTS.value, patient.id,
                    user_id=actor_id, old_values=snapshot_row(patient),
                )]

                if procedure_ids:
                    await session.execute(
                        delete(VesselMeasurement)
                        .where(VesselMeasurement.procedure_id.in_(procedure_ids))
                        .execution_options(synchronize_session=False),
                    )
                    await session.execute(
                        delete(Procedure)
                        .where(Procedure.patient_id == patient.id)
                        .execution_options(synchronize_session=False),
                    )
                await session.execute(
                    delete(Patient)
                    .where(Patient.id == patient.id)
                    .execution_options(synchronize_session=False),
                )
                summary = DeletionSummary(
                    patients=1,
                    procedures=len(procedures),
                    vessel_measurements=len(measurements),
                )
            await self._audit.record(audit)

        logger.info(
            f"Patient {external_id} deleted with {summary.procedures} procedure(s) "
            f"and {summary.vessel_measurements} measurement(s)",
            extra={"patient_id": external_id},
        )
        return summary

    # ─── Procedures ──────────────────────────────────────────────

    async def create_procedure(
        self,
        patient_id: str,
        study_name: str,
        procedure_date: Any,
        vessel_measurements: Sequence[Mapping[str, Any]],
        notes: str | None,
        actor_id: UserId | None,
    ) -> ProcedureResponse:
        """Procedure + study upsert + every measurement, all or nothing."""
        external_id = validate_patient_external_id(patient_id)
        data = validate_procedure_input(study_name, procedure_date, vessel_measurements, notes)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                patient = await get_patient_or_404(session, external_id)
                performer = await _actor_name(session, actor_id)
                now = utcnow()

                study_created = await insert_ignore(
                    session,
                    Study.__table__,
                    {"name": data.study_name, "active": True, "created_at": now},
                    ["name"],
                )
                study = (await session.execute(
                    select(Study).where(Study.name == data.study_name),
                )).scalar_one()

                procedure = Procedure(
                    patient_id=patient.id,
                    study_id=study.id,
                    study_name=data.study_name,
                    procedure_date=data.procedure_date,
                    performed_by=actor_id,
                    notes=data.notes,
                    created_at=now,
                )
                session.add(procedure)
                await session.flush()

                measurements = []
                for vessel in data.vessels:
                    measurement = VesselMeasurement(
                        procedure_id=procedure.id,
                        vessel_name=vessel.vessel_name,
                        stenosis_percentage=vessel.stenosis_percentage,
                        measurement_method=vessel.measurement_method,
                        notes=vessel.notes,
                    )
                    session.add(measurement)
                    await session.flush()
                    measurements.append(measurement)

                response = build_procedure_response(procedure, measurements, performer)

                audit = []
                if study_created:
                    audit.append(AuditRecord(
                        AuditAction.CREATE, TableName.STUDIES.value, study.id,
                        user_id=actor_id, new_values=snapshot_row(study),
                    ))
                audit.append(AuditRecord(
                    AuditAction.CREATE, TableName.PROCEDURES.value, procedure.id,
                    user_id=actor_id, new_values=snapshot_row(procedure),
                ))
                audit.extend(
                    AuditRecord(
                        AuditAction.CREATE, TableName.VESSEL_MEASUREMENTS.value, m.id,
                        user_id=actor_id, new_values=snapshot_row(m),
                    )
                    for m in measurements
                )
            await self._audit.record(audit)

        logger.info(
            f"Procedure {response.id} created for patient {external_id} "
            f"({len(measurements)} measurement(s), study {data.study_name})",
            extra={"patient_id": external_id, "procedure_id": response.id},
        )
        return response

    async def get_procedures(self, patient_id: str) -> list[ProcedureResponse]:
        """Procedures by date desc, each with its measurements in insertion order."""
        external_id = validate_patient_external_id(patient_id)
        async with self._db.session() as session:
            patient = await get_patient_or_404(session, external_id)
            grouped = await fetch_procedures(session, [patient.id])
        return grouped.get(patient.id, [])

    # ─── Users ───────────────────────────────────────────────────

    async def create_user(
        self, email: str, password_hash: str, name: str, role: str,
    ) -> UserResponse:
        """Insert a user; ConflictError on a case-insensitive duplicate email."""
        data = validate_user_input(email, password_hash, name, role)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                user = User(
                    email=data.email,
                    password_hash=data.password_hash,
                    name=data.name,
                    role=data.role.value,
                    active=True,
                    created_at=utcnow(),
                )
                session.add(user)
                await _flush_unique(
                    session, ConflictError(
                        "User", "email", data.email, ErrorContext(table_name="users"),
                    ),
                )
                response = UserResponse.model_validate(user)
                audit = [AuditRecord(
                    AuditAction.CREATE, TableName.USERS.value, user.id,
                    new_values=snapshot_row(user, exclude=_USER_AUDIT_EXCLUDE),
                )]
            await self._audit.record(audit)

        logger.info(f"User {response.id} created ({response.role.value})", extra={"record_id": response.id})
        return response

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        """Active user including password_hash, for the identity collaborator."""
        if not isinstance(email, str) or not email.strip():
            return None
        async with self._db.session() as session:
            user = (await session.execute(
                select(User).where(User.email == email.strip().lower(), User.active.is_(True)),
            )).scalar_one_or_none()
            return UserRecord.model_validate(user) if user else None

    async def get_user_by_id(self, user_id: UserId) -> UserResponse | None:
        async with self._db.session() as session:
            user = (await session.execute(
                select(User).where(User.id == user_id, User.active.is_(True)),
            )).scalar_one_or_none()
            return UserResponse.model_validate(user) if user else None

    async def update_last_login(self, user_id: UserId) -> None:
        async with self._db.write_gate():
            async with self._db.transaction() as session:
                user = await get_user_or_404(session, user_id)
                previous = snapshot_row(user)["last_login"]
                user.last_login = utcnow()
                await session.flush()
                audit = [AuditRecord(
                    AuditAction.LOGIN, TableName.USERS.value, user.id, user_id=user.id,
                    old_values={"last_login": previous},
                    new_values={"last_login": snapshot_row(user)["last_login"]},
                )]
            await self._audit.record(audit)

    async def deactivate_user(self, user_id: UserId, actor_id: UserId | None) -> UserResponse:
        """Users are never hard-deleted; this clears `active`."""
        async with self._db.write_gate():
            async with self._db.transaction() as session:
                await _actor_name(session, actor_id)
                user = await get_user_or_404(session, user_id)
                was_active = user.active
                user.active = False
                await session.flush()
                response = UserResponse.model_validate(user)
                audit = [AuditRecord(
                    AuditAction.UPDATE, TableName.USERS.value, user.id, user_id=actor_id,
                    old_values={"active": was_active}, new_values={"active": False},
                )] if was_active else []
            await self._audit.record(audit)

        if was_active:
            logger.info(f"User {user_id} deactivated", extra={"record_id": user_id})
        return response

    # ─── Internals ───────────────────────────────────────────────

    async def _patient_response(
        self, session: AsyncSession, patient: Patient,
    ) -> PatientResponse:
        count = (await session.execute(
            select(func.count(Procedure.id)).where(Procedure.patient_id == patient.id),
        )).scalar_one()
        return PatientResponse.model_validate(patient).model_copy(update={
            "procedure_count": count,
            "created_by_name": await user_name(session, patient.created_by),
        })


async def _actor_name(session: AsyncSession, actor_id: UserId | None) -> str | None:
    """Resolve the acting user; ResourceNotFoundError if an id is given but unknown."""
    if actor_id is None:
        return None
    return (await get_user_or_404(session, actor_id)).name


async def _flush_unique(session: AsyncSession, conflict: ConflictError) -> None:
    """Flush pending inserts; a constraint violation here is the uniqueness conflict."""
    try:
        await session.flush()
    except IntegrityError:
        raise conflict from None
