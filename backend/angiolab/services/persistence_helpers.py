"""Persistence Helpers — row lookups, snapshots, dialect upserts and procedure tree loading.

Invariants:
    - snapshot_row / jsonable produce JSON-safe values (dates → ISO strings, enums → values)
    - coerce_row is the inverse for backup payloads: ISO strings back to date/datetime per column type
    - insert_ignore is atomic at the storage layer (INSERT … ON CONFLICT DO NOTHING), never check-then-insert
    - fetch_procedures orders procedures by procedure_date desc, id desc; measurements by id

Design Decisions:
    - Extracted from record_store.py so ExportService, SchemaManager and BackupCoordinator
      share lookups without importing the store (ADR: import fan-out < 10)
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from sqlalchemy import Boolean, Date, DateTime, Table, inspect, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from angiolab.core.errors import ErrorContext, ResourceNotFoundError, StorageError
from angiolab.models.patient import Patient
from angiolab.models.procedure import Procedure
from angiolab.models.user import User
from angiolab.models.vessel_measurement import VesselMeasurement
from angiolab.schemas.records import ProcedureResponse, VesselMeasurementResponse

_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Serialization ───────────────────────────────────────────────

def jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def snapshot_row(obj: Any, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Column values of an ORM instance, JSON-safe, for audit old/new values."""
    return {
        attr.key: jsonable(getattr(obj, attr.key))
        for attr in inspect(obj).mapper.column_attrs
        if attr.key not in exclude
    }


def jsonable_mapping(row: Mapping[str, Any]) -> dict[str, Any]:
    return {key: jsonable(value) for key, value in row.items()}


def coerce_row(table: Table, row: Mapping[str, Any]) -> dict[str, Any]:
    """Backup row → insertable values; keys that are not columns of `table` are dropped."""
    values: dict[str, Any] = {}
    for column in table.columns:
        if column.name not in row:
            continue
        value = row[column.name]
        if isinstance(value, str) and isinstance(column.type, DateTime):
            value = datetime.fromisoformat(value)
        elif isinstance(value, str) and isinstance(column.type, Date):
            value = date.fromisoformat(value)
        elif isinstance(column.type, Boolean) and value is not None:
            value = bool(value)
        values[column.name] = value
    return values


# ─── Dialect upsert ──────────────────────────────────────────────

async def insert_ignore(
    session: AsyncSession, table: Table, values: dict[str, Any], conflict_columns: list[str],
) -> bool:
    """INSERT … ON CONFLICT DO NOTHING. Returns True when a row was inserted."""
    dialect = session.bind.dialect.name
    insert_fn = _DIALECT_INSERTS.get(dialect)
    if insert_fn is None:
        raise StorageError(f"dialect '{dialect}' has no upsert support", "upsert")
    stmt = insert_fn(table).values(**values).on_conflict_do_nothing(
        index_elements=conflict_columns,
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


# ─── Lookups ─────────────────────────────────────────────────────

async def get_patient_or_404(session: AsyncSession, patient_id: str) -> Patient:
    """Patient by external id (exact, case-sensitive)."""
    result = await session.execute(
        select(Patient).where(Patient.patient_id == patient_id),
    )
    patient = result.scalar_one_or_none()
    if patient is None:
        raise ResourceNotFoundError(
            "Patient", patient_id, ErrorContext(patient_id=patient_id, table_name="patients"),
        )
    return patient


async def get_user_or_404(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise ResourceNotFoundError(
            "User", str(user_id), ErrorContext(table_name="users", record_id=user_id),
        )
    return user


async def user_name(session: AsyncSession, user_id: int | None) -> str | None:
    if user_id is None:
        return None
    result = await session.execute(select(User.name).where(User.id == user_id))
    return result.scalar_one_or_none()


# ─── Procedure trees ─────────────────────────────────────────────

def build_procedure_response(
    procedure: Procedure,
    measurements: Sequence[VesselMeasurement],
    performed_by_name: str | None,
) -> ProcedureResponse:
    return ProcedureResponse.model_validate(procedure).model_copy(update={
        "performed_by_name": performed_by_name,
        "vessel_measurements": [
            VesselMeasurementResponse.model_validate(m) for m in measurements
        ],
    })


async def fetch_procedures(
    session: AsyncSession, patient_row_ids: list[int] | None = None,
) -> dict[int, list[ProcedureResponse]]:
    """Procedures with measurements, grouped by patients.id (None = every patient)."""
    stmt = (
        select(Procedure, User.name)
        .outerjoin(User, User.id == Procedure.performed_by)
        .options(selectinload(Procedure.measurements))
        .order_by(Procedure.procedure_date.desc(), Procedure.id.desc())
    )
    if patient_row_ids is not None:
        if not patient_row_ids:
            return {}
        stmt = stmt.where(Procedure.patient_id.in_(patient_row_ids))

    grouped: dict[int, list[ProcedureResponse]] = {}
    for procedure, performer in (await session.execute(stmt)).all():
        grouped.setdefault(procedure.patient_id, []).append(
            build_procedure_response(procedure, procedure.measurements, performer),
        )
    return grouped
