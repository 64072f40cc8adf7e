"""Record Enforcement — pure validation of clinical inputs before any transaction opens.

Invariants:
    - Every function is PURE: returns a normalized value object or raises RecordValidationError
    - Vessel data is validated in full before the first row is written
    - Dates are calendar dates in ISO form YYYY-MM-DD; datetimes are rejected
    - stenosis_percentage is a real number in [0, 100]; 0 and 100 are valid, bools and NaN are not
    - patient_id uniqueness is NOT checked here (the storage UNIQUE constraint owns it)

Design Decisions:
    - Frozen dataclasses as output: the shell receives already-normalized values
    - Accepts both snake_case and the legacy camelCase vessel keys (vessel, stenosisPercentage)
      sent by the existing web client
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping, Sequence

from angiolab.core.domain_types import (
    Gender, PatientExternalId, StenosisPercentage, UserRole,
)
from angiolab.core.errors import RecordValidationError


PATIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_PATIENT_ID_LENGTH: int = 50
MIN_NAME_LENGTH: int = 2
MAX_NAME_LENGTH: int = 200
MAX_STUDY_NAME_LENGTH: int = 100
MAX_VESSEL_NAME_LENGTH: int = 100
MIN_STENOSIS: float = 0.0
MAX_STENOSIS: float = 100.0
MAX_PAGE_SIZE: int = 1000


@dataclass(frozen=True)
class PatientInput:
    patient_id: PatientExternalId
    name: str
    date_of_birth: date
    gender: Gender


@dataclass(frozen=True)
class VesselInput:
    vessel_name: str
    stenosis_percentage: StenosisPercentage
    measurement_method: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ProcedureInput:
    study_name: str
    procedure_date: date
    vessels: tuple[VesselInput, ...]
    notes: str | None


@dataclass(frozen=True)
class UserInput:
    email: str
    password_hash: str
    name: str
    role: UserRole


# ─── Field rules ─────────────────────────────────────────────────

def validate_patient_external_id(value: Any) -> PatientExternalId:
    """Letters, digits and hyphens only; exact (case-sensitive) identity."""
    if not isinstance(value, str) or not value.strip():
        raise RecordValidationError("patient_id is required", "patient_id")
    value = value.strip()
    if len(value) > MAX_PATIENT_ID_LENGTH:
        raise RecordValidationError(
            f"patient_id exceeds {MAX_PATIENT_ID_LENGTH} characters", "patient_id",
        )
    if not PATIENT_ID_PATTERN.match(value):
        raise RecordValidationError(
            "patient_id may contain only letters, digits and hyphens", "patient_id",
        )
    return PatientExternalId(value)


def validate_person_name(value: Any, field: str = "name") -> str:
    if not isinstance(value, str):
        raise RecordValidationError(f"{field} is required", field)
    value = value.strip()
    if len(value) < MIN_NAME_LENGTH:
        raise RecordValidationError(
            f"{field} must be at least {MIN_NAME_LENGTH} characters", field,
        )
    if len(value) > MAX_NAME_LENGTH:
        raise RecordValidationError(
            f"{field} exceeds {MAX_NAME_LENGTH} characters", field,
        )
    return value


def parse_iso_date(value: Any, field: str) -> date:
    """Accept a `date` (not datetime) or a strict YYYY-MM-DD string."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not ISO_DATE_PATTERN.match(value.strip()):
        raise RecordValidationError(f"{field} must be a date in YYYY-MM-DD form", field)
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise RecordValidationError(f"{field} is not a valid calendar date", field)


def validate_gender(value: Any) -> Gender:
    try:
        return Gender(value)
    except ValueError:
        allowed = ", ".join(g.value for g in Gender)
        raise RecordValidationError(f"gender must be one of: {allowed}", "gender")


def validate_role(value: Any) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        allowed = ", ".join(r.value for r in UserRole)
        raise RecordValidationError(f"role must be one of: {allowed}", "role")


def normalize_email(value: Any) -> str:
    """Strip and lower-case: uniqueness of users.email is case-insensitive."""
    if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
        raise RecordValidationError("email is not a valid address", "email")
    return value.strip().lower()


def validate_stenosis(value: Any, field: str) -> StenosisPercentage:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RecordValidationError(f"{field} must be a number", field)
    try:
        value = float(value)
    except OverflowError:
        value = math.inf
    if math.isnan(value) or value < MIN_STENOSIS or value > MAX_STENOSIS:
        raise RecordValidationError(
            f"{field} must be between {MIN_STENOSIS:g} and {MAX_STENOSIS:g}", field,
        )
    return StenosisPercentage(value)


def _optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{field} must be text", field)
    return value.strip() or None


# ─── Composite rules ─────────────────────────────────────────────

def validate_patient_input(
    patient_id: Any, name: Any, date_of_birth: Any, gender: Any,
) -> PatientInput:
    return PatientInput(
        patient_id=validate_patient_external_id(patient_id),
        name=validate_person_name(name),
        date_of_birth=parse_iso_date(date_of_birth, "date_of_birth"),
        gender=validate_gender(gender),
    )


def validate_patient_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a partial patient update. Unknown or immutable fields are rejected."""
    allowed = {"name", "date_of_birth", "gender"}
    unknown = set(changes) - allowed
    if unknown:
        raise RecordValidationError(
            f"fields cannot be updated: {', '.join(sorted(unknown))}",
            sorted(unknown)[0],
        )
    normalized: dict[str, Any] = {}
    if "name" in changes:
        normalized["name"] = validate_person_name(changes["name"])
    if "date_of_birth" in changes:
        normalized["date_of_birth"] = parse_iso_date(changes["date_of_birth"], "date_of_birth")
    if "gender" in changes:
        normalized["gender"] = validate_gender(changes["gender"]).value
    return normalized


def validate_vessel_measurements(vessels: Any) -> tuple[VesselInput, ...]:
    """Non-empty ordered sequence of {vessel_name, stenosis_percentage} mappings."""
    if isinstance(vessels, (str, bytes)) or not isinstance(vessels, Sequence):
        raise RecordValidationError(
            "vessel_measurements must be a list", "vessel_measurements",
        )
    if not vessels:
        raise RecordValidationError(
            "at least one vessel measurement is required", "vessel_measurements",
        )

    validated = []
    for index, item in enumerate(vessels):
        prefix = f"vessel_measurements[{index}]"
        if not isinstance(item, Mapping):
            raise RecordValidationError(f"{prefix} must be an object", prefix)
        vessel_name = item.get("vessel_name", item.get("vessel"))
        if not isinstance(vessel_name, str) or not vessel_name.strip():
            raise RecordValidationError(
                f"{prefix}.vessel_name is required", f"{prefix}.vessel_name",
            )
        if len(vessel_name.strip()) > MAX_VESSEL_NAME_LENGTH:
            raise RecordValidationError(
                f"{prefix}.vessel_name exceeds {MAX_VESSEL_NAME_LENGTH} characters",
                f"{prefix}.vessel_name",
            )
        raw_value = item.get("stenosis_percentage", item.get("stenosisPercentage"))
        validated.append(VesselInput(
            vessel_name=vessel_name.strip(),
            stenosis_percentage=validate_stenosis(
                raw_value, f"{prefix}.stenosis_percentage",
            ),
            measurement_method=_optional_text(
                item.get("measurement_method", item.get("measurementMethod")),
                f"{prefix}.measurement_method",
            ),
            notes=_optional_text(item.get("notes"), f"{prefix}.notes"),
        ))
    return tuple(validated)


def validate_procedure_input(
    study_name: Any, procedure_date: Any, vessels: Any, notes: Any,
) -> ProcedureInput:
    if not isinstance(study_name, str) or not study_name.strip():
        raise RecordValidationError("study_name is required", "study_name")
    if len(study_name.strip()) > MAX_STUDY_NAME_LENGTH:
        raise RecordValidationError(
            f"study_name exceeds {MAX_STUDY_NAME_LENGTH} characters", "study_name",
        )
    return ProcedureInput(
        study_name=study_name.strip(),
        procedure_date=parse_iso_date(procedure_date, "procedure_date"),
        vessels=validate_vessel_measurements(vessels),
        notes=_optional_text(notes, "notes"),
    )


def validate_user_input(
    email: Any, password_hash: Any, name: Any, role: Any,
) -> UserInput:
    if not isinstance(password_hash, str) or not password_hash:
        raise RecordValidationError("password_hash is required", "password_hash")
    return UserInput(
        email=normalize_email(email),
        password_hash=password_hash,
        name=validate_person_name(name),
        role=validate_role(role),
    )


def validate_pagination(limit: Any, offset: Any) -> tuple[int, int]:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise RecordValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", "limit")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise RecordValidationError("offset must be zero or positive", "offset")
    return limit, offset
