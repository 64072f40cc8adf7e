"""Record Schemas — results of RecordStore and ExportService operations.

Invariants:
    - PatientResponse.procedure_count is computed by an aggregate query at read time
    - ProcedureResponse.vessel_measurements keeps insertion order
    - UserResponse never carries password_hash; UserRecord does (identity collaborator only)

Design Decisions:
    - from_attributes=True: built directly from ORM rows inside the session
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from angiolab.core.domain_types import Gender, UserRole


class VesselMeasurementResponse(BaseModel):
    """One stenosis reading."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    vessel_name: str
    stenosis_percentage: float = Field(ge=0, le=100)
    measurement_method: str | None = None
    notes: str | None = None


class ProcedureResponse(BaseModel):
    """Procedure joined with its ordered measurements."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    study_id: int | None
    study_name: str
    procedure_date: date
    performed_by: int | None
    performed_by_name: str | None = None
    notes: str | None = None
    created_at: datetime
    vessel_measurements: list[VesselMeasurementResponse] = Field(default_factory=list)


class PatientResponse(BaseModel):
    """Patient with live procedure count."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    name: str
    date_of_birth: date
    gender: Gender
    created_by: int | None
    created_by_name: str | None = None
    created_at: datetime
    updated_at: datetime
    procedure_count: int = 0


class UserResponse(BaseModel):
    """Public user fields."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    role: UserRole
    active: bool
    created_at: datetime
    last_login: datetime | None = None


class UserRecord(UserResponse):
    """User with credential hash, for the identity collaborator's login flow."""
    password_hash: str


class DeletionSummary(BaseModel):
    """Rows removed by a patient cascade delete."""
    patients: int
    procedures: int
    vessel_measurements: int

    @property
    def total(self) -> int:
        return self.patients + self.procedures + self.vessel_measurements
