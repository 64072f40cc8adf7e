"""Patient ORM — aggregate root for procedures and their vessel measurements.

Invariants:
    - patient_id (external, human-assigned) is UNIQUE: the constraint, not the application, decides conflicts
    - gender constrained to M | F | Other at the storage layer
    - updated_at bumped only when a field actually changes (RecordStore.update_patient)
    - deleting a patient removes its procedures and their measurements

Design Decisions:
    - Integer surrogate key `id` + external `patient_id`: foreign keys never depend on human input
    - ON DELETE CASCADE on child FKs backs up the explicit cascade in RecordStore.delete_patient
"""

from datetime import date, datetime, timezone

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from angiolab.db.base import Base


class Patient(Base):
    """Patient entity — owns all procedures."""
    __tablename__ = "patients"
    __table_args__ = (
        CheckConstraint("gender IN ('M', 'F', 'Other')", name="ck_patients_gender"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    gender: Mapped[str] = mapped_column(String(10), nullable=False)
    created_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    procedures: Mapped[list["Procedure"]] = relationship(
        "Procedure", back_populates="patient",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="Procedure.procedure_date.desc()",
    )
