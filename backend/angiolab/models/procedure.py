"""Procedure ORM — one angiography encounter for a patient within a study.

Invariants:
    - Always belongs to an existing Patient (patient_id FK, ON DELETE CASCADE)
    - study_name is denormalized from Study at creation time
    - Created atomically with its full set of VesselMeasurements

Design Decisions:
    - measurements ordered by id: insertion order is the clinical reading order
"""

from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from angiolab.db.base import Base


class Procedure(Base):
    """Procedure entity — owns its vessel measurements."""
    __tablename__ = "procedures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    study_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("studies.id"), nullable=True,
    )
    study_name: Mapped[str] = mapped_column(String(100), nullable=False)
    procedure_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    performed_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    patient: Mapped["Patient"] = relationship(
        "Patient", back_populates="procedures",
    )
    measurements: Mapped[list["VesselMeasurement"]] = relationship(
        "VesselMeasurement", back_populates="procedure",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="VesselMeasurement.id",
    )
