"""VesselMeasurement ORM — one stenosis reading for a named vessel within a procedure.

Invariants:
    - Always belongs to a Procedure (procedure_id FK, ON DELETE CASCADE)
    - 0 <= stenosis_percentage <= 100, enforced by CHECK as a second line behind enforce_records
"""

from sqlalchemy import CheckConstraint, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from angiolab.db.base import Base


class VesselMeasurement(Base):
    """Typed child row of a procedure."""
    __tablename__ = "vessel_measurements"
    __table_args__ = (
        CheckConstraint(
            "stenosis_percentage >= 0 AND stenosis_percentage <= 100",
            name="ck_vessel_measurements_stenosis_range",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    procedure_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("procedures.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    vessel_name: Mapped[str] = mapped_column(String(100), nullable=False)
    stenosis_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    measurement_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    procedure: Mapped["Procedure"] = relationship(
        "Procedure", back_populates="measurements",
    )
