"""Export Service — read-only denormalized tree of every patient's clinical record.

Invariants:
    - One read session; patients ordered by patient_id, procedures by date desc
    - Never writes and never audits
    - export_counts() reconciles a tree against backup metadata counts
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import aliased

from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.models.patient import Patient
from angiolab.models.user import User
from angiolab.schemas.records import PatientResponse
from angiolab.services.persistence_helpers import fetch_procedures

logger = logging.getLogger(__name__)


class ExportService:
    """Patient → procedures → vessel_measurements, as JSON-ready dicts."""

    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def export_all(self) -> list[dict[str, Any]]:
        creator = aliased(User)
        stmt = (
            select(Patient, creator.name)
            .outerjoin(creator, creator.id == Patient.created_by)
            .order_by(Patient.patient_id)
        )
        async with self._db.snapshot() as session:
            patients = (await session.execute(stmt)).all()
            procedures = await fetch_procedures(session)

        tree = []
        for patient, creator_name in patients:
            patient_procedures = procedures.get(patient.id, [])
            entry = PatientResponse.model_validate(patient).model_copy(update={
                "created_by_name": creator_name,
                "procedure_count": len(patient_procedures),
            }).model_dump(mode="json")
            entry["procedures"] = [p.model_dump(mode="json") for p in patient_procedures]
            tree.append(entry)

        logger.info(f"Exported {len(tree)} patient record(s)")
        return tree


def export_counts(tree: list[dict[str, Any]]) -> dict[str, int]:
    """Row counts of an export tree, keyed like backup metadata counts."""
    procedures = [p for patient in tree for p in patient["procedures"]]
    return {
        "patients": len(tree),
        "procedures": len(procedures),
        "vessel_measurements": sum(len(p["vessel_measurements"]) for p in procedures),
    }
