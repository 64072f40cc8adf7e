"""Schema Manager — provisions the fixed clinical schema and seeds reference data.

Invariants:
    - provision() is idempotent: create_all(checkfirst) plus insert-ignore seeding
    - The default study VIKING exists after every successful provision()
    - table_names() lists backup tables in dependency order (parents before children)

Design Decisions:
    - create_all at startup for single-site SQLite deployments; Alembic 001_initial
      describes the same schema for managed PostgreSQL (ADR: one schema, two entry points)
    - SCHEMA_VERSION tracks the Alembic head and is stamped into every backup envelope
"""

import logging

from angiolab.db.base import Base
from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.models import Study
from angiolab.services.persistence_helpers import insert_ignore, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION: str = "001_initial"

BACKUP_TABLES: tuple[str, ...] = (
    "users",
    "studies",
    "patients",
    "procedures",
    "vessel_measurements",
    "audit_log",
)

DEFAULT_STUDY_NAME: str = "VIKING"
DEFAULT_STUDY_DESCRIPTION: str = "Default angiography study"


class SchemaManager:
    """Creates tables and indices, seeds the default study."""

    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    @property
    def schema_version(self) -> str:
        return SCHEMA_VERSION

    @staticmethod
    def table_names() -> list[str]:
        return list(BACKUP_TABLES)

    async def provision(self) -> None:
        async with self._db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)

        async with self._db.write_gate():
            async with self._db.transaction() as session:
                seeded = await insert_ignore(
                    session,
                    Study.__table__,
                    {
                        "name": DEFAULT_STUDY_NAME,
                        "description": DEFAULT_STUDY_DESCRIPTION,
                        "active": True,
                        "created_at": utcnow(),
                    },
                    ["name"],
                )

        logger.info(
            f"Schema {SCHEMA_VERSION} provisioned"
            + (f", default study {DEFAULT_STUDY_NAME} seeded" if seeded else ""),
        )
