"""Audit Log — append-only sink for mutations, written after the business transaction commits.

Invariants:
    - Entries are only inserted, never updated or deleted
    - record() runs in its own transaction: a failed audit write never rolls back a committed mutation
    - record() never raises (except cancellation); failures are logged at ERROR with the lost entries
    - One entry per affected row (cascade deletes emit one entry per removed row)

Design Decisions:
    - AuditRecord dataclass built inside the business transaction, persisted after commit
    - recent() is an operator read path; RecordStore results never include audit data
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from angiolab.core.domain_types import AuditAction
from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.models.audit_entry import AuditEntry
from angiolab.services.persistence_helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    """One pending audit entry."""
    action: AuditAction
    table_name: str
    record_id: int | None
    user_id: int | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    timestamp: Any = field(default_factory=utcnow)


class AuditLog:
    """Append-only audit trail over the shared storage handle."""

    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def record(self, entries: list[AuditRecord]) -> bool:
        """Persist entries in one transaction. Returns False if the write failed."""
        if not entries:
            return True
        try:
            async with self._db.transaction() as session:
                session.add_all([
                    AuditEntry(
                        user_id=e.user_id,
                        action=e.action.value,
                        table_name=e.table_name,
                        record_id=e.record_id,
                        old_values=e.old_values,
                        new_values=e.new_values,
                        timestamp=e.timestamp,
                    )
                    for e in entries
                ])
            return True
        except Exception as e:
            logger.error(
                f"Audit write failed, {len(entries)} entr(y/ies) lost: {e}",
                exc_info=True,
                extra={
                    "error_code": getattr(e, "code", "AUDIT_WRITE_FAILED"),
                    "table_name": entries[0].table_name,
                    "record_id": entries[0].record_id,
                },
            )
            return False

    async def recent(
        self,
        limit: int = 100,
        table_name: str | None = None,
        record_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """Newest entries first, optionally filtered by table and record."""
        stmt = select(AuditEntry).order_by(AuditEntry.id.desc()).limit(limit)
        if table_name is not None:
            stmt = stmt.where(AuditEntry.table_name == table_name)
        if record_id is not None:
            stmt = stmt.where(AuditEntry.record_id == record_id)
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": r.id,
                "user_id": r.user_id,
                "action": r.action,
                "table_name": r.table_name,
                "record_id": r.record_id,
                "old_values": r.old_values,
                "new_values": r.new_values,
                "timestamp": r.timestamp.isoformat(),
            }
            for r in rows
        ]
