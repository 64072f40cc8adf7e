"""Backup Coordinator — point-in-time JSON snapshots, retention, listing, retrieval and restore.

Invariants:
    - Capture holds the storage write gate and reads every table in ONE read transaction:
      no mutation interleaves, so counts in metadata always match the payload
    - Gate waits are bounded by lock_timeout; a timeout is a BackupError("capture")
    - An artifact is written under a fresh name (open mode "x"); a failed write leaves no partial file
    - Retention runs per kind after each successful write: oldest beyond the cap go first
    - create_auto_backup() never raises (except cancellation); failures are logged and None returned
    - restore_backup() takes a safety manual backup before touching any table

Design Decisions:
    - File IO via asyncio.to_thread: the event loop never blocks on the disk
    - Prune failures are logged, not raised: the new artifact already exists and is valid
    - Restore replaces clinical tables wholesale, merges users, never rewrites audit_log
      (ADR: audit trail outlives the data it describes)
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import Table, delete, insert, select, text

from angiolab.core.backup_rules import (
    ARTIFACT_SUFFIX,
    ArtifactStat,
    artifact_name,
    build_envelope,
    list_kind,
    newest_first,
    select_for_pruning,
    validate_artifact_name,
    validate_envelope,
)
from angiolab.core.domain_types import AuditAction, BackupKind
from angiolab.core.errors import (
    BackupError,
    ErrorContext,
    RecordValidationError,
    ResourceNotFoundError,
    StorageError,
)
from angiolab.db.base import Base
from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.schemas.backups import BackupInfo, RestoreResult
from angiolab.services.audit_log import AuditLog, AuditRecord
from angiolab.services.persistence_helpers import coerce_row, jsonable_mapping, utcnow
from angiolab.services.schema_manager import BACKUP_TABLES, SCHEMA_VERSION

logger = logging.getLogger(__name__)

# Children before parents for delete; reversed for insert.
_CLINICAL_TABLES: tuple[str, ...] = (
    "vessel_measurements",
    "procedures",
    "patients",
    "studies",
)

# Columns that point at users.id and must survive a user merge.
_USER_REFERENCES: dict[str, str] = {
    "patients": "created_by",
    "procedures": "performed_by",
}


class BackupCoordinator:
    """Owns the backup directory: creates, prunes, lists, reads and restores artifacts."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        backup_dir: Path,
        max_manual_backups: int = 50,
        max_auto_backups: int = 10,
        lock_timeout: float = 30.0,
        schema_version: str = SCHEMA_VERSION,
        app_version: str = "1.0.0",
        audit: AuditLog | None = None,
    ):
        self._db = db
        self._backup_dir = Path(backup_dir)
        self._caps = {
            BackupKind.MANUAL: max_manual_backups,
            BackupKind.AUTO: max_auto_backups,
        }
        self._lock_timeout = lock_timeout
        self._schema_version = schema_version
        self._app_version = app_version
        self._audit = audit

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    # ─── Create ──────────────────────────────────────────────────

    async def create_manual_backup(self) -> Path:
        """Snapshot every table to a new manual artifact. Raises BackupError."""
        return await self._create(BackupKind.MANUAL)

    async def create_auto_backup(self) -> Path | None:
        """Scheduled snapshot; logs and returns None on any failure."""
        try:
            return await self._create(BackupKind.AUTO)
        except Exception as e:
            logger.error(
                f"Auto-backup failed: {e}",
                exc_info=not isinstance(e, BackupError),
                extra={
                    "backup_kind": BackupKind.AUTO.value,
                    "error_code": getattr(e, "code", "BACKUP_ERROR"),
                },
            )
            return None

    async def _create(self, kind: BackupKind) -> Path:
        captured_at, data = await self._capture()
        envelope = build_envelope(
            kind, captured_at, data, self._schema_version, self._app_version,
        )
        try:
            path = await asyncio.to_thread(self._write_sync, kind, captured_at, envelope)
        except (OSError, TypeError, ValueError) as e:
            raise BackupError(f"Backup write failed: {e}", "write") from e

        await asyncio.to_thread(self._prune_sync, kind)
        logger.info(
            f"{kind.value.capitalize()} backup written: {path.name}",
            extra={"backup_kind": kind.value, "backup_name": path.name},
        )
        return path

    async def _capture(self) -> tuple[datetime, dict[str, list[dict[str, Any]]]]:
        """All backup tables, dependency-ordered, from one consistent read."""
        data: dict[str, list[dict[str, Any]]] = {}
        try:
            async with self._db.write_gate(self._lock_timeout):
                async with self._db.snapshot() as session:
                    captured_at = utcnow()
                    for name in BACKUP_TABLES:
                        table = Base.metadata.tables[name]
                        rows = (await session.execute(
                            select(table).order_by(table.c.id),
                        )).mappings().all()
                        data[name] = [jsonable_mapping(row) for row in rows]
        except TimeoutError as e:
            raise BackupError(
                f"Storage busy: write gate not acquired within {self._lock_timeout}s",
                "capture",
            ) from e
        except StorageError as e:
            raise BackupError(f"Snapshot read failed: {e.message}", "capture") from e
        return captured_at, data

    def _write_sync(
        self, kind: BackupKind, captured_at: datetime, envelope: dict[str, Any],
    ) -> Path:
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        body = json.dumps(envelope, indent=2)
        attempt = 0
        while True:
            path = self._backup_dir / artifact_name(kind, captured_at, attempt)
            try:
                handle = path.open("x", encoding="utf-8")
            except FileExistsError:
                attempt += 1
                continue
            break
        try:
            with handle:
                handle.write(body)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return path

    def _prune_sync(self, kind: BackupKind) -> None:
        try:
            doomed = select_for_pruning(self._scan_sync(), kind, self._caps[kind])
            for stat in doomed:
                (self._backup_dir / stat.name).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                f"Backup cleanup failed: {e}",
                extra={"backup_kind": kind.value, "operation": "prune"},
            )
            return
        if doomed:
            logger.info(
                f"Pruned {len(doomed)} {kind.value} backup(s)",
                extra={"backup_kind": kind.value},
            )

    def _scan_sync(self) -> list[ArtifactStat]:
        if not self._backup_dir.is_dir():
            return []
        stats = []
        for entry in self._backup_dir.iterdir():
            if not entry.name.endswith(ARTIFACT_SUFFIX) or not entry.is_file():
                continue
            st = entry.stat()
            stats.append(ArtifactStat(entry.name, st.st_size, st.st_mtime))
        return stats

    # ─── Read ────────────────────────────────────────────────────

    async def list_backups(self) -> list[BackupInfo]:
        """Every .json artifact, newest first."""
        try:
            stats = await asyncio.to_thread(self._scan_sync)
        except OSError as e:
            raise BackupError(f"Failed to get backup list: {e}", "list") from e
        return [
            BackupInfo(
                name=s.name,
                type=list_kind(s.name),
                size=s.size,
                created_at=datetime.fromtimestamp(s.mtime, timezone.utc),
            )
            for s in newest_first(stats)
        ]

    async def retrieve_backup(self, name: str) -> dict[str, Any]:
        """Parsed, envelope-checked artifact contents."""
        name = validate_artifact_name(name)
        path = self._backup_dir / name
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            raise ResourceNotFoundError("Backup", name, ErrorContext(debug_info={"name": name}))
        except OSError as e:
            raise BackupError(f"Backup read failed: {e}", "retrieve") from e
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise RecordValidationError(f"Backup {name} is not valid JSON: {e.msg}", "backup")
        return validate_envelope(payload)

    # ─── Restore ─────────────────────────────────────────────────

    async def restore_backup(self, name: str, actor_id: int | None = None) -> RestoreResult:
        """Replace clinical tables with the artifact's rows; users merged, audit_log kept."""
        envelope = await self.retrieve_backup(name)
        rows = _prepare_restore_rows(envelope["data"])

        safety = await self.create_manual_backup()

        try:
            async with self._db.write_gate(self._lock_timeout):
                try:
                    async with self._db.transaction() as session:
                        users_merged = await self._merge_users(session, rows)
                        for table_name in _CLINICAL_TABLES:
                            await session.execute(delete(Base.metadata.tables[table_name]))
                        for table_name in reversed(_CLINICAL_TABLES):
                            if rows[table_name]:
                                await session.execute(
                                    insert(Base.metadata.tables[table_name]), rows[table_name],
                                )
                        if self._db.dialect_name == "postgresql":
                            await _reset_sequences(session)
                except StorageError as e:
                    raise BackupError(f"Restore of {name} failed: {e.message}", "restore") from e

                restored = {t: len(rows[t]) for t in _CLINICAL_TABLES}
                if self._audit is not None:
                    await self._audit.record([AuditRecord(
                        AuditAction.RESTORE, "*", None, user_id=actor_id,
                        new_values={
                            "name": name,
                            "safety_backup": safety.name,
                            "restored": restored,
                            "users_merged": users_merged,
                        },
                    )])
        except TimeoutError as e:
            raise BackupError(
                f"Storage busy: write gate not acquired within {self._lock_timeout}s",
                "restore",
            ) from e

        logger.warning(
            f"Restored {name} ({', '.join(f'{t}={n}' for t, n in restored.items())}), "
            f"safety backup {safety.name}",
            extra={"backup_name": name, "operation": "restore"},
        )
        return RestoreResult(
            name=name, safety_backup=safety.name, restored=restored, users_merged=users_merged,
        )

    async def _merge_users(self, session, rows: dict[str, list[dict[str, Any]]]) -> int:
        """Insert payload users whose id and email are both unknown; detach dangling references."""
        users = Base.metadata.tables["users"]
        existing = (await session.execute(select(users.c.id, users.c.email))).all()
        known_ids = {row.id for row in existing}
        known_emails = {row.email for row in existing}

        merged = [
            u for u in rows["users"]
            if u.get("id") not in known_ids and u.get("email") not in known_emails
        ]
        if merged:
            await session.execute(insert(users), merged)
            known_ids.update(u["id"] for u in merged)

        for table_name, column in _USER_REFERENCES.items():
            for row in rows[table_name]:
                if row.get(column) is not None and row[column] not in known_ids:
                    row[column] = None
        return len(merged)


def _prepare_restore_rows(data: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Payload rows coerced to column types; shape errors raise before anything is written."""
    prepared: dict[str, list[dict[str, Any]]] = {}
    for table_name in ("users", *_CLINICAL_TABLES):
        raw = data.get(table_name, [])
        if not isinstance(raw, list) or not all(isinstance(r, dict) for r in raw):
            raise RecordValidationError(
                f"Backup table '{table_name}' must be a list of objects", table_name,
            )
        table: Table = Base.metadata.tables[table_name]
        try:
            prepared[table_name] = [coerce_row(table, row) for row in raw]
        except (TypeError, ValueError) as e:
            raise RecordValidationError(
                f"Backup table '{table_name}' has an unreadable value: {e}", table_name,
            )
        if any(row.get("id") is None for row in prepared[table_name]):
            raise RecordValidationError(
                f"Backup table '{table_name}' has a row without id", table_name,
            )
    return prepared


async def _reset_sequences(session) -> None:
    """Move PostgreSQL id sequences past the restored ids."""
    for table_name in ("users", *_CLINICAL_TABLES):
        await session.execute(text(
            f"SELECT setval(pg_get_serial_sequence('{table_name}', 'id'), "
            f"COALESCE(MAX(id), 1), MAX(id) IS NOT NULL) FROM {table_name}"
        ))
