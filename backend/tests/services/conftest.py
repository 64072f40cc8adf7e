"""Service test fixtures — file-backed SQLite storage handle and wired components.

Invariants:
    - Every test gets a fresh database file and backup directory under tmp_path
    - Schema provisioned through SchemaManager, exactly as the host lifespan does
    - The storage handle is disposed after each test

Design Decisions:
    - File database instead of :memory: — concurrent sessions must see one database
    - `actor` is a real user row: created_by / performed_by are foreign keys
"""

import pytest

from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.services.audit_log import AuditLog
from angiolab.services.backup_coordinator import BackupCoordinator
from angiolab.services.export_service import ExportService
from angiolab.services.record_store import RecordStore
from angiolab.services.schema_manager import SchemaManager


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseSessionManager(f"sqlite+aiosqlite:///{tmp_path / 'angio-lab.db'}")
    await SchemaManager(manager).provision()
    yield manager
    await manager.dispose()


@pytest.fixture
def audit(db):
    return AuditLog(db)


@pytest.fixture
def store(db, audit):
    return RecordStore(db, audit)


@pytest.fixture
def exports(db):
    return ExportService(db)


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def coordinator(db, backup_dir, audit):
    return BackupCoordinator(db, backup_dir, lock_timeout=2.0, audit=audit)


@pytest.fixture
async def actor(store):
    return await store.create_user(
        "Tina.Tech@AngioLab.org", "$2b$12$fakehash", "Tina Tech", "technician",
    )


@pytest.fixture
async def seeded_patient(store, actor):
    """P-100 with one VIKING procedure measuring LAD at 75%."""
    patient = await store.create_patient("P-100", "Ana Silva", "1960-05-01", "F", actor.id)
    await store.create_procedure(
        "P-100", "VIKING", "2024-03-15",
        [{"vessel_name": "LAD", "stenosis_percentage": 75.0}],
        None, actor.id,
    )
    return patient
