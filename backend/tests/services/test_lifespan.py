"""Host lifespan — provisioning, scheduler start, shutdown backup, single dispose."""

import pytest

from angiolab.config import Settings
from angiolab.core.backup_rules import MANUAL_PREFIX
import angiolab.main as main_module


def _settings(tmp_path, **overrides):
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'lifespan.db'}",
        "backup_dir": tmp_path / "backups",
        "auto_backup_enabled": True,
        "auto_backup_interval_seconds": 3600,
        "log_format": "text",
        "log_dir": tmp_path / "logs",
    }
    values.update(overrides)
    return Settings(**values)


async def test_lifespan_runs_startup_and_shutdown(tmp_path, monkeypatch):
    settings = _settings(tmp_path)
    monkeypatch.setattr(main_module, "get_settings", lambda: settings)
    app = main_module.app

    async with main_module.lifespan(app):
        assert app.state.scheduler.running is True
        patient = await app.state.records.create_patient(
            "P-100", "Ana Silva", "1960-05-01", "F", None,
        )
        assert patient.patient_id == "P-100"

    assert app.state.scheduler.running is False
    backups = list((tmp_path / "backups").iterdir())
    assert len(backups) == 1
    assert backups[0].name.startswith(MANUAL_PREFIX)


async def test_lifespan_without_scheduler_or_shutdown_backup(tmp_path, monkeypatch):
    settings = _settings(tmp_path, auto_backup_enabled=False, shutdown_backup_enabled=False)
    monkeypatch.setattr(main_module, "get_settings", lambda: settings)
    app = main_module.app

    async with main_module.lifespan(app):
        assert app.state.scheduler.running is False

    assert not (tmp_path / "backups").exists()


async def test_storage_released_when_shutdown_backup_fails_unexpectedly(tmp_path, monkeypatch):
    settings = _settings(tmp_path, auto_backup_enabled=False)
    monkeypatch.setattr(main_module, "get_settings", lambda: settings)
    app = main_module.app

    async def broken_backup():
        raise RuntimeError("disk vanished")

    with pytest.raises(RuntimeError):
        async with main_module.lifespan(app):
            monkeypatch.setattr(app.state.backups, "create_manual_backup", broken_backup)

    assert app.state.db._disposed is True


async def test_lifespan_writes_log_files(tmp_path, monkeypatch):
    settings = _settings(tmp_path, auto_backup_enabled=False, shutdown_backup_enabled=False)
    monkeypatch.setattr(main_module, "get_settings", lambda: settings)

    async with main_module.lifespan(main_module.app):
        pass

    assert "started" in (tmp_path / "logs" / "angio-lab.log").read_text()
    assert (tmp_path / "logs" / "error.log").read_text() == ""
