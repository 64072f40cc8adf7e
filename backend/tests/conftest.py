"""Root conftest — shared test configuration."""

import os

# Keep tests off the developer's database and backup directory
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./data/test-angio-lab.db",
)
os.environ.setdefault("BACKUP_DIR", "./data/test-backups")
os.environ.setdefault("AUTO_BACKUP_ENABLED", "false")
os.environ.setdefault("LOG_DIR", "./data/test-logs")
