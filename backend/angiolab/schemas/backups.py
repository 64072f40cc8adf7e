"""Backup Schemas — listing entries and restore results.

Invariants:
    - BackupInfo.type is "manual" or "auto"
    - created_at is the artifact's modification time (UTC)
"""

from datetime import datetime

from pydantic import BaseModel


class BackupInfo(BaseModel):
    """One retained artifact in the backup directory."""
    name: str
    type: str
    size: int
    created_at: datetime


class RestoreResult(BaseModel):
    """Outcome of an explicit restore from an artifact."""
    name: str
    safety_backup: str
    restored: dict[str, int]
    users_merged: int
