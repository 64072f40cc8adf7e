"""Backup Rules — pure naming, classification, retention and envelope logic for snapshots.

Invariants:
    - Artifact names derive from the capture timestamp only: <prefix><UTC ISO timestamp, : and . as -, microseconds>.json
    - Manual and auto artifacts are distinguished by prefix; retention applies per kind
    - select_for_pruning returns the OLDEST artifacts beyond the cap, ordered by (mtime, name)
    - An envelope is valid only if it has both `metadata` and `data` objects

Design Decisions:
    - Name as tie-breaker for equal mtimes: timestamps in names sort lexically in creation order,
      filesystems with coarse mtime resolution still prune deterministically
    - Counts computed from the captured payload, never from a second query
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from angiolab.core.domain_types import BackupKind
from angiolab.core.errors import RecordValidationError


MANUAL_PREFIX: str = "angio-lab-backup-"
AUTO_PREFIX: str = "auto-backup-"
ARTIFACT_SUFFIX: str = ".json"

_PREFIXES: dict[BackupKind, str] = {
    BackupKind.MANUAL: MANUAL_PREFIX,
    BackupKind.AUTO: AUTO_PREFIX,
}


@dataclass(frozen=True)
class ArtifactStat:
    """Filesystem facts about one artifact, gathered by the shell."""
    name: str
    size: int
    mtime: float


def artifact_name(kind: BackupKind, captured_at: datetime, attempt: int = 0) -> str:
    """Deterministic file name for a snapshot taken at `captured_at`.

    `attempt` > 0 appends a numeric suffix when the plain name is already taken.
    """
    stamp = captured_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    suffix = f"_{attempt}" if attempt else ""
    return f"{_PREFIXES[kind]}{stamp}{suffix}{ARTIFACT_SUFFIX}"


def classify_artifact(name: str) -> BackupKind | None:
    """Kind of a file in the backup dir, or None if it is not a backup artifact."""
    if not name.endswith(ARTIFACT_SUFFIX):
        return None
    if name.startswith(AUTO_PREFIX):
        return BackupKind.AUTO
    if name.startswith(MANUAL_PREFIX):
        return BackupKind.MANUAL
    return None


def list_kind(name: str) -> str:
    """Listing label: anything not auto-prefixed is reported as manual."""
    return BackupKind.AUTO.value if name.startswith("auto-") else BackupKind.MANUAL.value


def newest_first(stats: Iterable[ArtifactStat]) -> list[ArtifactStat]:
    return sorted(stats, key=lambda s: (s.mtime, s.name), reverse=True)


def select_for_pruning(
    stats: Iterable[ArtifactStat], kind: BackupKind, cap: int,
) -> list[ArtifactStat]:
    """Artifacts of `kind` to delete so that at most `cap` remain (oldest first)."""
    same_kind = [s for s in stats if classify_artifact(s.name) == kind]
    if len(same_kind) <= cap:
        return []
    ordered = sorted(same_kind, key=lambda s: (s.mtime, s.name))
    return ordered[: len(same_kind) - cap]


def compute_counts(data: dict[str, list]) -> dict[str, int]:
    return {table: len(rows) for table, rows in data.items()}


def build_envelope(
    kind: BackupKind,
    captured_at: datetime,
    data: dict[str, list],
    schema_version: str,
    app_version: str,
) -> dict[str, Any]:
    """Self-describing snapshot: metadata envelope plus the full table payload."""
    return {
        "metadata": {
            "kind": kind.value,
            "created_at": captured_at.isoformat(),
            "schema_version": schema_version,
            "app_version": app_version,
            "counts": compute_counts(data),
        },
        "data": data,
    }


def validate_envelope(payload: Any) -> dict[str, Any]:
    """Reject anything without `metadata` and `data` objects."""
    if not isinstance(payload, dict):
        raise RecordValidationError("Invalid backup file format: not an object", "backup")
    if not isinstance(payload.get("metadata"), dict):
        raise RecordValidationError("Invalid backup file format: missing metadata", "metadata")
    if not isinstance(payload.get("data"), dict):
        raise RecordValidationError("Invalid backup file format: missing data", "data")
    return payload


def validate_artifact_name(name: Any) -> str:
    """Plain file name inside the backup dir; path separators and traversal rejected."""
    if (
        not isinstance(name, str)
        or not name.endswith(ARTIFACT_SUFFIX)
        or "/" in name
        or "\\" in name
        or name.startswith(".")
    ):
        raise RecordValidationError(f"Invalid backup name: {name!r}", "name")
    return name
