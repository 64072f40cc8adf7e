"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - PatientExternalId is the human-assigned id (letters, digits, hyphens), never the row id
    - StenosisPercentage is bounded 0.0–100.0 inclusive
    - All valid states encoded as Enums — no raw string matching

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON (audit values, backup envelopes) without custom encoders
"""

from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

UserId = NewType("UserId", int)
PatientExternalId = NewType("PatientExternalId", str)


# ─── Value Types ─────────────────────────────────────────────────

StenosisPercentage = NewType("StenosisPercentage", float)   # 0.0–100.0


# ─── Enums ───────────────────────────────────────────────────────

class Gender(str, Enum):
    """Patient gender — maps to the CHECK constraint on patients.gender."""
    MALE = "M"
    FEMALE = "F"
    OTHER = "Other"


class UserRole(str, Enum):
    """Roles carried by the identity collaborator; stored, never enforced here."""
    ADMIN = "admin"
    TECHNICIAN = "technician"
    PHYSICIAN = "physician"


class AuditAction(str, Enum):
    """Audit log `action` column values."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    RESTORE = "restore"


class TableName(str, Enum):
    """Persisted tables, in dependency order (parents before children)."""
    USERS = "users"
    STUDIES = "studies"
    PATIENTS = "patients"
    PROCEDURES = "procedures"
    VESSEL_MEASUREMENTS = "vessel_measurements"
    AUDIT_LOG = "audit_log"


class BackupKind(str, Enum):
    """Backup artifact kinds — each has its own file prefix and retention cap."""
    MANUAL = "manual"
    AUTO = "auto"
