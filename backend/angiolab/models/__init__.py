"""ORM Models — SQLAlchemy declarative models for all clinical entities.

Invariants:
    - All models inherit from Base (db/base.py)
    - Patient is the aggregate root for Procedure and VesselMeasurement
    - AuditEntry and User are never hard-deleted by normal flow

Design Decisions:
    - One file per entity for locality
    - All models imported here so SQLAlchemy resolves string-based relationship()
      references before any query runs (ADR: standard SQLAlchemy pattern)
"""

from angiolab.models.user import User  # noqa: F401
from angiolab.models.study import Study  # noqa: F401
from angiolab.models.patient import Patient  # noqa: F401
from angiolab.models.procedure import Procedure  # noqa: F401
from angiolab.models.vessel_measurement import VesselMeasurement  # noqa: F401
from angiolab.models.audit_entry import AuditEntry  # noqa: F401
