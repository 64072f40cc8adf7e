"""User ORM — identity referenced as creator/performer of clinical records.

Invariants:
    - email is stored lower-cased; the UNIQUE constraint therefore is case-insensitive
    - role constrained to admin | technician | physician at the storage layer
    - never hard-deleted: deactivation clears `active`

Design Decisions:
    - password_hash stored opaque: hashing and verification belong to the identity collaborator
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from angiolab.db.base import Base


class User(Base):
    """User account — foreign reference only, no authorization logic here."""
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "role IN ('admin', 'technician', 'physician')", name="ck_users_role",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_login: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
