"""SQLAlchemy models for role grants and their audit trail."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base class that automatically timestamps rows."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")


class RenewalState:
    PENDING = "pending"
    AWAITING_RESPONSE = "awaiting_response"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"

    ALL = (PENDING, AWAITING_RESPONSE, CONFIRMED, REJECTED, SUPERSEDED)


class GrantAction:
    CLAIMED = "claimed"
    PROMPTED = "prompted"
    PROMPT_RELEASED = "prompt_released"
    RENEWED = "renewed"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    REMOVED = "removed"


class RoleGrant(Base):
    """One row per member; reused when the member claims again."""

    __tablename__ = "role_grant"
    __table_args__ = (
        CheckConstraint(
            "renewal_state IN ('pending','awaiting_response','confirmed','rejected','superseded')",
            name="role_grant_state_chk",
        ),
        Index(
            "role_grant_one_active_per_subject",
            "subject_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index("role_grant_expiry_idx", "active", "renewal_state", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BIGINT_PK, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subject_display_name: Mapped[str] = mapped_column(Text, nullable=False)
    role_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    role_name: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    renewal_state: Mapped[str] = mapped_column(
        String(24), default=RenewalState.PENDING, nullable=False
    )
    renewal_prompt_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    renewal_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class GrantEvent(Base):
    """Append-only history of what happened to a grant."""

    __tablename__ = "role_grant_event"
    __table_args__ = (Index("role_grant_event_grant_idx", "grant_id", "created_at"),)

    id: Mapped[int] = mapped_column(BIGINT_PK, primary_key=True, autoincrement=True)
    grant_id: Mapped[int] = mapped_column(
        ForeignKey("role_grant.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(24), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text)


@dataclass(frozen=True)
class Grant:
    """Detached snapshot of a :class:`RoleGrant` row."""

    id: int
    subject_id: int
    subject_display_name: str
    role_id: int
    role_name: str
    created_at: datetime
    expires_at: datetime
    active: bool
    renewal_state: str
    renewal_prompt_id: Optional[int] = None
    renewal_due_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: RoleGrant) -> "Grant":
        return cls(
            id=row.id,
            subject_id=row.subject_id,
            subject_display_name=row.subject_display_name,
            role_id=row.role_id,
            role_name=row.role_name,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
            active=row.active,
            renewal_state=row.renewal_state,
            renewal_prompt_id=row.renewal_prompt_id,
            renewal_due_at=as_utc(row.renewal_due_at) if row.renewal_due_at else None,
        )

    @property
    def awaiting_response(self) -> bool:
        return self.active and self.renewal_state == RenewalState.AWAITING_RESPONSE


@dataclass(frozen=True)
class GrantEventRecord:
    action: str
    subject_id: int
    at: datetime
    detail: Optional[str] = None


__all__ = [
    "Base",
    "Grant",
    "GrantAction",
    "GrantEvent",
    "GrantEventRecord",
    "RenewalState",
    "RoleGrant",
    "as_utc",
    "utcnow",
]
