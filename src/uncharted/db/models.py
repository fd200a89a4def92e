"""ORM models for the community schema.

The tables are created by Alembic migration 001_community_tables on
PostgreSQL. The models stay portable so the test suite can run them on
SQLite via ``Base.metadata.create_all``.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from uncharted.db.base import Base

_JSONList = JSON().with_variant(JSONB(), "postgresql")

# Memberships in these states count as "active" for the one-per-pair rule.
ACTIVE_MEMBERSHIP_STATUSES = ("pending", "approved")


# ---------------------------------------------------------------------------
# Profiles & XP
# ---------------------------------------------------------------------------


class UserProfile(Base):
    """Community-facing identity, keyed separately from the auth identity."""

    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bio: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # level is a cache of level_for(xp_points); only the XP ledger writes either.
    xp_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="newcomer")

    preferred_trek_types: Mapped[list[str] | None] = mapped_column(_JSONList, nullable=True)
    experience_level: Mapped[str | None] = mapped_column(String(16), nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("xp_points >= 0", name="ck_user_profiles_xp_non_negative"),
    )


class XPTransaction(Base):
    """Append-only XP log. Sum of xp_amount per profile equals xp_points."""

    __tablename__ = "xp_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_profile_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    xp_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Trip groups
# ---------------------------------------------------------------------------


class TripGroup(Base):
    """A capacity-bounded group planning the same trek on a date."""

    __tablename__ = "trip_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_profiles.id"), nullable=False, index=True
    )

    trek_slug: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    trek_title: Mapped[str] = mapped_column(String(256), nullable=False)

    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    planned_date: Mapped[date] = mapped_column(Date, nullable=False)
    flexible_dates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    max_members: Mapped[int] = mapped_column(Integer, nullable=False)
    current_members: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    invite_code: Mapped[str | None] = mapped_column(String(8), unique=True, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "current_members >= 0 AND current_members <= max_members",
            name="ck_trip_groups_capacity",
        ),
        Index("idx_trip_groups_listing", "is_public", "status", "planned_date"),
    )


class GroupMembership(Base):
    """A profile's relationship to a group: role plus approval status."""

    __tablename__ = "group_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trip_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_profile_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_group_memberships_active",
            "group_id",
            "user_profile_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'approved')"),
            sqlite_where=text("status IN ('pending', 'approved')"),
        ),
    )
