"""User profile store: keyed CRUD and verification."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from uncharted.community.errors import CommunityNotFound
from uncharted.db.models import UserProfile

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

VERIFICATION_METHODS = ("booking", "id", "phone")
EXPERIENCE_LEVELS = ("beginner", "intermediate", "advanced", "expert")


async def get_profile(db: AsyncSession, profile_id: int) -> UserProfile:
    """Get a profile by its profile id.

    Raises:
        CommunityNotFound: If no profile has this id.
    """
    result = await db.execute(
        select(UserProfile)
        .where(UserProfile.id == profile_id)
        .execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        raise CommunityNotFound("Profile", profile_id)
    return profile


async def get_profile_by_user_id(db: AsyncSession, user_id: str) -> UserProfile:
    """Get a profile by the external auth identity.

    Raises:
        CommunityNotFound: If the identity has no profile yet.
    """
    result = await db.execute(select(UserProfile).where(UserProfile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        raise CommunityNotFound("Profile", user_id)
    return profile


async def get_profiles_by_ids(db: AsyncSession, profile_ids: set[int]) -> dict[int, UserProfile]:
    """Batch lookup used to embed profiles in group and member views."""
    if not profile_ids:
        return {}
    result = await db.execute(select(UserProfile).where(UserProfile.id.in_(profile_ids)))
    return {p.id: p for p in result.scalars().all()}


async def get_or_create_profile(
    db: AsyncSession,
    user_id: str,
    display_name: str | None = None,
) -> UserProfile:
    """Get or create the profile for an auth identity (first community visit)."""
    result = await db.execute(select(UserProfile).where(UserProfile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        now = datetime.now(timezone.utc)
        profile = UserProfile(
            user_id=user_id,
            display_name=display_name,
            is_verified=False,
            xp_points=0,
            level="newcomer",
            created_at=now,
            updated_at=now,
        )
        db.add(profile)
        await db.flush()
        logger.info("profile_created", profile_id=profile.id, user_id=user_id)
    return profile


async def update_profile(
    db: AsyncSession,
    profile_id: int,
    display_name: str | None = None,
    bio: str | None = None,
    preferred_trek_types: list[str] | None = None,
    experience_level: str | None = None,
) -> UserProfile:
    """
    Update the user-editable profile fields.

    XP and level are not editable here; they change only through the XP ledger.

    Raises:
        CommunityNotFound: If the profile does not exist.
        ValueError: If experience_level is not a known value.
    """
    profile = await get_profile(db, profile_id)

    if experience_level is not None and experience_level not in EXPERIENCE_LEVELS:
        msg = f"Unknown experience level: {experience_level}"
        raise ValueError(msg)

    if display_name is not None:
        profile.display_name = display_name
    if bio is not None:
        profile.bio = bio
    if preferred_trek_types is not None:
        profile.preferred_trek_types = list(preferred_trek_types)
    if experience_level is not None:
        profile.experience_level = experience_level

    profile.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return profile


async def verify_profile(db: AsyncSession, profile_id: int, method: str) -> UserProfile:
    """Mark a profile verified (after a completed booking, ID or phone check)."""
    if method not in VERIFICATION_METHODS:
        msg = f"Unknown verification method: {method}"
        raise ValueError(msg)

    profile = await get_profile(db, profile_id)
    now = datetime.now(timezone.utc)
    profile.is_verified = True
    profile.verified_at = now
    profile.verification_method = method
    profile.updated_at = now
    await db.flush()

    logger.info("profile_verified", profile_id=profile_id, method=method)
    return profile
