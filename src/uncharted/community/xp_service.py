"""XP ledger: atomic XP awards with level recomputation and a transaction log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community.errors import CommunityNotFound
from uncharted.community.events import publish_to_profile
from uncharted.community.levels import (
    LEVEL_NAMES,
    LEVEL_ORDER,
    LEVEL_THRESHOLDS,
    Level,
    XPAction,
    level_for,
    xp_reward,
)
from uncharted.db.models import UserProfile, XPTransaction

logger = logging.getLogger(__name__)

REFERENCE_TYPES = ("booking", "group", "review", "referral")


@dataclass
class XPAward:
    profile: UserProfile
    transaction: XPTransaction


def level_case(xp_expr: Any) -> Any:
    """SQL CASE mapping an XP expression to its level, highest tier first."""
    whens = [
        (xp_expr >= threshold, level.value)
        for level, threshold in reversed(LEVEL_THRESHOLDS.items())
        if threshold > 0
    ]
    return case(*whens, else_=Level.NEWCOMER.value)


async def award_xp(
    db: AsyncSession,
    redis: object | None,
    profile_id: int,
    action: XPAction | str,
    reference_id: str | None = None,
    reference_type: str | None = None,
) -> XPAward:
    """Award the fixed XP reward for an action to a profile.

    1. Increment xp_points and recompute level in one UPDATE statement
    2. Append the xp_transactions row in the same transaction
    3. If the level went up, publish a level_up event

    The increment is evaluated by the database so concurrent awards for the
    same profile serialize on the row instead of overwriting each other.

    Raises:
        ValueError: Unknown action or reference type.
        CommunityNotFound: The profile does not exist (never created here).
    """
    amount = xp_reward(action)
    action = XPAction(action)
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        msg = f"Unknown reference type: {reference_type}"
        raise ValueError(msg)

    now = datetime.now(timezone.utc)
    new_xp = UserProfile.xp_points + amount
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == profile_id)
        .values(xp_points=new_xp, level=level_case(new_xp), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise CommunityNotFound("Profile", profile_id)

    profile = (
        await db.execute(
            select(UserProfile)
            .where(UserProfile.id == profile_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()

    entry = XPTransaction(
        user_profile_id=profile_id,
        action=action.value,
        xp_amount=amount,
        reference_id=reference_id,
        reference_type=reference_type,
        created_at=now,
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Awarded %d XP to profile %d for %s (total=%d, level=%s)",
        amount, profile_id, action.value, profile.xp_points, profile.level,
    )

    # Our increment's starting point is exactly xp - amount
    old_level = level_for(profile.xp_points - amount)
    new_level = Level(profile.level)
    if LEVEL_ORDER.index(new_level) > LEVEL_ORDER.index(old_level):
        await publish_to_profile(redis, profile_id, "level_up", {
            "old_level": old_level.value,
            "new_level": new_level.value,
            "title": LEVEL_NAMES[new_level],
            "xp_points": profile.xp_points,
        })

    return XPAward(profile=profile, transaction=entry)


async def get_xp_history(
    db: AsyncSession,
    profile_id: int,
    limit: int = 20,
) -> list[XPTransaction]:
    """Most recent XP transactions for a profile, newest first."""
    result = await db.execute(
        select(XPTransaction)
        .where(XPTransaction.user_profile_id == profile_id)
        .order_by(XPTransaction.created_at.desc(), XPTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_ledger_total(db: AsyncSession, profile_id: int) -> int:
    """Sum of all XP transactions for a profile; reconciles with xp_points."""
    result = await db.execute(
        select(func.coalesce(func.sum(XPTransaction.xp_amount), 0))
        .where(XPTransaction.user_profile_id == profile_id)
    )
    return int(result.scalar_one())


async def get_leaderboard(db: AsyncSession, limit: int = 10) -> list[UserProfile]:
    """Top profiles by XP (ties broken by who got there first)."""
    result = await db.execute(
        select(UserProfile)
        .order_by(UserProfile.xp_points.desc(), UserProfile.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
