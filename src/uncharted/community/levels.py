"""Level thresholds, permission tiers and XP rewards.

These values MUST match the web client's level badges and gating:
five tiers derived from a profile's XP, each unlocking more of the
community feature.
"""

from __future__ import annotations

import math
from enum import Enum


class Level(str, Enum):
    NEWCOMER = "newcomer"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class XPAction(str, Enum):
    FIRST_BOOKING = "first_booking"
    BOOKING_COMPLETE = "booking_complete"
    GROUP_JOIN = "group_join"
    GROUP_CREATE = "group_create"
    REVIEW_GIVEN = "review_given"
    REVIEW_RECEIVED = "review_received"
    REFERRAL = "referral"
    REPORT_VALIDATED = "report_validated"


# Ordered lowest to highest; a tier's threshold is its inclusive lower bound.
LEVEL_THRESHOLDS: dict[Level, int] = {
    Level.NEWCOMER: 0,
    Level.BRONZE: 1,
    Level.SILVER: 250,
    Level.GOLD: 750,
    Level.PLATINUM: 1500,
}

LEVEL_ORDER: list[Level] = list(LEVEL_THRESHOLDS)

LEVEL_NAMES: dict[Level, str] = {
    Level.NEWCOMER: "Newcomer",
    Level.BRONZE: "Bronze",
    Level.SILVER: "Silver",
    Level.GOLD: "Gold",
    Level.PLATINUM: "Platinum",
}

XP_REWARDS: dict[XPAction, int] = {
    XPAction.FIRST_BOOKING: 100,
    XPAction.BOOKING_COMPLETE: 50,
    XPAction.GROUP_JOIN: 30,
    XPAction.GROUP_CREATE: 75,
    XPAction.REVIEW_GIVEN: 15,
    XPAction.REVIEW_RECEIVED: 25,
    XPAction.REFERRAL: 50,
    XPAction.REPORT_VALIDATED: 10,
}

_COMMUNITY_LEVELS = frozenset({Level.SILVER, Level.GOLD, Level.PLATINUM})
_CREATOR_LEVELS = frozenset({Level.GOLD, Level.PLATINUM})

MAX_GROUP_SIZES: dict[Level, int] = {
    Level.GOLD: 10,
    Level.PLATINUM: 20,
}


def level_for(xp: int) -> Level:
    """Return the highest tier whose threshold is <= xp."""
    if xp < 0:
        msg = f"XP cannot be negative: {xp}"
        raise ValueError(msg)
    current = Level.NEWCOMER
    for level, threshold in LEVEL_THRESHOLDS.items():
        if xp >= threshold:
            current = level
    return current


def next_level(level: Level | str) -> Level | None:
    """Linear successor of a tier, None for platinum."""
    index = LEVEL_ORDER.index(Level(level))
    if index + 1 >= len(LEVEL_ORDER):
        return None
    return LEVEL_ORDER[index + 1]


def level_threshold(level: Level | str) -> int:
    return LEVEL_THRESHOLDS[Level(level)]


def next_level_threshold(level: Level | str) -> int | None:
    nxt = next_level(level)
    return None if nxt is None else LEVEL_THRESHOLDS[nxt]


def progress_percent(xp: int, level: Level | str) -> int:
    """Percentage of the way from the current tier to the next, in [0, 100].

    Rounds half up, but only platinum reports 100: a profile one XP short
    of the next tier shows 99.
    """
    next_threshold = next_level_threshold(level)
    if next_threshold is None:
        return 100

    current_threshold = level_threshold(level)
    ratio = (xp - current_threshold) / (next_threshold - current_threshold)
    return max(0, min(99, math.floor(ratio * 100 + 0.5)))


def can_access_community(level: Level | str) -> bool:
    """Silver and above may browse community groups."""
    return Level(level) in _COMMUNITY_LEVELS


def can_join_groups(level: Level | str) -> bool:
    """Silver and above may request to join groups."""
    return Level(level) in _COMMUNITY_LEVELS


def can_create_groups(level: Level | str) -> bool:
    """Gold and above may create groups."""
    return Level(level) in _CREATOR_LEVELS


def can_create_private_groups(level: Level | str) -> bool:
    """Only platinum may create invite-only groups."""
    return Level(level) is Level.PLATINUM


def max_group_size(level: Level | str) -> int:
    """Largest group a profile at this level may create (0 = cannot create)."""
    return MAX_GROUP_SIZES.get(Level(level), 0)


def xp_reward(action: XPAction | str) -> int:
    """XP granted for an action. Unknown actions raise ValueError."""
    return XP_REWARDS[XPAction(action)]


def level_info(xp: int) -> dict:
    """Summarize a profile's standing for display."""
    level = level_for(xp)
    nxt = next_level(level)
    return {
        "level": level.value,
        "name": LEVEL_NAMES[level],
        "xp": xp,
        "threshold": LEVEL_THRESHOLDS[level],
        "next_level": nxt.value if nxt else None,
        "next_threshold": LEVEL_THRESHOLDS[nxt] if nxt else None,
        "progress": progress_percent(xp, level),
    }
