"""Typed outcomes for community operations.

Refusals are expected business-rule outcomes shown to the user.
Faults are unexpected persistence states that must not leak detail.
"""

from __future__ import annotations

from enum import Enum


class RefusalReason(str, Enum):
    INSUFFICIENT_LEVEL = "insufficient_level"
    PRIVATE_REQUIRES_PLATINUM = "private_requires_platinum"
    GROUP_NOT_OPEN = "group_not_open"
    GROUP_FULL = "group_full"
    ALREADY_MEMBER = "already_member"
    NOT_GROUP_CREATOR = "not_group_creator"
    CREATOR_CANNOT_LEAVE = "creator_cannot_leave"
    NOT_A_MEMBER = "not_a_member"
    INVALID_TRANSITION = "invalid_transition"


class CommunityError(Exception):
    """Base class for community errors."""


class CommunityRefusal(CommunityError):
    """A precondition for the requested operation does not hold."""

    def __init__(self, reason: RefusalReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class CommunityNotFound(CommunityError, LookupError):
    """A keyed row (profile, group, membership) does not exist."""

    def __init__(self, entity: str, key: object) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.key = key


class CommunityFault(CommunityError):
    """Storage returned a state the operation cannot reconcile."""
