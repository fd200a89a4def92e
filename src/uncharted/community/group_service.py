"""Trip group business logic.

Rules:
- Only Gold+ profiles create groups; only Platinum creates private groups
- max_members is clamped to the creator's level cap (Gold 10, Platinum 20)
- Private groups get a server-generated 8-char invite code
- One active (pending or approved) membership per profile per group
- Only the group creator approves or rejects join requests
- Approval claims a slot atomically; the slot that fills the group flips it to full
- The creator cannot leave; a member leaving a full group reopens it
- Status changes by the creator: open/full -> in_progress/completed/cancelled,
  in_progress -> completed/cancelled; completed and cancelled are terminal
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community.errors import (
    CommunityFault,
    CommunityNotFound,
    CommunityRefusal,
    RefusalReason,
)
from uncharted.community.events import publish_to_profile
from uncharted.community.invite_codes import generate_unique_invite_code, normalize_invite_code
from uncharted.community.levels import (
    can_create_groups,
    can_create_private_groups,
    can_join_groups,
    max_group_size,
)
from uncharted.community.profile_service import get_profile
from uncharted.db.models import ACTIVE_MEMBERSHIP_STATUSES, GroupMembership, TripGroup, UserProfile

logger = structlog.get_logger()


class GroupStatus(str, Enum):
    OPEN = "open"
    FULL = "full"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MembershipRole(str, Enum):
    CREATOR = "creator"
    CO_LEADER = "co_leader"
    MEMBER = "member"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    LEFT = "left"


# Creator-initiated transitions. open <-> full is derived from the member count.
STATUS_TRANSITIONS: dict[GroupStatus, frozenset[GroupStatus]] = {
    GroupStatus.OPEN: frozenset({GroupStatus.IN_PROGRESS, GroupStatus.COMPLETED, GroupStatus.CANCELLED}),
    GroupStatus.FULL: frozenset({GroupStatus.IN_PROGRESS, GroupStatus.COMPLETED, GroupStatus.CANCELLED}),
    GroupStatus.IN_PROGRESS: frozenset({GroupStatus.COMPLETED, GroupStatus.CANCELLED}),
    GroupStatus.COMPLETED: frozenset(),
    GroupStatus.CANCELLED: frozenset(),
}


@dataclass
class GroupFilters:
    trek_slug: str | None = None
    status: GroupStatus | str | None = None
    date_from: date | None = None
    date_to: date | None = None
    has_space: bool = False


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_group(db: AsyncSession, group_id: int) -> TripGroup:
    """Get a group by ID.

    Raises:
        CommunityNotFound: If no group has this id.
    """
    result = await db.execute(
        select(TripGroup)
        .where(TripGroup.id == group_id)
        .execution_options(populate_existing=True)
    )
    group = result.scalar_one_or_none()
    if group is None:
        raise CommunityNotFound("Group", group_id)
    return group


async def get_group_by_invite_code(db: AsyncSession, invite_code: str) -> TripGroup:
    """Resolve a private group from its invite code (case-insensitive)."""
    code = normalize_invite_code(invite_code)
    result = await db.execute(select(TripGroup).where(TripGroup.invite_code == code))
    group = result.scalar_one_or_none()
    if group is None:
        raise CommunityNotFound("Group", code)
    return group


async def get_membership(db: AsyncSession, membership_id: int) -> GroupMembership:
    result = await db.execute(
        select(GroupMembership)
        .where(GroupMembership.id == membership_id)
        .execution_options(populate_existing=True)
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise CommunityNotFound("Membership", membership_id)
    return membership


async def get_active_membership(
    db: AsyncSession, group_id: int, profile_id: int
) -> GroupMembership | None:
    """The profile's pending or approved membership in a group, if any."""
    result = await db.execute(
        select(GroupMembership)
        .where(
            GroupMembership.group_id == group_id,
            GroupMembership.user_profile_id == profile_id,
            GroupMembership.status.in_(ACTIVE_MEMBERSHIP_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_public_groups(
    db: AsyncSession,
    filters: GroupFilters | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[TripGroup]:
    """List public groups, open ones unless a status filter says otherwise."""
    filters = filters or GroupFilters()
    status = GroupStatus(filters.status) if filters.status else GroupStatus.OPEN

    query = select(TripGroup).where(
        TripGroup.is_public.is_(True),
        TripGroup.status == status.value,
    )
    if filters.trek_slug:
        query = query.where(TripGroup.trek_slug == filters.trek_slug)
    if filters.date_from:
        query = query.where(TripGroup.planned_date >= filters.date_from)
    if filters.date_to:
        query = query.where(TripGroup.planned_date <= filters.date_to)
    if filters.has_space:
        query = query.where(TripGroup.current_members < TripGroup.max_members)

    result = await db.execute(
        query.order_by(TripGroup.planned_date.asc(), TripGroup.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_group_members(
    db: AsyncSession,
    group_id: int,
    statuses: tuple[str, ...] = (MembershipStatus.APPROVED.value,),
) -> list[tuple[GroupMembership, UserProfile]]:
    """Memberships of a group with their profiles, earliest first."""
    result = await db.execute(
        select(GroupMembership, UserProfile)
        .join(UserProfile, GroupMembership.user_profile_id == UserProfile.id)
        .where(
            GroupMembership.group_id == group_id,
            GroupMembership.status.in_(statuses),
        )
        .order_by(GroupMembership.created_at.asc(), GroupMembership.id.asc())
    )
    return [(row.GroupMembership, row.UserProfile) for row in result]


async def get_group_detail(
    db: AsyncSession, group_id: int
) -> tuple[TripGroup, UserProfile, list[tuple[GroupMembership, UserProfile]]]:
    """Group with its creator profile and approved members."""
    group = await get_group(db, group_id)
    creator = await get_profile(db, group.creator_id)
    members = await get_group_members(db, group_id)
    return group, creator, members


async def get_groups_by_creator(db: AsyncSession, creator_profile_id: int) -> list[TripGroup]:
    """Groups created by a profile, newest first."""
    result = await db.execute(
        select(TripGroup)
        .where(TripGroup.creator_id == creator_profile_id)
        .order_by(TripGroup.created_at.desc(), TripGroup.id.desc())
    )
    return list(result.scalars().all())


async def get_groups_for_member(db: AsyncSession, profile_id: int) -> list[TripGroup]:
    """Groups where the profile holds an approved membership (creator included)."""
    result = await db.execute(
        select(TripGroup)
        .join(GroupMembership, GroupMembership.group_id == TripGroup.id)
        .where(
            GroupMembership.user_profile_id == profile_id,
            GroupMembership.status == MembershipStatus.APPROVED.value,
        )
        .order_by(TripGroup.planned_date.asc(), TripGroup.id.asc())
    )
    return list(result.scalars().all())


async def get_pending_requests(
    db: AsyncSession, group_id: int
) -> list[tuple[GroupMembership, UserProfile]]:
    """Pending join requests for one group."""
    return await get_group_members(db, group_id, statuses=(MembershipStatus.PENDING.value,))


async def get_pending_requests_for_creator(
    db: AsyncSession, creator_profile_id: int
) -> list[tuple[GroupMembership, UserProfile]]:
    """Pending join requests across every group the profile created."""
    result = await db.execute(
        select(GroupMembership, UserProfile)
        .join(TripGroup, GroupMembership.group_id == TripGroup.id)
        .join(UserProfile, GroupMembership.user_profile_id == UserProfile.id)
        .where(
            TripGroup.creator_id == creator_profile_id,
            GroupMembership.status == MembershipStatus.PENDING.value,
        )
        .order_by(GroupMembership.created_at.asc(), GroupMembership.id.asc())
    )
    return [(row.GroupMembership, row.UserProfile) for row in result]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def create_group(
    db: AsyncSession,
    creator_profile_id: int,
    *,
    trek_slug: str,
    trek_title: str,
    title: str,
    planned_date: date,
    description: str | None = None,
    flexible_dates: bool = False,
    max_members: int | None = None,
    is_public: bool = True,
) -> TripGroup:
    """Create a trip group. The creator becomes its first, pre-approved member.

    The group row and the creator membership are flushed in the caller's
    transaction and commit together.
    """
    creator = await get_profile(db, creator_profile_id)
    if not can_create_groups(creator.level):
        raise CommunityRefusal(
            RefusalReason.INSUFFICIENT_LEVEL,
            "Gold level is required to create groups",
        )
    if not is_public and not can_create_private_groups(creator.level):
        raise CommunityRefusal(
            RefusalReason.PRIVATE_REQUIRES_PLATINUM,
            "Platinum level is required to create private groups",
        )

    cap = max_group_size(creator.level)
    size = cap if max_members is None else min(max_members, cap)
    if size < 1:
        msg = "max_members must be at least 1"
        raise ValueError(msg)

    invite_code = None if is_public else await generate_unique_invite_code(db)
    now = datetime.now(timezone.utc)

    group = TripGroup(
        creator_id=creator_profile_id,
        trek_slug=trek_slug,
        trek_title=trek_title,
        title=title,
        description=description,
        planned_date=planned_date,
        flexible_dates=flexible_dates,
        max_members=size,
        current_members=1,
        is_public=is_public,
        invite_code=invite_code,
        status=(GroupStatus.FULL if size == 1 else GroupStatus.OPEN).value,
        created_at=now,
        updated_at=now,
    )
    db.add(group)
    await db.flush()

    db.add(GroupMembership(
        group_id=group.id,
        user_profile_id=creator_profile_id,
        role=MembershipRole.CREATOR.value,
        status=MembershipStatus.APPROVED.value,
        joined_at=now,
        created_at=now,
    ))
    await db.flush()

    logger.info(
        "group_created",
        group_id=group.id,
        creator_id=creator_profile_id,
        max_members=size,
        requested_max_members=max_members,
        is_public=is_public,
    )
    return group


async def request_to_join_group(
    db: AsyncSession,
    redis: object | None,
    group_id: int,
    profile_id: int,
) -> GroupMembership:
    """Submit a pending join request.

    Guards, in order: the profile's level allows joining, the group is open,
    the group has a free slot, and the profile has no active membership.
    """
    profile = await get_profile(db, profile_id)
    if not can_join_groups(profile.level):
        raise CommunityRefusal(
            RefusalReason.INSUFFICIENT_LEVEL,
            "Silver level is required to join groups",
        )

    group = await get_group(db, group_id)
    if group.status != GroupStatus.OPEN.value:
        raise CommunityRefusal(RefusalReason.GROUP_NOT_OPEN, "Group is not open for new members")
    if group.current_members >= group.max_members:
        raise CommunityRefusal(RefusalReason.GROUP_FULL, "Group is full")

    if await get_active_membership(db, group_id, profile_id) is not None:
        raise CommunityRefusal(
            RefusalReason.ALREADY_MEMBER,
            "You are already a member or have a pending request",
        )

    now = datetime.now(timezone.utc)
    membership = GroupMembership(
        group_id=group_id,
        user_profile_id=profile_id,
        role=MembershipRole.MEMBER.value,
        status=MembershipStatus.PENDING.value,
        created_at=now,
    )
    db.add(membership)
    await db.flush()

    logger.info("join_requested", group_id=group_id, profile_id=profile_id, membership_id=membership.id)
    await publish_to_profile(redis, group.creator_id, "join_requested", {
        "group_id": group_id,
        "membership_id": membership.id,
        "profile_id": profile_id,
    })
    return membership


async def _pending_request_for_creator(
    db: AsyncSession, membership_id: int, actor_profile_id: int
) -> tuple[GroupMembership, TripGroup]:
    """Load a join request, checking the actor created its group and it is still pending."""
    membership = await get_membership(db, membership_id)
    group = await get_group(db, membership.group_id)
    if group.creator_id != actor_profile_id:
        raise CommunityRefusal(
            RefusalReason.NOT_GROUP_CREATOR,
            "Only the group creator can handle join requests",
        )
    if membership.status != MembershipStatus.PENDING.value:
        raise CommunityRefusal(
            RefusalReason.INVALID_TRANSITION,
            f"Join request is already {membership.status}",
        )
    return membership, group


async def _flip_pending(
    db: AsyncSession, membership_id: int, new_status: MembershipStatus, now: datetime
) -> None:
    """pending -> new_status as a compare-and-set on the membership row."""
    values: dict[str, object] = {"status": new_status.value}
    if new_status is MembershipStatus.APPROVED:
        values["joined_at"] = now
    result = await db.execute(
        update(GroupMembership)
        .where(
            GroupMembership.id == membership_id,
            GroupMembership.status == MembershipStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CommunityRefusal(
            RefusalReason.INVALID_TRANSITION,
            "Join request was already handled",
        )


async def approve_join_request(
    db: AsyncSession,
    redis: object | None,
    membership_id: int,
    approver_profile_id: int,
) -> GroupMembership:
    """Approve a pending join request (group creator only).

    The member count is incremented with a single bounded UPDATE, so two
    concurrent approvals for the last slot cannot both succeed. The
    increment that reaches max_members also flips the group to full.
    """
    membership, group = await _pending_request_for_creator(db, membership_id, approver_profile_id)
    now = datetime.now(timezone.utc)

    await _flip_pending(db, membership_id, MembershipStatus.APPROVED, now)

    claimed = await db.execute(
        update(TripGroup)
        .where(
            TripGroup.id == group.id,
            TripGroup.status == GroupStatus.OPEN.value,
            TripGroup.current_members < TripGroup.max_members,
        )
        .values(
            current_members=TripGroup.current_members + 1,
            status=case(
                (TripGroup.current_members + 1 >= TripGroup.max_members, GroupStatus.FULL.value),
                else_=TripGroup.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        # No slot: undo the flip inside the same transaction
        await db.execute(
            update(GroupMembership)
            .where(GroupMembership.id == membership_id)
            .values(status=MembershipStatus.PENDING.value, joined_at=None)
            .execution_options(synchronize_session=False)
        )
        group = await get_group(db, group.id)
        logger.info("join_approval_refused", group_id=group.id, status=group.status)
        if group.status in (GroupStatus.OPEN.value, GroupStatus.FULL.value):
            raise CommunityRefusal(RefusalReason.GROUP_FULL, "Group is full")
        raise CommunityRefusal(RefusalReason.GROUP_NOT_OPEN, "Group is not open for new members")

    membership = await get_membership(db, membership_id)
    group = await get_group(db, group.id)
    logger.info(
        "join_approved",
        group_id=group.id,
        membership_id=membership_id,
        current_members=group.current_members,
        status=group.status,
    )
    await publish_to_profile(redis, membership.user_profile_id, "join_approved", {
        "group_id": group.id,
        "membership_id": membership_id,
    })
    return membership


async def reject_join_request(
    db: AsyncSession,
    redis: object | None,
    membership_id: int,
    rejecter_profile_id: int,
) -> GroupMembership:
    """Reject a pending join request (group creator only). Member count is unchanged."""
    membership, group = await _pending_request_for_creator(db, membership_id, rejecter_profile_id)
    await _flip_pending(db, membership_id, MembershipStatus.REJECTED, datetime.now(timezone.utc))

    membership = await get_membership(db, membership_id)
    logger.info("join_rejected", group_id=group.id, membership_id=membership_id)
    await publish_to_profile(redis, membership.user_profile_id, "join_rejected", {
        "group_id": group.id,
        "membership_id": membership_id,
    })
    return membership


async def leave_group(db: AsyncSession, group_id: int, profile_id: int) -> GroupMembership:
    """Leave a group. The creator must cancel the group instead."""
    group = await get_group(db, group_id)
    membership = await get_active_membership(db, group_id, profile_id)
    if membership is None or membership.status != MembershipStatus.APPROVED.value:
        raise CommunityRefusal(RefusalReason.NOT_A_MEMBER, "You are not a member of this group")
    if membership.role == MembershipRole.CREATOR.value:
        raise CommunityRefusal(
            RefusalReason.CREATOR_CANNOT_LEAVE,
            "The creator cannot leave the group. Cancel it instead.",
        )

    now = datetime.now(timezone.utc)
    left = await db.execute(
        update(GroupMembership)
        .where(
            GroupMembership.id == membership.id,
            GroupMembership.status == MembershipStatus.APPROVED.value,
        )
        .values(status=MembershipStatus.LEFT.value)
        .execution_options(synchronize_session=False)
    )
    if left.rowcount != 1:
        raise CommunityRefusal(RefusalReason.NOT_A_MEMBER, "You are not a member of this group")

    released = await db.execute(
        update(TripGroup)
        .where(TripGroup.id == group_id, TripGroup.current_members > 1)
        .values(
            current_members=TripGroup.current_members - 1,
            status=case(
                (TripGroup.status == GroupStatus.FULL.value, GroupStatus.OPEN.value),
                else_=TripGroup.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if released.rowcount != 1:
        msg = f"Member count of group {group_id} is out of sync with its memberships"
        raise CommunityFault(msg)

    logger.info("group_left", group_id=group.id, profile_id=profile_id)
    return await get_membership(db, membership.id)


async def update_group_status(
    db: AsyncSession,
    group_id: int,
    creator_profile_id: int,
    status: GroupStatus | str,
) -> TripGroup:
    """Creator-initiated status change (start, complete or cancel the trip)."""
    new_status = GroupStatus(status)
    group = await get_group(db, group_id)
    if group.creator_id != creator_profile_id:
        raise CommunityRefusal(
            RefusalReason.NOT_GROUP_CREATOR,
            "Only the group creator can change its status",
        )

    current = GroupStatus(group.status)
    if new_status not in STATUS_TRANSITIONS[current]:
        raise CommunityRefusal(
            RefusalReason.INVALID_TRANSITION,
            f"Cannot change group status from {current.value} to {new_status.value}",
        )

    result = await db.execute(
        update(TripGroup)
        .where(TripGroup.id == group_id, TripGroup.status == current.value)
        .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CommunityRefusal(
            RefusalReason.INVALID_TRANSITION,
            "Group status changed concurrently",
        )

    logger.info("group_status_changed", group_id=group_id, old=current.value, new=new_status.value)
    return await get_group(db, group_id)
