"""Community API endpoints: 17 routes.

Levels (1), Session & profile (3), Leaderboard (1), Groups (8),
Join requests (2), Internal (2).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.auth.dependencies import get_current_identity, require_internal_caller
from uncharted.community.errors import CommunityRefusal, RefusalReason
from uncharted.community.group_service import (
    GroupFilters,
    GroupStatus,
    get_active_membership,
    get_group,
    get_group_by_invite_code,
    get_group_detail,
    get_pending_requests,
    get_public_groups,
)
from uncharted.community.invite_codes import normalize_invite_code
from uncharted.community.levels import (
    LEVEL_NAMES,
    LEVEL_THRESHOLDS,
    XP_REWARDS,
    can_access_community,
    can_create_groups,
    can_create_private_groups,
    can_join_groups,
    max_group_size,
)
from uncharted.community.profile_service import get_profiles_by_ids, update_profile, verify_profile
from uncharted.community.schemas import (
    AllLevelsResponse,
    AwardXPRequest,
    AwardXPResponse,
    CommunitySessionResponse,
    CreateGroupRequest,
    GroupDetailResponse,
    GroupListResponse,
    GroupResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    LevelEntry,
    LevelInfoResponse,
    MembershipResponse,
    PermissionsResponse,
    ProfileResponse,
    ProfileSummary,
    ProfileUpdateRequest,
    UpdateGroupStatusRequest,
    VerifyProfileRequest,
    XPHistoryResponse,
    XPTransactionResponse,
)
from uncharted.community.session import CommunitySession
from uncharted.community.xp_service import award_xp, get_leaderboard, get_xp_history
from uncharted.config import get_settings
from uncharted.database import get_session
from uncharted.db.models import GroupMembership, TripGroup, UserProfile, XPTransaction
from uncharted.redis_client import get_redis_dep

router = APIRouter(prefix="/api/v1/community", tags=["Community"])


# ── Helpers ──


def _profile_response(profile: UserProfile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        user_id=profile.user_id,
        display_name=profile.display_name,
        bio=profile.bio,
        is_verified=profile.is_verified,
        verified_at=profile.verified_at,
        verification_method=profile.verification_method,
        xp_points=profile.xp_points,
        level=profile.level,
        preferred_trek_types=profile.preferred_trek_types,
        experience_level=profile.experience_level,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


def _profile_summary(profile: UserProfile | None) -> ProfileSummary | None:
    if profile is None:
        return None
    return ProfileSummary(
        id=profile.id,
        display_name=profile.display_name,
        level=profile.level,
        is_verified=profile.is_verified,
    )


def _group_response(
    group: TripGroup,
    creator: UserProfile | None = None,
    viewer_profile_id: int | None = None,
) -> GroupResponse:
    """Build a GroupResponse; the invite code is only revealed to the creator."""
    return GroupResponse(
        id=group.id,
        creator_id=group.creator_id,
        trek_slug=group.trek_slug,
        trek_title=group.trek_title,
        title=group.title,
        description=group.description,
        planned_date=group.planned_date,
        flexible_dates=group.flexible_dates,
        max_members=group.max_members,
        current_members=group.current_members,
        is_public=group.is_public,
        status=group.status,
        created_at=group.created_at,
        creator=_profile_summary(creator),
        invite_code=group.invite_code if viewer_profile_id == group.creator_id else None,
    )


def _membership_response(
    membership: GroupMembership,
    profile: UserProfile | None = None,
) -> MembershipResponse:
    return MembershipResponse(
        id=membership.id,
        group_id=membership.group_id,
        user_profile_id=membership.user_profile_id,
        role=membership.role,
        status=membership.status,
        joined_at=membership.joined_at,
        created_at=membership.created_at,
        user_profile=_profile_summary(profile),
    )


def _transaction_response(tx: XPTransaction) -> XPTransactionResponse:
    return XPTransactionResponse(
        id=tx.id,
        action=tx.action,
        xp_amount=tx.xp_amount,
        reference_id=tx.reference_id,
        reference_type=tx.reference_type,
        created_at=tx.created_at,
    )


async def _group_list(
    db: AsyncSession, groups: list[TripGroup], viewer_profile_id: int | None
) -> list[GroupResponse]:
    creators = await get_profiles_by_ids(db, {g.creator_id for g in groups})
    return [_group_response(g, creators.get(g.creator_id), viewer_profile_id) for g in groups]


def _require_access(session: CommunitySession) -> None:
    if not session.can_access:
        raise CommunityRefusal(
            RefusalReason.INSUFFICIENT_LEVEL,
            "Silver level is required to access the community",
        )


async def get_community_session(
    user_id: str = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
) -> AsyncGenerator[CommunitySession, None]:
    """CommunitySession for the caller with the profile loaded (created on first visit)."""
    session = CommunitySession(db, redis, user_id)
    await session.refresh_profile()
    yield session


async def _session_response(session: CommunitySession) -> CommunitySessionResponse:
    snap = session.snapshot()
    profile_id = session.profile.id if session.profile else None
    return CommunitySessionResponse(
        profile=_profile_response(snap["profile"]),
        level=LevelInfoResponse(**snap["level"]),
        permissions=PermissionsResponse(**snap["permissions"]),
        my_groups=await _group_list(session.db, snap["my_groups"], profile_id),
        created_groups=await _group_list(session.db, snap["created_groups"], profile_id),
        pending_requests=[_membership_response(m, p) for m, p in snap["pending_requests"]],
    )


# ── Levels (1) ──


@router.get("/levels", response_model=AllLevelsResponse)
async def get_levels_endpoint():
    """Level table with thresholds, permissions and XP rewards (public)."""
    return AllLevelsResponse(
        levels=[
            LevelEntry(
                level=level.value,
                name=LEVEL_NAMES[level],
                threshold=threshold,
                can_access_community=can_access_community(level),
                can_join_groups=can_join_groups(level),
                can_create_groups=can_create_groups(level),
                can_create_private_groups=can_create_private_groups(level),
                max_group_size=max_group_size(level),
            )
            for level, threshold in LEVEL_THRESHOLDS.items()
        ],
        rewards={action.value: amount for action, amount in XP_REWARDS.items()},
    )


# ── Session & profile (3) ──


@router.get("/me", response_model=CommunitySessionResponse)
async def get_me_endpoint(
    session: CommunitySession = Depends(get_community_session),
):
    """The caller's profile, level, permissions and groups."""
    await session.refresh_groups()
    await session.db.commit()
    return await _session_response(session)


@router.patch("/me", response_model=ProfileResponse)
async def update_me_endpoint(
    body: ProfileUpdateRequest,
    session: CommunitySession = Depends(get_community_session),
):
    """Update display name, bio and trek preferences."""
    profile = await update_profile(
        session.db,
        session.profile.id,
        display_name=body.display_name,
        bio=body.bio,
        preferred_trek_types=body.preferred_trek_types,
        experience_level=body.experience_level,
    )
    await session.db.commit()
    return _profile_response(profile)


@router.get("/me/xp-history", response_model=XPHistoryResponse)
async def get_xp_history_endpoint(
    limit: int = Query(20, ge=1),
    session: CommunitySession = Depends(get_community_session),
):
    """The caller's XP transactions, newest first."""
    limit = min(limit, get_settings().xp_history_size_max)
    transactions = await get_xp_history(session.db, session.profile.id, limit)
    await session.db.commit()
    return XPHistoryResponse(
        transactions=[_transaction_response(tx) for tx in transactions],
        total=session.profile.xp_points,
    )


# ── Leaderboard (1) ──


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard_endpoint(
    limit: int = Query(10, ge=1),
    db: AsyncSession = Depends(get_session),
):
    """Top profiles by XP (public)."""
    limit = min(limit, get_settings().leaderboard_size_max)
    profiles = await get_leaderboard(db, limit)
    return LeaderboardResponse(
        entries=[
            LeaderboardEntry(rank=i + 1, profile=_profile_summary(p), xp_points=p.xp_points)
            for i, p in enumerate(profiles)
        ],
    )


# ── Groups (8) ──


@router.get("/groups", response_model=GroupListResponse)
async def list_groups_endpoint(
    trek_slug: str | None = Query(None, max_length=128),
    status: GroupStatus | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    has_space: bool = Query(False),
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    session: CommunitySession = Depends(get_community_session),
):
    """Public groups ordered by planned date; open groups unless a status is given."""
    _require_access(session)
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=422, detail="date_from must not be after date_to")

    limit = min(limit, get_settings().groups_page_size_max)
    filters = GroupFilters(
        trek_slug=trek_slug,
        status=status,
        date_from=date_from,
        date_to=date_to,
        has_space=has_space,
    )
    groups = await get_public_groups(session.db, filters, limit, offset)
    items = await _group_list(session.db, groups, session.profile.id)
    await session.db.commit()
    return GroupListResponse(groups=items, limit=limit, offset=offset)


@router.post("/groups", response_model=GroupResponse, status_code=201)
async def create_group_endpoint(
    body: CreateGroupRequest,
    session: CommunitySession = Depends(get_community_session),
):
    """Create a trip group. The creator becomes its first member."""
    group = await session.create_group(**body.model_dump())
    await session.db.commit()
    return _group_response(group, session.profile, session.profile.id)


@router.get("/groups/invite/{invite_code}", response_model=GroupResponse)
async def get_group_by_invite_endpoint(
    invite_code: str,
    session: CommunitySession = Depends(get_community_session),
):
    """Resolve a private group from its invite code."""
    _require_access(session)
    group = await get_group_by_invite_code(session.db, invite_code)
    creators = await get_profiles_by_ids(session.db, {group.creator_id})
    await session.db.commit()
    return _group_response(group, creators.get(group.creator_id), session.profile.id)


@router.get("/groups/{group_id}", response_model=GroupDetailResponse)
async def get_group_endpoint(
    group_id: int,
    session: CommunitySession = Depends(get_community_session),
):
    """Group detail with creator and approved members.

    Private groups are only visible to their members and requesters.
    """
    _require_access(session)
    group, creator, members = await get_group_detail(session.db, group_id)
    if not group.is_public:
        viewer = await get_active_membership(session.db, group_id, session.profile.id)
        if viewer is None:
            raise HTTPException(status_code=404, detail="Group not found")
    await session.db.commit()

    base = _group_response(group, creator, session.profile.id)
    return GroupDetailResponse(
        **base.model_dump(),
        members=[_membership_response(m, p) for m, p in members],
    )


async def _may_join_by_id(session: CommunitySession, group_id: int, invite_code: str | None) -> bool:
    group = await get_group(session.db, group_id)
    if group.is_public:
        return True
    if invite_code is not None and normalize_invite_code(invite_code) == group.invite_code:
        return True
    return await get_active_membership(session.db, group_id, session.profile.id) is not None


@router.post("/groups/{group_id}/join", response_model=MembershipResponse, status_code=201)
async def join_group_endpoint(
    group_id: int,
    invite_code: str | None = Query(None, max_length=16),
    session: CommunitySession = Depends(get_community_session),
):
    """Request to join a group; the creator approves or rejects.

    Private groups answer 404 unless the matching invite code is supplied,
    the same as their detail endpoint.
    """
    if not await _may_join_by_id(session, group_id, invite_code):
        raise HTTPException(status_code=404, detail="Group not found")
    membership = await session.request_to_join(group_id)
    await session.db.commit()
    return _membership_response(membership, session.profile)


@router.post("/groups/{group_id}/leave", response_model=MembershipResponse)
async def leave_group_endpoint(
    group_id: int,
    session: CommunitySession = Depends(get_community_session),
):
    """Leave a group (members only; the creator cancels instead)."""
    membership = await session.leave(group_id)
    await session.db.commit()
    return _membership_response(membership, session.profile)


@router.patch("/groups/{group_id}/status", response_model=GroupResponse)
async def update_group_status_endpoint(
    group_id: int,
    body: UpdateGroupStatusRequest,
    session: CommunitySession = Depends(get_community_session),
):
    """Start, complete or cancel a trip (creator only)."""
    group = await session.update_group_status(group_id, body.status)
    await session.db.commit()
    return _group_response(group, session.profile, session.profile.id)


@router.get("/groups/{group_id}/requests", response_model=list[MembershipResponse])
async def list_join_requests_endpoint(
    group_id: int,
    session: CommunitySession = Depends(get_community_session),
):
    """Pending join requests for a group (creator only)."""
    group = await get_group(session.db, group_id)
    if group.creator_id != session.profile.id:
        raise CommunityRefusal(
            RefusalReason.NOT_GROUP_CREATOR,
            "Only the group creator can view join requests",
        )
    pending = await get_pending_requests(session.db, group_id)
    await session.db.commit()
    return [_membership_response(m, p) for m, p in pending]


# ── Join requests (2) ──


@router.post("/memberships/{membership_id}/approve", response_model=MembershipResponse)
async def approve_request_endpoint(
    membership_id: int,
    session: CommunitySession = Depends(get_community_session),
):
    """Approve a join request (group creator only)."""
    membership = await session.approve(membership_id)
    await session.db.commit()
    return _membership_response(membership)


@router.post("/memberships/{membership_id}/reject", response_model=MembershipResponse)
async def reject_request_endpoint(
    membership_id: int,
    session: CommunitySession = Depends(get_community_session),
):
    """Reject a join request (group creator only)."""
    membership = await session.reject(membership_id)
    await session.db.commit()
    return _membership_response(membership)


# ── Internal (2) ──


@router.post(
    "/xp/award",
    response_model=AwardXPResponse,
    dependencies=[Depends(require_internal_caller)],
)
async def award_xp_endpoint(
    body: AwardXPRequest,
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
):
    """Award XP for a booking, review or referral (service-to-service)."""
    result = await award_xp(
        db, redis, body.profile_id, body.action, body.reference_id, body.reference_type
    )
    await db.commit()
    return AwardXPResponse(
        profile=_profile_response(result.profile),
        transaction=_transaction_response(result.transaction),
    )


@router.post(
    "/profiles/{profile_id}/verify",
    response_model=ProfileResponse,
    dependencies=[Depends(require_internal_caller)],
)
async def verify_profile_endpoint(
    profile_id: int,
    body: VerifyProfileRequest,
    db: AsyncSession = Depends(get_session),
):
    """Mark a profile verified after a booking, ID or phone check (service-to-service)."""
    profile = await verify_profile(db, profile_id, body.method)
    await db.commit()
    return _profile_response(profile)
