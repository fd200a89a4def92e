"""Pydantic schemas for community endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

from uncharted.community.group_service import GroupStatus
from uncharted.community.levels import XPAction


# --- Profiles & levels ---


class ProfileSummary(BaseModel):
    """Profile as embedded in group listings and member lists."""

    id: int
    display_name: str | None = None
    level: str
    is_verified: bool


class ProfileResponse(BaseModel):
    id: int
    user_id: str
    display_name: str | None = None
    bio: str | None = None
    is_verified: bool
    verified_at: datetime | None = None
    verification_method: str | None = None
    xp_points: int
    level: str
    preferred_trek_types: list[str] | None = None
    experience_level: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ProfileUpdateRequest(BaseModel):
    display_name: str | None = Field(None, min_length=1, max_length=64)
    bio: str | None = Field(None, max_length=500)
    preferred_trek_types: list[str] | None = Field(None, max_length=20)
    experience_level: Literal["beginner", "intermediate", "advanced", "expert"] | None = None


class VerifyProfileRequest(BaseModel):
    method: Literal["booking", "id", "phone"]


class LevelInfoResponse(BaseModel):
    level: str
    name: str
    xp: int
    threshold: int
    next_level: str | None = None
    next_threshold: int | None = None
    progress: int


class LevelEntry(BaseModel):
    level: str
    name: str
    threshold: int
    can_access_community: bool
    can_join_groups: bool
    can_create_groups: bool
    can_create_private_groups: bool
    max_group_size: int


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]
    rewards: dict[str, int]


class PermissionsResponse(BaseModel):
    can_access: bool
    can_join: bool
    can_create: bool


# --- XP ---


class AwardXPRequest(BaseModel):
    profile_id: int
    action: XPAction
    reference_id: str | None = Field(None, max_length=128)
    reference_type: Literal["booking", "group", "review", "referral"] | None = None


class XPTransactionResponse(BaseModel):
    id: int
    action: str
    xp_amount: int
    reference_id: str | None = None
    reference_type: str | None = None
    created_at: datetime | None = None


class AwardXPResponse(BaseModel):
    profile: ProfileResponse
    transaction: XPTransactionResponse


class XPHistoryResponse(BaseModel):
    transactions: list[XPTransactionResponse]
    total: int


class LeaderboardEntry(BaseModel):
    rank: int
    profile: ProfileSummary
    xp_points: int


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]


# --- Groups ---


class CreateGroupRequest(BaseModel):
    trek_slug: str = Field(..., min_length=1, max_length=128)
    trek_title: str = Field(..., min_length=1, max_length=256)
    title: str = Field(..., min_length=3, max_length=128)
    description: str | None = Field(None, max_length=2000)
    planned_date: date
    flexible_dates: bool = False
    max_members: int | None = Field(None, ge=1)
    is_public: bool = True


class UpdateGroupStatusRequest(BaseModel):
    status: GroupStatus


class GroupResponse(BaseModel):
    id: int
    creator_id: int
    trek_slug: str
    trek_title: str
    title: str
    description: str | None = None
    planned_date: date
    flexible_dates: bool
    max_members: int
    current_members: int
    is_public: bool
    status: str
    created_at: datetime | None = None
    creator: ProfileSummary | None = None
    invite_code: str | None = None  # Only shown to the creator


class MembershipResponse(BaseModel):
    id: int
    group_id: int
    user_profile_id: int
    role: str
    status: str
    joined_at: datetime | None = None
    created_at: datetime | None = None
    user_profile: ProfileSummary | None = None


class GroupDetailResponse(GroupResponse):
    members: list[MembershipResponse] = []


class GroupListResponse(BaseModel):
    groups: list[GroupResponse]
    limit: int
    offset: int


# --- Session ---


class CommunitySessionResponse(BaseModel):
    profile: ProfileResponse
    level: LevelInfoResponse
    permissions: PermissionsResponse
    my_groups: list[GroupResponse]
    created_groups: list[GroupResponse]
    pending_requests: list[MembershipResponse]
