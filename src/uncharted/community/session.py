"""Per-user community view: profile, permissions and the user's groups.

A CommunitySession is built for one signed-in identity and one database
session. Nothing refreshes in the background; callers re-fetch explicitly
with refresh_profile() / refresh_groups(), and the mutating helpers do so
after they succeed.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community import group_service
from uncharted.community.group_service import GroupStatus
from uncharted.community.levels import (
    XPAction,
    can_access_community,
    can_create_groups,
    can_join_groups,
    level_info,
)
from uncharted.community.profile_service import get_or_create_profile
from uncharted.community.xp_service import XPAward, award_xp
from uncharted.db.models import GroupMembership, TripGroup, UserProfile

logger = structlog.get_logger()


class CommunitySession:
    """Aggregates a user's profile, permissions and groups for presentation."""

    def __init__(self, db: AsyncSession, redis: object | None, user_id: str) -> None:
        self.db = db
        self.redis = redis
        self.user_id = user_id

        self.profile: UserProfile | None = None
        self.my_groups: list[TripGroup] = []
        self.created_groups: list[TripGroup] = []
        self.pending_requests: list[tuple[GroupMembership, UserProfile]] = []

    # ── Permissions ──

    @property
    def can_access(self) -> bool:
        return self.profile is not None and can_access_community(self.profile.level)

    @property
    def can_join(self) -> bool:
        return self.profile is not None and can_join_groups(self.profile.level)

    @property
    def can_create(self) -> bool:
        return self.profile is not None and can_create_groups(self.profile.level)

    def _require_profile(self) -> UserProfile:
        if self.profile is None:
            msg = "Profile not loaded. Call refresh_profile() first."
            raise RuntimeError(msg)
        return self.profile

    # ── Loading ──

    async def load(self) -> CommunitySession:
        """Load the profile, then the groups keyed by it."""
        await self.refresh_profile()
        await self.refresh_groups()
        return self

    async def refresh_profile(self) -> UserProfile:
        self.profile = await get_or_create_profile(self.db, self.user_id)
        return self.profile

    async def refresh_groups(self) -> None:
        """Re-fetch the user's groups. Requires a loaded profile with community access."""
        if self.profile is None or not self.can_access:
            self.my_groups = []
            self.created_groups = []
            self.pending_requests = []
            return

        profile_id = self.profile.id
        self.my_groups = await group_service.get_groups_for_member(self.db, profile_id)
        self.created_groups = await group_service.get_groups_by_creator(self.db, profile_id)
        if self.created_groups:
            self.pending_requests = await group_service.get_pending_requests_for_creator(
                self.db, profile_id
            )
        else:
            self.pending_requests = []

    # ── XP ──

    async def award_xp(
        self,
        action: XPAction | str,
        reference_id: str | None = None,
        reference_type: str | None = None,
    ) -> XPAward:
        """Award XP to the signed-in profile and adopt the updated snapshot."""
        profile = self._require_profile()
        was_allowed = self.can_access
        result = await award_xp(self.db, self.redis, profile.id, action, reference_id, reference_type)
        self.profile = result.profile
        if self.can_access and not was_allowed:
            await self.refresh_groups()
        return result

    # ── Group actions ──

    async def create_group(
        self,
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
        profile = self._require_profile()
        group = await group_service.create_group(
            self.db,
            profile.id,
            trek_slug=trek_slug,
            trek_title=trek_title,
            title=title,
            planned_date=planned_date,
            description=description,
            flexible_dates=flexible_dates,
            max_members=max_members,
            is_public=is_public,
        )
        await self.award_xp(XPAction.GROUP_CREATE, str(group.id), "group")
        await self.refresh_groups()
        return group

    async def request_to_join(self, group_id: int) -> GroupMembership:
        profile = self._require_profile()
        membership = await group_service.request_to_join_group(self.db, self.redis, group_id, profile.id)
        await self.refresh_groups()
        return membership

    async def approve(self, membership_id: int) -> GroupMembership:
        """Approve a request to one of the user's groups; the new member earns group_join XP."""
        profile = self._require_profile()
        membership = await group_service.approve_join_request(
            self.db, self.redis, membership_id, profile.id
        )
        await award_xp(
            self.db,
            self.redis,
            membership.user_profile_id,
            XPAction.GROUP_JOIN,
            str(membership.group_id),
            "group",
        )
        await self.refresh_groups()
        return membership

    async def reject(self, membership_id: int) -> GroupMembership:
        profile = self._require_profile()
        membership = await group_service.reject_join_request(
            self.db, self.redis, membership_id, profile.id
        )
        await self.refresh_groups()
        return membership

    async def leave(self, group_id: int) -> GroupMembership:
        profile = self._require_profile()
        membership = await group_service.leave_group(self.db, group_id, profile.id)
        await self.refresh_groups()
        return membership

    async def update_group_status(self, group_id: int, status: GroupStatus | str) -> TripGroup:
        profile = self._require_profile()
        group = await group_service.update_group_status(self.db, group_id, profile.id, status)
        await self.refresh_groups()
        return group

    # ── Presentation ──

    def snapshot(self) -> dict[str, Any]:
        """Plain view of the session for the API layer."""
        profile = self.profile
        return {
            "profile": profile,
            "level": level_info(profile.xp_points) if profile else None,
            "permissions": {
                "can_access": self.can_access,
                "can_join": self.can_join,
                "can_create": self.can_create,
            },
            "my_groups": list(self.my_groups),
            "created_groups": list(self.created_groups),
            "pending_requests": list(self.pending_requests),
        }
