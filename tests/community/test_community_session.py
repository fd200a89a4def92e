"""CommunitySession facade tests."""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community.errors import CommunityRefusal
from uncharted.community.profile_service import get_profile
from uncharted.community.session import CommunitySession
from uncharted.community.xp_service import get_ledger_total

GROUP = {
    "trek_slug": "kilimanjaro-machame",
    "trek_title": "Kilimanjaro Machame Route",
    "title": "New year summit",
    "planned_date": date(2027, 12, 28),
}


class TestLoading:
    @pytest.mark.asyncio
    async def test_load_creates_profile_without_access(self, db_session: AsyncSession):
        session = await CommunitySession(db_session, None, "auth|new").load()

        assert session.profile is not None
        assert session.profile.level == "newcomer"
        assert session.can_access is False
        assert session.can_join is False
        assert session.can_create is False
        assert session.my_groups == []
        assert session.pending_requests == []

    @pytest.mark.asyncio
    async def test_actions_require_loaded_profile(self, db_session: AsyncSession):
        session = CommunitySession(db_session, None, "auth|lazy")
        with pytest.raises(RuntimeError):
            await session.request_to_join(1)

    @pytest.mark.asyncio
    async def test_refresh_groups_without_profile_clears(self, db_session: AsyncSession):
        session = CommunitySession(db_session, None, "auth|none")
        await session.refresh_groups()
        assert session.my_groups == []
        assert session.created_groups == []


class TestAwardXP:
    @pytest.mark.asyncio
    async def test_award_updates_snapshot_and_permissions(
        self, db_session: AsyncSession, make_profile
    ):
        await make_profile("auth|climber", xp=240)
        session = await CommunitySession(db_session, None, "auth|climber").load()
        assert session.can_access is False

        result = await session.award_xp("review_given")
        assert result.profile.xp_points == 255
        assert session.profile.xp_points == 255
        assert session.can_access is True
        assert session.can_join is True
        assert session.can_create is False


class TestGroupFlow:
    @pytest.mark.asyncio
    async def test_create_join_approve_leave(self, db_session: AsyncSession, make_profile):
        await make_profile("auth|leader", xp=800)
        await make_profile("auth|hiker", xp=300)
        leader = await CommunitySession(db_session, None, "auth|leader").load()
        hiker = await CommunitySession(db_session, None, "auth|hiker").load()

        group = await leader.create_group(**GROUP, max_members=3)
        assert leader.profile.xp_points == 875  # + group_create
        assert await get_ledger_total(db_session, leader.profile.id) == 75
        assert [g.id for g in leader.created_groups] == [group.id]
        assert [g.id for g in leader.my_groups] == [group.id]

        membership = await hiker.request_to_join(group.id)
        await leader.refresh_groups()
        assert [m.id for m, _ in leader.pending_requests] == [membership.id]

        approved = await leader.approve(membership.id)
        assert approved.status == "approved"
        assert leader.pending_requests == []
        hiker_profile = await get_profile(db_session, hiker.profile.id)
        assert hiker_profile.xp_points == 330  # + group_join

        await hiker.refresh_groups()
        assert [g.id for g in hiker.my_groups] == [group.id]

        await hiker.leave(group.id)
        assert hiker.my_groups == []

    @pytest.mark.asyncio
    async def test_reject_and_status_change(self, db_session: AsyncSession, make_profile):
        await make_profile("auth|leader", xp=800)
        await make_profile("auth|hiker", xp=300)
        leader = await CommunitySession(db_session, None, "auth|leader").load()
        hiker = await CommunitySession(db_session, None, "auth|hiker").load()

        group = await leader.create_group(**GROUP)
        membership = await hiker.request_to_join(group.id)
        rejected = await leader.reject(membership.id)
        assert rejected.status == "rejected"

        with pytest.raises(CommunityRefusal):
            await leader.leave(group.id)
        updated = await leader.update_group_status(group.id, "cancelled")
        assert updated.status == "cancelled"

    @pytest.mark.asyncio
    async def test_snapshot_shape(self, db_session: AsyncSession, make_profile):
        await make_profile("auth|snap", xp=500)
        session = await CommunitySession(db_session, None, "auth|snap").load()

        snap = session.snapshot()
        assert snap["profile"] is session.profile
        assert snap["level"]["level"] == "silver"
        assert snap["level"]["progress"] == 50
        assert snap["permissions"] == {"can_access": True, "can_join": True, "can_create": False}
        assert snap["my_groups"] == []
        assert snap["created_groups"] == []
        assert snap["pending_requests"] == []
