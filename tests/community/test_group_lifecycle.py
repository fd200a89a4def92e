"""Trip group lifecycle tests: permissions, capacity and status machine."""

from __future__ import annotations

import json
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community.errors import CommunityNotFound, CommunityRefusal, RefusalReason
from uncharted.community.group_service import (
    GroupFilters,
    approve_join_request,
    create_group,
    get_group,
    get_group_by_invite_code,
    get_group_detail,
    get_groups_by_creator,
    get_groups_for_member,
    get_pending_requests,
    get_pending_requests_for_creator,
    get_public_groups,
    leave_group,
    reject_join_request,
    request_to_join_group,
    update_group_status,
)
from uncharted.db.models import GroupMembership, TripGroup

GOLD_XP = 800
SILVER_XP = 300
PLATINUM_XP = 1600


async def _create(db: AsyncSession, creator_id: int, **overrides) -> TripGroup:
    data = {
        "trek_slug": "annapurna-circuit",
        "trek_title": "Annapurna Circuit",
        "title": "October crossing",
        "planned_date": date(2027, 10, 5),
    }
    data.update(overrides)
    return await create_group(db, creator_id, **data)


async def _approved_count(db: AsyncSession, group_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(GroupMembership).where(
            GroupMembership.group_id == group_id,
            GroupMembership.status == "approved",
        )
    )
    return int(result.scalar_one())


async def _assert_capacity_invariant(db: AsyncSession, group_id: int) -> None:
    group = await get_group(db, group_id)
    assert group.current_members == await _approved_count(db, group_id)
    assert group.current_members <= group.max_members


class TestCreateGroup:
    @pytest.mark.asyncio
    async def test_gold_creates_open_group_with_creator_member(
        self, db_session: AsyncSession, make_profile
    ):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)

        assert group.status == "open"
        assert group.current_members == 1
        assert group.max_members == 10
        assert group.is_public is True
        assert group.invite_code is None

        _, creator_profile, members = await get_group_detail(db_session, group.id)
        assert creator_profile.id == creator.id
        assert [(m.role, m.status) for m, _ in members] == [("creator", "approved")]
        await _assert_capacity_invariant(db_session, group.id)

    @pytest.mark.asyncio
    async def test_max_members_clamped_to_gold_cap(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id, max_members=50)
        assert group.max_members == 10

    @pytest.mark.asyncio
    async def test_platinum_cap_is_20(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|plat", xp=PLATINUM_XP)
        group = await _create(db_session, creator.id, max_members=50)
        assert group.max_members == 20

    @pytest.mark.asyncio
    async def test_smaller_request_is_kept(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id, max_members=4)
        assert group.max_members == 4

    @pytest.mark.asyncio
    async def test_single_seat_group_starts_full(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id, max_members=1)
        assert group.status == "full"

    @pytest.mark.asyncio
    async def test_silver_cannot_create(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|silver", xp=SILVER_XP)
        with pytest.raises(CommunityRefusal) as exc:
            await _create(db_session, creator.id)
        assert exc.value.reason is RefusalReason.INSUFFICIENT_LEVEL

    @pytest.mark.asyncio
    async def test_private_requires_platinum(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        with pytest.raises(CommunityRefusal) as exc:
            await _create(db_session, creator.id, is_public=False)
        assert exc.value.reason is RefusalReason.PRIVATE_REQUIRES_PLATINUM

    @pytest.mark.asyncio
    async def test_private_group_gets_invite_code(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|plat", xp=PLATINUM_XP)
        group = await _create(db_session, creator.id, is_public=False)

        assert group.invite_code is not None
        assert len(group.invite_code) == 8
        found = await get_group_by_invite_code(db_session, group.invite_code.lower())
        assert found.id == group.id

    @pytest.mark.asyncio
    async def test_unknown_invite_code(self, db_session: AsyncSession):
        with pytest.raises(CommunityNotFound):
            await get_group_by_invite_code(db_session, "ZZZZ9999")


class TestJoinAndApprove:
    @pytest.mark.asyncio
    async def test_newcomer_cannot_join(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        newcomer = await make_profile("auth|new", xp=0)
        group = await _create(db_session, creator.id)

        with pytest.raises(CommunityRefusal) as exc:
            await request_to_join_group(db_session, None, group.id, newcomer.id)
        assert exc.value.reason is RefusalReason.INSUFFICIENT_LEVEL

    @pytest.mark.asyncio
    async def test_last_slot_approval_fills_group(
        self, db_session: AsyncSession, make_profile, fake_redis
    ):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        latecomer = await make_profile("auth|silver2", xp=SILVER_XP)
        group = await _create(db_session, creator.id, max_members=2)

        membership = await request_to_join_group(db_session, fake_redis, group.id, joiner.id)
        assert membership.status == "pending"
        channel, raw = fake_redis.publish.await_args.args
        assert channel == f"community:user:{creator.id}"
        assert json.loads(raw)["event"] == "join_requested"

        approved = await approve_join_request(db_session, fake_redis, membership.id, creator.id)
        assert approved.status == "approved"
        assert approved.joined_at is not None

        group = await get_group(db_session, group.id)
        assert group.status == "full"
        assert group.current_members == 2
        await _assert_capacity_invariant(db_session, group.id)

        with pytest.raises(CommunityRefusal) as exc:
            await request_to_join_group(db_session, None, group.id, latecomer.id)
        assert exc.value.reason is RefusalReason.GROUP_NOT_OPEN

    @pytest.mark.asyncio
    async def test_duplicate_request_refused(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)

        await request_to_join_group(db_session, None, group.id, joiner.id)
        with pytest.raises(CommunityRefusal) as exc:
            await request_to_join_group(db_session, None, group.id, joiner.id)
        assert exc.value.reason is RefusalReason.ALREADY_MEMBER

    @pytest.mark.asyncio
    async def test_creator_cannot_request_own_group(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        with pytest.raises(CommunityRefusal) as exc:
            await request_to_join_group(db_session, None, group.id, creator.id)
        assert exc.value.reason is RefusalReason.ALREADY_MEMBER

    @pytest.mark.asyncio
    async def test_unique_index_backstops_duplicates(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        await request_to_join_group(db_session, None, group.id, joiner.id)

        db_session.add(GroupMembership(
            group_id=group.id, user_profile_id=joiner.id, role="member", status="pending",
        ))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_only_creator_approves(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        other = await make_profile("auth|other", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)

        with pytest.raises(CommunityRefusal) as exc:
            await approve_join_request(db_session, None, membership.id, other.id)
        assert exc.value.reason is RefusalReason.NOT_GROUP_CREATOR

    @pytest.mark.asyncio
    async def test_approving_twice_is_refused(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)
        await approve_join_request(db_session, None, membership.id, creator.id)

        with pytest.raises(CommunityRefusal) as exc:
            await approve_join_request(db_session, None, membership.id, creator.id)
        assert exc.value.reason is RefusalReason.INVALID_TRANSITION
        await _assert_capacity_invariant(db_session, group.id)

    @pytest.mark.asyncio
    async def test_approval_without_free_slot_reverts(self, db_session: AsyncSession, make_profile):
        """Two pending requests for one slot: only the first approval succeeds."""
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        first = await make_profile("auth|s1", xp=SILVER_XP)
        second = await make_profile("auth|s2", xp=SILVER_XP)
        group = await _create(db_session, creator.id, max_members=2)

        m1 = await request_to_join_group(db_session, None, group.id, first.id)
        m2 = await request_to_join_group(db_session, None, group.id, second.id)
        await approve_join_request(db_session, None, m1.id, creator.id)

        with pytest.raises(CommunityRefusal) as exc:
            await approve_join_request(db_session, None, m2.id, creator.id)
        assert exc.value.reason is RefusalReason.GROUP_FULL

        pending = await get_pending_requests(db_session, group.id)
        assert [m.id for m, _ in pending] == [m2.id]
        await _assert_capacity_invariant(db_session, group.id)

    @pytest.mark.asyncio
    async def test_approval_after_cancel_is_refused(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)
        await update_group_status(db_session, group.id, creator.id, "cancelled")

        with pytest.raises(CommunityRefusal) as exc:
            await approve_join_request(db_session, None, membership.id, creator.id)
        assert exc.value.reason is RefusalReason.GROUP_NOT_OPEN

    @pytest.mark.asyncio
    async def test_reject_keeps_count(self, db_session: AsyncSession, make_profile, fake_redis):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)

        rejected = await reject_join_request(db_session, fake_redis, membership.id, creator.id)
        assert rejected.status == "rejected"
        assert (await get_group(db_session, group.id)).current_members == 1
        channel, raw = fake_redis.publish.await_args.args
        assert channel == f"community:user:{joiner.id}"
        assert json.loads(raw)["event"] == "join_rejected"

        # A rejected profile may ask again
        again = await request_to_join_group(db_session, None, group.id, joiner.id)
        assert again.status == "pending"


class TestLeave:
    @pytest.mark.asyncio
    async def test_creator_cannot_leave_but_can_cancel(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)

        with pytest.raises(CommunityRefusal) as exc:
            await leave_group(db_session, group.id, creator.id)
        assert exc.value.reason is RefusalReason.CREATOR_CANNOT_LEAVE

        cancelled = await update_group_status(db_session, group.id, creator.id, "cancelled")
        assert cancelled.status == "cancelled"

    @pytest.mark.asyncio
    async def test_leaving_full_group_reopens_it(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id, max_members=2)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)
        await approve_join_request(db_session, None, membership.id, creator.id)

        left = await leave_group(db_session, group.id, joiner.id)
        assert left.status == "left"

        group = await get_group(db_session, group.id)
        assert group.status == "open"
        assert group.current_members == 1
        await _assert_capacity_invariant(db_session, group.id)

    @pytest.mark.asyncio
    async def test_member_who_left_can_rejoin(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id, max_members=2)
        first = await request_to_join_group(db_session, None, group.id, joiner.id)
        await approve_join_request(db_session, None, first.id, creator.id)
        await leave_group(db_session, group.id, joiner.id)

        again = await request_to_join_group(db_session, None, group.id, joiner.id)
        assert again.status == "pending"
        await approve_join_request(db_session, None, again.id, creator.id)

        group = await get_group(db_session, group.id)
        assert group.status == "full"
        assert group.current_members == 2
        await _assert_capacity_invariant(db_session, group.id)

    @pytest.mark.asyncio
    async def test_pending_member_cannot_leave(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        await request_to_join_group(db_session, None, group.id, joiner.id)

        with pytest.raises(CommunityRefusal) as exc:
            await leave_group(db_session, group.id, joiner.id)
        assert exc.value.reason is RefusalReason.NOT_A_MEMBER


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_open_to_in_progress_to_completed(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)

        group = await update_group_status(db_session, group.id, creator.id, "in_progress")
        assert group.status == "in_progress"
        group = await update_group_status(db_session, group.id, creator.id, "completed")
        assert group.status == "completed"

    @pytest.mark.parametrize("terminal", ["completed", "cancelled"])
    @pytest.mark.asyncio
    async def test_terminal_states_do_not_move(
        self, db_session: AsyncSession, make_profile, terminal
    ):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        await update_group_status(db_session, group.id, creator.id, terminal)

        with pytest.raises(CommunityRefusal) as exc:
            await update_group_status(db_session, group.id, creator.id, "in_progress")
        assert exc.value.reason is RefusalReason.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_open_and_full_are_not_settable(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        for status in ("open", "full"):
            with pytest.raises(CommunityRefusal):
                await update_group_status(db_session, group.id, creator.id, status)

    @pytest.mark.asyncio
    async def test_only_creator_changes_status(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        other = await make_profile("auth|other", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        with pytest.raises(CommunityRefusal) as exc:
            await update_group_status(db_session, group.id, other.id, "cancelled")
        assert exc.value.reason is RefusalReason.NOT_GROUP_CREATOR

    @pytest.mark.asyncio
    async def test_unknown_status(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        group = await _create(db_session, creator.id)
        with pytest.raises(ValueError):
            await update_group_status(db_session, group.id, creator.id, "archived")


class TestListings:
    @pytest.mark.asyncio
    async def test_public_listing_filters(self, db_session: AsyncSession, make_profile):
        gold = await make_profile("auth|gold", xp=GOLD_XP)
        plat = await make_profile("auth|plat", xp=PLATINUM_XP)
        late = await _create(db_session, gold.id, planned_date=date(2027, 11, 1))
        early = await _create(db_session, gold.id, planned_date=date(2027, 9, 1))
        other_trek = await _create(
            db_session, gold.id, trek_slug="everest-base-camp", trek_title="Everest Base Camp"
        )
        await _create(db_session, plat.id, is_public=False)
        cancelled = await _create(db_session, gold.id)
        await update_group_status(db_session, cancelled.id, gold.id, "cancelled")

        listed = await get_public_groups(db_session)
        assert [g.id for g in listed] == [early.id, other_trek.id, late.id]

        by_trek = await get_public_groups(db_session, GroupFilters(trek_slug="everest-base-camp"))
        assert [g.id for g in by_trek] == [other_trek.id]

        window = await get_public_groups(
            db_session, GroupFilters(date_from=date(2027, 10, 1), date_to=date(2027, 10, 31))
        )
        assert [g.id for g in window] == [other_trek.id]

        done = await get_public_groups(db_session, GroupFilters(status="cancelled"))
        assert [g.id for g in done] == [cancelled.id]

        page = await get_public_groups(db_session, limit=1, offset=1)
        assert [g.id for g in page] == [other_trek.id]

    @pytest.mark.asyncio
    async def test_has_space_filter(self, db_session: AsyncSession, make_profile):
        gold = await make_profile("auth|gold", xp=GOLD_XP)
        roomy = await _create(db_session, gold.id, max_members=5)
        await _create(db_session, gold.id, max_members=1)  # starts full, not listed as open

        listed = await get_public_groups(db_session, GroupFilters(has_space=True))
        assert [g.id for g in listed] == [roomy.id]

    @pytest.mark.asyncio
    async def test_member_and_creator_views(self, db_session: AsyncSession, make_profile):
        creator = await make_profile("auth|gold", xp=GOLD_XP)
        joiner = await make_profile("auth|silver", xp=SILVER_XP)
        group = await _create(db_session, creator.id)
        membership = await request_to_join_group(db_session, None, group.id, joiner.id)

        pending = await get_pending_requests_for_creator(db_session, creator.id)
        assert [(m.id, p.id) for m, p in pending] == [(membership.id, joiner.id)]
        assert await get_groups_for_member(db_session, joiner.id) == []

        await approve_join_request(db_session, None, membership.id, creator.id)
        assert [g.id for g in await get_groups_for_member(db_session, joiner.id)] == [group.id]
        assert [g.id for g in await get_groups_by_creator(db_session, creator.id)] == [group.id]
        assert await get_pending_requests_for_creator(db_session, creator.id) == []
