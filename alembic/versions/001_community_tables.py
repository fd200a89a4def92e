"""Community tables.

Creates user_profiles, xp_transactions, trip_groups and group_memberships
for traveler levels, the XP ledger and trip group membership.

Revision ID: 001_community_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_community_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- User Profiles ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_profiles (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(128) UNIQUE NOT NULL,
            display_name VARCHAR(64),
            bio VARCHAR(500),
            is_verified BOOLEAN NOT NULL DEFAULT false,
            verified_at TIMESTAMPTZ,
            verification_method VARCHAR(16),
            xp_points INTEGER NOT NULL DEFAULT 0,
            level VARCHAR(16) NOT NULL DEFAULT 'newcomer',
            preferred_trek_types JSONB,
            experience_level VARCHAR(16),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_user_profiles_xp_non_negative CHECK (xp_points >= 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_profiles_xp
        ON user_profiles(xp_points DESC)
    """)

    # --- XP Transactions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_transactions (
            id SERIAL PRIMARY KEY,
            user_profile_id INTEGER NOT NULL REFERENCES user_profiles(id) ON DELETE CASCADE,
            action VARCHAR(32) NOT NULL,
            xp_amount INTEGER NOT NULL,
            reference_id VARCHAR(128),
            reference_type VARCHAR(16),
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_xp_transactions_user_profile_id
        ON xp_transactions(user_profile_id, created_at DESC)
    """)

    # --- Trip Groups ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS trip_groups (
            id SERIAL PRIMARY KEY,
            creator_id INTEGER NOT NULL REFERENCES user_profiles(id),
            trek_slug VARCHAR(128) NOT NULL,
            trek_title VARCHAR(256) NOT NULL,
            title VARCHAR(128) NOT NULL,
            description TEXT,
            planned_date DATE NOT NULL,
            flexible_dates BOOLEAN NOT NULL DEFAULT false,
            max_members INTEGER NOT NULL,
            current_members INTEGER NOT NULL DEFAULT 1,
            is_public BOOLEAN NOT NULL DEFAULT true,
            invite_code VARCHAR(8) UNIQUE,
            status VARCHAR(16) NOT NULL DEFAULT 'open',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_trip_groups_capacity
                CHECK (current_members >= 0 AND current_members <= max_members)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_trip_groups_creator_id
        ON trip_groups(creator_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_trip_groups_trek_slug
        ON trip_groups(trek_slug)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_trip_groups_listing
        ON trip_groups(is_public, status, planned_date)
    """)

    # --- Group Memberships ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS group_memberships (
            id SERIAL PRIMARY KEY,
            group_id INTEGER NOT NULL REFERENCES trip_groups(id) ON DELETE CASCADE,
            user_profile_id INTEGER NOT NULL REFERENCES user_profiles(id) ON DELETE CASCADE,
            role VARCHAR(16) NOT NULL DEFAULT 'member',
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            joined_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_group_memberships_group_id
        ON group_memberships(group_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_group_memberships_user_profile_id
        ON group_memberships(user_profile_id)
    """)
    # At most one pending or approved membership per profile per group
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_group_memberships_active
        ON group_memberships(group_id, user_profile_id)
        WHERE status IN ('pending', 'approved')
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS group_memberships CASCADE")
    op.execute("DROP TABLE IF EXISTS trip_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_transactions CASCADE")
    op.execute("DROP TABLE IF EXISTS user_profiles CASCADE")
