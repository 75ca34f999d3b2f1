"""Supporter programme tables.

Creates badges, user_badges and donations, plus the slice of users the
engine reads when the site's own users table is not present yet.

Revision ID: 001_supporter_tables
Revises:
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_supporter_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Enum types ---
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE badge_kind AS ENUM ('supporter', 'active_supporter', 'sponsor', 'custom');
        EXCEPTION WHEN duplicate_object THEN NULL;
        END $$
    """)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE donation_status AS ENUM ('pending', 'completed', 'failed', 'refunded');
        EXCEPTION WHEN duplicate_object THEN NULL;
        END $$
    """)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE donation_provider AS ENUM ('kofi', 'manual');
        EXCEPTION WHEN duplicate_object THEN NULL;
        END $$
    """)

    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64) UNIQUE NOT NULL,
            email VARCHAR(320) UNIQUE,
            discord_username VARCHAR(64),
            custom_role VARCHAR(50),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_users_discord_username
        ON users(discord_username)
    """)

    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badges (
            id SERIAL PRIMARY KEY,
            name VARCHAR(128) UNIQUE NOT NULL,
            description TEXT,
            kind badge_kind NOT NULL,
            icon VARCHAR(64) NOT NULL,
            color VARCHAR(16) NOT NULL,
            background_color VARCHAR(16),
            display_order INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            is_manually_awardable BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- User Badges (grants) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id INTEGER NOT NULL REFERENCES badges(id),
            awarded_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ,
            year INTEGER,
            reason TEXT,
            awarded_by_user_id BIGINT REFERENCES users(id),
            metadata JSONB NOT NULL DEFAULT '{}',
            is_active BOOLEAN NOT NULL DEFAULT true,
            revoked_at TIMESTAMPTZ,
            revoked_reason TEXT,
            revoked_by_user_id BIGINT REFERENCES users(id),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    # Supporter: one grant per user per calendar year
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_user_badges_user_badge_year
        ON user_badges(user_id, badge_id, year)
        WHERE year IS NOT NULL
    """)
    # Sponsor, custom and active supporter: at most one active grant
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_user_badges_user_badge_active
        ON user_badges(user_id, badge_id)
        WHERE is_active AND year IS NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_user_badges_expiry
        ON user_badges(expires_at)
        WHERE is_active AND expires_at IS NOT NULL
    """)

    # --- Donations ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS donations (
            id BIGSERIAL PRIMARY KEY,
            owner_user_id BIGINT REFERENCES users(id) ON DELETE CASCADE,
            amount NUMERIC(10, 2) NOT NULL,
            currency VARCHAR(8) NOT NULL DEFAULT 'USD',
            occurred_at TIMESTAMPTZ NOT NULL,
            provider donation_provider NOT NULL,
            external_id VARCHAR(128) NOT NULL,
            status donation_status NOT NULL DEFAULT 'pending',
            donor_name VARCHAR(128),
            donor_email VARCHAR(320),
            message TEXT,
            is_anonymous BOOLEAN NOT NULL DEFAULT false,
            raw_payload JSONB,
            entitlements_processed BOOLEAN NOT NULL DEFAULT false,
            admin_notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_donations_provider_external_id UNIQUE (provider, external_id),
            CONSTRAINT ck_donations_amount_positive CHECK (amount > 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_donations_owner_status
        ON donations(owner_user_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_donations_unprocessed
        ON donations(id)
        WHERE status = 'completed' AND owner_user_id IS NOT NULL AND NOT entitlements_processed
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS donations CASCADE")
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS badges CASCADE")
    op.execute("DROP TYPE IF EXISTS donation_provider")
    op.execute("DROP TYPE IF EXISTS donation_status")
    op.execute("DROP TYPE IF EXISTS badge_kind")
