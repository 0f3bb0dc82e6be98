"""create_luach_tables

Revision ID: luach_001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "luach_001"
down_revision = None
branch_labels = ("luach",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE,
            access_token TEXT,
            refresh_token TEXT,
            token_expires_at TIMESTAMPTZ,
            calendar_id TEXT,
            sync_enabled BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            description TEXT,
            hebrew_year INTEGER NOT NULL,
            hebrew_month INTEGER NOT NULL CHECK (hebrew_month BETWEEN 1 AND 13),
            hebrew_day INTEGER NOT NULL CHECK (hebrew_day BETWEEN 1 AND 30),
            recurrence_rule TEXT NOT NULL DEFAULT 'yearly',
            last_synced_hebrew_year INTEGER,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT events_watermark_not_before_origin
                CHECK (last_synced_hebrew_year IS NULL OR last_synced_hebrew_year >= hebrew_year)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_events_user_id ON events (user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS event_occurrences (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            gregorian_date DATE NOT NULL,
            google_event_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_event_occurrences_event_id ON event_occurrences (event_id)"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS event_occurrences")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS users")
