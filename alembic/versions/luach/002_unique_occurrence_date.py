"""unique_occurrence_date

Revision ID: luach_002
Revises: luach_001
Create Date: 2025-02-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "luach_002"
down_revision = "luach_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One recorded occurrence per event and date.
    op.execute("""
        DELETE FROM event_occurrences a
        USING event_occurrences b
        WHERE a.event_id = b.event_id
          AND a.gregorian_date = b.gregorian_date
          AND (a.created_at, a.id) > (b.created_at, b.id)
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_event_occurrences_event_date
        ON event_occurrences (event_id, gregorian_date)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS uq_event_occurrences_event_date")
