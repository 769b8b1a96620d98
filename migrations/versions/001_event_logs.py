"""Create the event_logs table for the time-indexed log store.

Revision ID: 001
Revises:
Create Date: 2026-10-18

This migration creates:
- event_logs: one row per consumed event, unique on (correlation_id, timestamp)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema: create event_logs table."""
    op.create_table(
        "event_logs",
        sa.Column("id", sa.Integer(), nullable=False, primary_key=True, autoincrement=True),
        sa.Column("correlation_id", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("day", sa.String(10), nullable=False),
        sa.Column("service", sa.String(255), nullable=False),
        sa.Column("level", sa.String(20), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("http_request", sa.JSON(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "correlation_id", "timestamp", name="uq_event_logs_correlation_ts"
        ),
    )

    # Indexes backing day, range and type queries
    op.create_index("ix_event_logs_timestamp", "event_logs", ["timestamp"])
    op.create_index("ix_event_logs_day", "event_logs", ["day"])
    op.create_index("ix_event_logs_level", "event_logs", ["level"])
    op.create_index("ix_event_logs_event_type", "event_logs", ["event_type"])


def downgrade() -> None:
    """Downgrade schema: drop event_logs table."""
    op.drop_index("ix_event_logs_event_type", table_name="event_logs")
    op.drop_index("ix_event_logs_level", table_name="event_logs")
    op.drop_index("ix_event_logs_day", table_name="event_logs")
    op.drop_index("ix_event_logs_timestamp", table_name="event_logs")
    op.drop_table("event_logs")
