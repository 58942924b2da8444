"""add hot-path indexes for outbox claims and due dead letters

Revision ID: 0002_hot_path_indexes
Revises: 0001_orchestrator
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_orchestrator"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_dead_letters_status_next_retry_at",
        "dead_letters",
        ["status", "next_retry_at"],
    )
    op.create_index(
        "ix_orchestrations_phase_updated_at",
        "orchestrations",
        ["phase", "updated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_orchestrations_phase_updated_at", table_name="orchestrations")
    op.drop_index("ix_dead_letters_status_next_retry_at", table_name="dead_letters")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
