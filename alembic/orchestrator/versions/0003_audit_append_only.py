"""audit events may be purged but never rewritten

Revision ID: 0003_audit_append_only
Revises: 0002_hot_path_indexes
Create Date: 2026-10-19
"""

from alembic import op


revision = "0003_audit_append_only"
down_revision = "0002_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_audit_event_update()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'audit_events is append-only; UPDATE is not allowed';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_audit_events_append_only
        BEFORE UPDATE ON audit_events
        FOR EACH ROW
        EXECUTE FUNCTION reject_audit_event_update();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_events_append_only ON audit_events;")
    op.execute("DROP FUNCTION IF EXISTS reject_audit_event_update();")
