"""append-only ledger entries and final committed reservations

Revision ID: 0002_ledger_immutability
Revises: 0001_ledger
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_ledger_entry_change()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION reject_ledger_entry_change();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION keep_committed_reservation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.status = 'COMMITTED' AND NEW.status <> 'COMMITTED' THEN
                RAISE EXCEPTION 'reservation % is committed and cannot become %', OLD.reservation_id, NEW.status;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_reservations_committed_final
        BEFORE UPDATE ON reservations
        FOR EACH ROW
        EXECUTE FUNCTION keep_committed_reservation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_reservations_committed_final ON reservations;")
    op.execute("DROP FUNCTION IF EXISTS keep_committed_reservation();")
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_append_only ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS reject_ledger_entry_change();")
