"""reject UPDATE/DELETE on inventory_history

Revision ID: 0002_history_append_only
Revises: 0001_fieldops_core
Create Date: 2026-10-19
"""
from alembic import op

revision = "0002_history_append_only"
down_revision = "0001_fieldops_core"
branch_labels = None
depends_on = None

def upgrade():
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_inventory_history_change()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
          RAISE EXCEPTION
            'inventory_history is append-only (% on row %).', TG_OP, OLD.id
            USING ERRCODE = '23514';
        END;
        $$;
        """
    )

    op.execute("DROP TRIGGER IF EXISTS trg_inventory_history_append_only ON inventory_history;")
    op.execute(
        """
        CREATE TRIGGER trg_inventory_history_append_only
        BEFORE UPDATE OR DELETE
        ON inventory_history
        FOR EACH ROW
        EXECUTE FUNCTION reject_inventory_history_change();
        """
    )

def downgrade():
    op.execute("DROP TRIGGER IF EXISTS trg_inventory_history_append_only ON inventory_history;")
    op.execute("DROP FUNCTION IF EXISTS reject_inventory_history_change();")
