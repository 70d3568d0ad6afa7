"""idempotency keys for movement calls

Revision ID: 0003_movement_requests
Revises: 0002_history_append_only
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0003_movement_requests"
down_revision = "0002_history_append_only"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "movement_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("response", sa.JSON(), nullable=False),
        sa.Column("performed_by", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("idempotency_key", name="uq_movement_requests_key"),
    )

def downgrade():
    op.drop_table("movement_requests")
