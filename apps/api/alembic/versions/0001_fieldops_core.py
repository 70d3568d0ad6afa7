"""field ops inventory core tables

Revision ID: 0001_fieldops_core
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_fieldops_core"
down_revision = None
branch_labels = None
depends_on = None

Qty = sa.Numeric(12, 3)

def upgrade():
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("item_type", sa.String(length=16), nullable=False, server_default="material"),
        sa.Column("unit", sa.String(length=32), nullable=False, server_default="unidades"),
        sa.Column("current_stock", Qty, nullable=False, server_default=sa.text("0")),
        sa.Column("minimum_stock", Qty, nullable=False, server_default=sa.text("5")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("item_type in ('material','equipment','tool')", name="ck_item_type"),
        sa.CheckConstraint("current_stock >= 0", name="ck_item_stock_non_negative"),
    )
    op.create_index("ix_inventory_items_code", "inventory_items", ["code"], unique=True)

    op.create_table(
        "crews",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_crews_name", "crews", ["name"], unique=True)

    op.create_table(
        "work_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticket_id", sa.String(length=64), nullable=False),
        sa.Column("crew_id", sa.Integer(), sa.ForeignKey("crews.id"), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_work_orders_ticket_id", "work_orders", ["ticket_id"], unique=True)
    op.create_index("ix_work_orders_crew_id", "work_orders", ["crew_id"])

    op.create_table(
        "crew_inventory",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("crew_id", sa.Integer(), sa.ForeignKey("crews.id"), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("quantity", Qty, nullable=False, server_default=sa.text("0")),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("crew_id", "item_id", name="uq_crew_inventory_crew_item"),
        sa.CheckConstraint("quantity >= 0", name="ck_crew_inventory_qty_non_negative"),
    )
    op.create_index("ix_crew_inventory_crew_id", "crew_inventory", ["crew_id"])
    op.create_index("ix_crew_inventory_item_id", "crew_inventory", ["item_id"])

    op.create_table(
        "inventory_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_code", sa.String(length=64), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("initial_quantity", Qty, nullable=False),
        sa.Column("current_quantity", Qty, nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=False, server_default="metros"),
        sa.Column("supplier", sa.String(length=255), nullable=True),
        sa.Column("acquisition_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("location", sa.String(length=16), nullable=False, server_default="warehouse"),
        sa.Column("crew_id", sa.Integer(), sa.ForeignKey("crews.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status in ('active','depleted')", name="ck_batch_status"),
        sa.CheckConstraint(
            "current_quantity >= 0 AND current_quantity <= initial_quantity",
            name="ck_batch_qty_bounds",
        ),
        sa.CheckConstraint(
            "(location = 'warehouse' AND crew_id IS NULL) OR (location = 'crew' AND crew_id IS NOT NULL)",
            name="ck_batch_location_crew",
        ),
    )
    op.create_index("ix_inventory_batches_batch_code", "inventory_batches", ["batch_code"], unique=True)
    op.create_index("ix_inventory_batches_item_id", "inventory_batches", ["item_id"])
    op.create_index("ix_inventory_batches_status", "inventory_batches", ["status"])
    op.create_index("ix_inventory_batches_location", "inventory_batches", ["location"])
    op.create_index("ix_inventory_batches_crew_id", "inventory_batches", ["crew_id"])

    op.create_table(
        "equipment_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("unique_id", sa.String(length=128), nullable=False),
        sa.Column("serial_number", sa.String(length=128), nullable=True),
        sa.Column("mac_address", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="in-stock"),
        sa.Column("assigned_crew_id", sa.Integer(), sa.ForeignKey("crews.id"), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installed_order_id", sa.Integer(), sa.ForeignKey("work_orders.id"), nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("install_location", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status in ('in-stock','assigned','installed','damaged','retired')",
            name="ck_instance_status",
        ),
        sa.CheckConstraint(
            "(status = 'assigned') = (assigned_crew_id IS NOT NULL)",
            name="ck_instance_assigned_facts",
        ),
        sa.CheckConstraint(
            "(status = 'installed') = (installed_order_id IS NOT NULL)",
            name="ck_instance_installed_facts",
        ),
    )
    op.create_index("ix_equipment_instances_unique_id", "equipment_instances", ["unique_id"], unique=True)
    op.create_index("ix_equipment_instances_item_id", "equipment_instances", ["item_id"])
    op.create_index("ix_equipment_instances_serial_number", "equipment_instances", ["serial_number"])
    op.create_index("ix_equipment_instances_mac_address", "equipment_instances", ["mac_address"])
    op.create_index("ix_equipment_instances_status", "equipment_instances", ["status"])
    op.create_index("ix_equipment_instances_assigned_crew_id", "equipment_instances", ["assigned_crew_id"])
    op.create_index("ix_equipment_instances_installed_order_id", "equipment_instances", ["installed_order_id"])
    # Case-insensitive lookups by any identifier
    op.execute("CREATE INDEX ix_equipment_instances_lower_unique_id ON equipment_instances (lower(unique_id));")
    op.execute("CREATE INDEX ix_equipment_instances_lower_serial ON equipment_instances (lower(serial_number));")
    op.execute("CREATE INDEX ix_equipment_instances_lower_mac ON equipment_instances (lower(mac_address));")

    op.create_table(
        "inventory_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("movement_type", sa.String(length=32), nullable=False),
        sa.Column("quantity_change", Qty, nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("crew_id", sa.Integer(), sa.ForeignKey("crews.id"), nullable=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("work_orders.id"), nullable=True),
        sa.Column("batch_code", sa.String(length=64), nullable=True),
        sa.Column("instance_ids", sa.JSON(), nullable=True),
        sa.Column("performed_by", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "movement_type in ('entry','assignment','return','usage_order','adjustment')",
            name="ck_history_movement_type",
        ),
    )
    op.create_index("ix_inventory_history_item_id", "inventory_history", ["item_id"])
    op.create_index("ix_inventory_history_movement_type", "inventory_history", ["movement_type"])
    op.create_index("ix_inventory_history_crew_id", "inventory_history", ["crew_id"])
    op.create_index("ix_inventory_history_order_id", "inventory_history", ["order_id"])
    op.create_index("ix_inventory_history_batch_code", "inventory_history", ["batch_code"])
    op.create_index("ix_inventory_history_performed_by", "inventory_history", ["performed_by"])
    op.create_index("ix_inventory_history_created_at", "inventory_history", ["created_at"])
    op.create_index("ix_inventory_history_created_id", "inventory_history", ["created_at", "id"])

def downgrade():
    op.drop_table("inventory_history")
    op.drop_table("equipment_instances")
    op.drop_table("inventory_batches")
    op.drop_table("crew_inventory")
    op.drop_table("work_orders")
    op.drop_table("crews")
    op.drop_table("inventory_items")
