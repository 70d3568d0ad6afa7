from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey,
    Integer, JSON, Numeric, String, Text, event
)
from sqlalchemy import UniqueConstraint

from fieldops_core.errors import LedgerImmutableError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ITEM_TYPES = ("material", "equipment", "tool")
MOVEMENT_TYPES = ("entry", "assignment", "return", "usage_order", "adjustment")
INSTANCE_STATUSES = ("in-stock", "assigned", "installed", "damaged", "retired")
BATCH_STATUSES = ("active", "depleted")
BATCH_LOCATIONS = ("warehouse", "crew")


class Base(DeclarativeBase):
    pass

class InventoryItem(Base):
    __tablename__ = "inventory_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    description: Mapped[str] = mapped_column(String(255))
    item_type: Mapped[str] = mapped_column(String(16), nullable=False, default="material")
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="unidades")

    # Warehouse stock only; crew holdings live in crew_inventory.
    current_stock: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    minimum_stock: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, default=5)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("item_type in ('material','equipment','tool')", name="ck_item_type"),
        CheckConstraint("current_stock >= 0", name="ck_item_stock_non_negative"),
    )

class Crew(Base):
    __tablename__ = "crews"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class WorkOrder(Base):
    __tablename__ = "work_orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    crew_id: Mapped[int | None] = mapped_column(ForeignKey("crews.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class CrewInventory(Base):
    __tablename__ = "crew_inventory"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    crew_id: Mapped[int] = mapped_column(ForeignKey("crews.id"), index=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    last_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("crew_id", "item_id", name="uq_crew_inventory_crew_item"),
        CheckConstraint("quantity >= 0", name="ck_crew_inventory_qty_non_negative"),
    )

class InventoryBatch(Base):
    __tablename__ = "inventory_batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), index=True)

    initial_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    current_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="metros")
    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acquisition_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    location: Mapped[str] = mapped_column(String(16), nullable=False, default="warehouse", index=True)
    crew_id: Mapped[int | None] = mapped_column(ForeignKey("crews.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status in ('active','depleted')", name="ck_batch_status"),
        CheckConstraint(
            "current_quantity >= 0 AND current_quantity <= initial_quantity",
            name="ck_batch_qty_bounds",
        ),
        CheckConstraint(
            "(location = 'warehouse' AND crew_id IS NULL) OR (location = 'crew' AND crew_id IS NOT NULL)",
            name="ck_batch_location_crew",
        ),
    )

class EquipmentInstance(Base):
    __tablename__ = "equipment_instances"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), index=True)
    unique_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    serial_number: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    mac_address: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in-stock", index=True)

    assigned_crew_id: Mapped[int | None] = mapped_column(ForeignKey("crews.id"), nullable=True, index=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    installed_order_id: Mapped[int | None] = mapped_column(ForeignKey("work_orders.id"), nullable=True, index=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    install_location: Mapped[str | None] = mapped_column(String(500), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status in ('in-stock','assigned','installed','damaged','retired')",
            name="ck_instance_status",
        ),
        CheckConstraint(
            "(status = 'assigned') = (assigned_crew_id IS NOT NULL)",
            name="ck_instance_assigned_facts",
        ),
        CheckConstraint(
            "(status = 'installed') = (installed_order_id IS NOT NULL)",
            name="ck_instance_installed_facts",
        ),
    )

class MovementHistoryEntry(Base):
    __tablename__ = "inventory_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), index=True)
    movement_type: Mapped[str] = mapped_column(String(32), index=True)
    # Signed. See ledger.replay for which location each type books against.
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    crew_id: Mapped[int | None] = mapped_column(ForeignKey("crews.id"), nullable=True, index=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("work_orders.id"), nullable=True, index=True)
    # Plain code, not a FK: the row must outlive a deleted batch.
    batch_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    instance_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)

    performed_by: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "movement_type in ('entry','assignment','return','usage_order','adjustment')",
            name="ck_history_movement_type",
        ),
    )

class MovementReceipt(Base):
    __tablename__ = "movement_requests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    response: Mapped[dict] = mapped_column(JSON, nullable=False)
    performed_by: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_movement_requests_key"),
    )


@event.listens_for(MovementHistoryEntry, "before_update")
def _history_no_update(mapper, connection, target):
    raise LedgerImmutableError(f"History entry {target.id} is append-only and cannot be updated")


@event.listens_for(MovementHistoryEntry, "before_delete")
def _history_no_delete(mapper, connection, target):
    raise LedgerImmutableError(f"History entry {target.id} is append-only and cannot be deleted")
