from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.errors import (
    CrewNotFoundError, InactiveCrewError, InsufficientStockError,
    ItemNotFoundError, OrderNotFoundError,
)
from fieldops_core.models import Crew, CrewInventory, InventoryBatch, InventoryItem, WorkOrder

ZERO = Decimal("0")
QTY = Decimal("0.001")


def qty(value) -> Decimal:
    """Normalise any numeric to the 3-decimal scale used by every quantity column."""
    return Decimal(str(value)).quantize(QTY)


async def lock_item(session: AsyncSession, item_id: int) -> InventoryItem:
    item = (await session.execute(
        select(InventoryItem)
        .where(InventoryItem.id == item_id)
        .where(InventoryItem.deleted_at.is_(None))
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not item:
        raise ItemNotFoundError(item_id)
    return item


async def lock_items(session: AsyncSession, item_ids: Iterable[int]) -> dict[int, InventoryItem]:
    """Lock every item in ascending id order so concurrent movements cannot deadlock."""
    out: dict[int, InventoryItem] = {}
    for item_id in sorted(set(item_ids)):
        out[item_id] = await lock_item(session, item_id)
    return out


async def get_crew(session: AsyncSession, crew_id: int, require_active: bool = False) -> Crew:
    crew = (await session.execute(select(Crew).where(Crew.id == crew_id))).scalar_one_or_none()
    if not crew:
        raise CrewNotFoundError(crew_id)
    if require_active and not crew.is_active:
        raise InactiveCrewError(crew_id)
    return crew


async def get_order(session: AsyncSession, order_id: int) -> WorkOrder:
    order = (await session.execute(select(WorkOrder).where(WorkOrder.id == order_id))).scalar_one_or_none()
    if not order:
        raise OrderNotFoundError(order_id)
    return order


async def warehouse_batch_qty(session: AsyncSession, item_id: int) -> Decimal:
    """Quantity of the item's warehouse stock that sits inside batches."""
    stmt = (
        select(func.coalesce(func.sum(InventoryBatch.current_quantity), 0))
        .where(InventoryBatch.item_id == item_id)
        .where(InventoryBatch.location == "warehouse")
    )
    return qty((await session.execute(stmt)).scalar_one())


async def crew_batch_qty(session: AsyncSession, item_id: int, crew_id: int) -> Decimal:
    stmt = (
        select(func.coalesce(func.sum(InventoryBatch.current_quantity), 0))
        .where(InventoryBatch.item_id == item_id)
        .where(InventoryBatch.location == "crew")
        .where(InventoryBatch.crew_id == crew_id)
    )
    return qty((await session.execute(stmt)).scalar_one())


async def loose_warehouse_qty(session: AsyncSession, item: InventoryItem) -> Decimal:
    """
    Warehouse stock not held in any batch. Plain movement lines can only draw on this.
    """
    loose = qty(item.current_stock) - await warehouse_batch_qty(session, item.id)
    return loose if loose > ZERO else ZERO


async def crew_row(session: AsyncSession, crew_id: int, item_id: int, lock: bool = True) -> CrewInventory | None:
    stmt = (
        select(CrewInventory)
        .where(CrewInventory.crew_id == crew_id)
        .where(CrewInventory.item_id == item_id)
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def crew_held_qty(session: AsyncSession, crew_id: int, item_id: int) -> Decimal:
    row = await crew_row(session, crew_id, item_id)
    return qty(row.quantity) if row else ZERO


async def loose_crew_qty(session: AsyncSession, crew_id: int, item_id: int) -> Decimal:
    loose = await crew_held_qty(session, crew_id, item_id) - await crew_batch_qty(session, item_id, crew_id)
    return loose if loose > ZERO else ZERO


def change_warehouse(item: InventoryItem, delta: Decimal) -> None:
    new_stock = qty(item.current_stock) + qty(delta)
    if new_stock < ZERO:
        raise InsufficientStockError(item.code, -qty(delta), item.current_stock)
    item.current_stock = new_stock


async def change_crew(session: AsyncSession, crew_id: int, item: InventoryItem, delta: Decimal) -> CrewInventory:
    """Apply a signed change to the crew's held quantity, creating the row on first use."""
    row = await crew_row(session, crew_id, item.id)
    now = datetime.now(timezone.utc)
    if row is None:
        row = CrewInventory(crew_id=crew_id, item_id=item.id, quantity=ZERO, last_update=now)
        session.add(row)
    new_qty = qty(row.quantity) + qty(delta)
    if new_qty < ZERO:
        raise InsufficientStockError(item.code, -qty(delta), row.quantity, where=f"crew {crew_id}")
    row.quantity = new_qty
    row.last_update = now
    await session.flush()
    return row
