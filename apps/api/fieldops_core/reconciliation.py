from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.db import get_session
from fieldops_core.errors import ItemNotFoundError
from fieldops_core.ledger import Balance, query, replay
from fieldops_core.models import CrewInventory, EquipmentInstance, InventoryBatch, InventoryItem
from fieldops_core.stock import ZERO, qty

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["reconciliation"])


async def reconcile_item(session: AsyncSession, item_id: int) -> dict:
    """
    Compare stored stock figures for one item against a replay of its history.

    Also checks that batch and instance counts fit inside the figures that
    are supposed to contain them.
    """
    item = (await session.execute(select(InventoryItem).where(InventoryItem.id == item_id))).scalar_one_or_none()
    if not item:
        raise ItemNotFoundError(item_id)

    entries = await query(session, item_id=item_id).all()
    balance = replay(entries).get(item_id, Balance())

    stored_crews = {
        r.crew_id: qty(r.quantity)
        for r in (await session.execute(
            select(CrewInventory).where(CrewInventory.item_id == item_id)
        )).scalars().all()
    }
    crew_ids = sorted(set(stored_crews) | set(balance.crews))
    crews = []
    for cid in crew_ids:
        stored = stored_crews.get(cid, ZERO)
        derived = qty(balance.crews.get(cid, ZERO))
        crews.append({"crew_id": cid, "stored": float(stored), "ledger": float(derived), "ok": stored == derived})

    problems: list[str] = []
    stock = qty(item.current_stock)
    if stock != qty(balance.warehouse):
        problems.append(f"warehouse stock {stock} != ledger {qty(balance.warehouse)}")
    for c in crews:
        if not c["ok"]:
            problems.append(f"crew {c['crew_id']} holds {c['stored']} != ledger {c['ledger']}")
        if c["stored"] < 0:
            problems.append(f"crew {c['crew_id']} is negative")

    batch_rows = (await session.execute(
        select(InventoryBatch.location, InventoryBatch.crew_id, func.sum(InventoryBatch.current_quantity))
        .where(InventoryBatch.item_id == item_id)
        .group_by(InventoryBatch.location, InventoryBatch.crew_id)
    )).all()
    for location, crew_id, total in batch_rows:
        total = qty(total or 0)
        holder = stock if location == "warehouse" else stored_crews.get(crew_id, ZERO)
        where = "warehouse" if location == "warehouse" else f"crew {crew_id}"
        if total > holder:
            problems.append(f"batches at {where} hold {total} > {holder}")

    if item.item_type == "equipment":
        counts = dict((await session.execute(
            select(EquipmentInstance.status, func.count(EquipmentInstance.id))
            .where(EquipmentInstance.item_id == item_id)
            .group_by(EquipmentInstance.status)
        )).all())
        if Decimal(counts.get("in-stock", 0)) != stock:
            problems.append(f"{counts.get('in-stock', 0)} in-stock instance(s) != warehouse stock {stock}")
        per_crew = dict((await session.execute(
            select(EquipmentInstance.assigned_crew_id, func.count(EquipmentInstance.id))
            .where(EquipmentInstance.item_id == item_id)
            .where(EquipmentInstance.status == "assigned")
            .group_by(EquipmentInstance.assigned_crew_id)
        )).all())
        for cid in set(per_crew) | set(stored_crews):
            if Decimal(per_crew.get(cid, 0)) != stored_crews.get(cid, ZERO):
                problems.append(f"crew {cid} has {per_crew.get(cid, 0)} assigned instance(s) != {stored_crews.get(cid, ZERO)}")

    if problems:
        logger.warning("item %s does not reconcile: %s", item.code, "; ".join(problems))

    return {
        "item_id": item.id,
        "code": item.code,
        "consistent": not problems,
        "warehouse": {"stored": float(stock), "ledger": float(qty(balance.warehouse))},
        "crews": crews,
        "entries": len(entries),
        "problems": problems,
    }


@router.get("/{item_id:int}/reconcile")
async def reconcile(item_id: int, session: AsyncSession = Depends(get_session)):
    return {"success": True, **(await reconcile_item(session, item_id))}
