from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable, List, Literal, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.actors import Actor, get_actor
from fieldops_core.batches import normalize_batch_code, return_whole, transfer_whole
from fieldops_core.db import get_session
from fieldops_core.errors import (
    BatchNotFoundError, BatchStateError, InsufficientStockError,
    InvalidTransitionError, InventoryValidationError,
)
from fieldops_core.instances import TRANSITIONS, lock_instances, transition_status
from fieldops_core.models import Crew, EquipmentInstance, InventoryBatch, InventoryItem, WorkOrder
from fieldops_core import idempotency, ledger
from fieldops_core.stock import (
    ZERO, change_crew, change_warehouse, crew_row, get_crew, get_order,
    lock_items, loose_crew_qty, loose_warehouse_qty, qty,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["movements"])

Action = Literal["restock", "assign", "return", "usage_order", "adjustment"]
SignedQty = condecimal(max_digits=12, decimal_places=3)


class MovementLineIn(BaseModel):
    inventory_id: int
    quantity: SignedQty
    batch_code: str | None = Field(default=None, max_length=64)
    instance_ids: List[str] | None = None

    @model_validator(mode="after")
    def _one_shape(self):
        if self.batch_code and self.instance_ids:
            raise ValueError("a line carries either batch_code or instance_ids, not both")
        return self

class MovementData(BaseModel):
    crew_id: int | None = None
    order_id: int | None = None
    items: List[MovementLineIn] = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)
    install_location: str | None = Field(default=None, max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=3, max_length=200)

class MovementCall(BaseModel):
    action: Action
    data: MovementData


@dataclass(frozen=True)
class PlainLine:
    item_id: int
    quantity: Decimal

@dataclass(frozen=True)
class BatchLine:
    item_id: int
    quantity: Decimal
    batch_code: str

@dataclass(frozen=True)
class EquipmentLine:
    item_id: int
    instance_ids: tuple[str, ...]

    @property
    def quantity(self) -> Decimal:
        return Decimal(len(self.instance_ids))


Line = Union[PlainLine, BatchLine, EquipmentLine]


def parse_line(raw: MovementLineIn) -> Line:
    if raw.batch_code:
        return BatchLine(raw.inventory_id, qty(raw.quantity), normalize_batch_code(raw.batch_code))
    if raw.instance_ids:
        ids = tuple(u.strip() for u in raw.instance_ids)
        lowered = [u.lower() for u in ids]
        if not all(ids) or len(set(lowered)) != len(lowered):
            raise InventoryValidationError(
                "instance_ids must be non-empty and distinct",
                details={"inventory_id": raw.inventory_id, "instance_ids": raw.instance_ids},
            )
        if qty(raw.quantity) != len(ids):
            raise InventoryValidationError(
                f"quantity must equal the number of instance_ids ({len(ids)})",
                details={"inventory_id": raw.inventory_id},
            )
        return EquipmentLine(raw.inventory_id, ids)
    return PlainLine(raw.inventory_id, qty(raw.quantity))


def _check_request(action: str, data: MovementData, lines: list[Line], actor: Actor) -> None:
    """Everything that can be rejected before touching the store."""
    if action == "adjustment":
        actor.require_admin("adjustment")
    reason = (data.reason or "").strip()

    if action in ("restock", "return", "adjustment") and not reason:
        raise InventoryValidationError(f"reason is required for {action}")
    if action in ("assign", "return", "usage_order") and data.crew_id is None:
        raise InventoryValidationError(f"crew_id is required for {action}")
    if action == "usage_order" and data.order_id is None:
        raise InventoryValidationError("order_id is required for usage_order")

    for n, line in enumerate(lines, start=1):
        if action == "adjustment":
            if not isinstance(line, PlainLine):
                raise InventoryValidationError(f"line {n}: adjustments take plain quantities only")
            if line.quantity == ZERO:
                raise InventoryValidationError(f"line {n}: adjustment quantity must be non-zero")
            continue
        if line.quantity <= ZERO:
            raise InventoryValidationError(f"line {n}: quantity must be greater than 0")
        if action == "restock" and not isinstance(line, PlainLine):
            raise InventoryValidationError(
                f"line {n}: restock takes plain quantities; top up batches or register instances instead"
            )


class _Plan:
    """
    Validation state for one call. Budgets are drawn down line by line so two
    lines on the same item are checked against their combined quantity.
    """

    def __init__(self, session: AsyncSession, action: str, data: MovementData, actor: Actor,
                 items: dict[int, InventoryItem], batches: dict[str, InventoryBatch],
                 instances: dict[str, EquipmentInstance], crew: Crew | None, order: WorkOrder | None):
        self.session = session
        self.action = action
        self.data = data
        self.reason = (data.reason or "").strip() or None
        self.actor = actor
        self.items = items
        self.batches = batches
        self.instances = instances
        self.crew = crew
        self.order = order
        self.ops: list[Callable[[], Awaitable[int]]] = []
        self._wh_loose: dict[int, Decimal] = {}
        self._crew_loose: dict[int, Decimal] = {}
        self._batch_left: dict[int, Decimal] = {}
        self._batches_moved: set[int] = set()
        self._instances_seen: set[str] = set()

    async def draw_warehouse(self, item: InventoryItem, amount: Decimal) -> None:
        if item.id not in self._wh_loose:
            self._wh_loose[item.id] = await loose_warehouse_qty(self.session, item)
        if amount > self._wh_loose[item.id]:
            raise InsufficientStockError(item.code, amount, self._wh_loose[item.id])
        self._wh_loose[item.id] -= amount

    async def draw_crew(self, item: InventoryItem, amount: Decimal) -> None:
        if item.id not in self._crew_loose:
            self._crew_loose[item.id] = await loose_crew_qty(self.session, self.crew.id, item.id)
        if amount > self._crew_loose[item.id]:
            raise InsufficientStockError(item.code, amount, self._crew_loose[item.id], where=f"crew {self.crew.id}")
        self._crew_loose[item.id] -= amount

    def batch(self, line: BatchLine, item: InventoryItem) -> InventoryBatch:
        b = self.batches[line.batch_code]
        if b.item_id != item.id:
            raise BatchStateError(
                f"Batch {b.batch_code} does not belong to item {item.code}",
                details={"batch_code": b.batch_code, "item_id": item.id},
            )
        return b

    def take_whole(self, b: InventoryBatch, line: BatchLine) -> None:
        if b.id in self._batches_moved:
            raise BatchStateError(f"Batch {b.batch_code} appears twice in one movement",
                                  details={"batch_code": b.batch_code})
        if line.quantity != qty(b.current_quantity):
            raise BatchStateError(
                f"Batch {b.batch_code} moves whole: requested={float(line.quantity):.3f} "
                f"current={float(b.current_quantity):.3f}",
                details={"batch_code": b.batch_code, "requested": float(line.quantity),
                         "current_quantity": float(b.current_quantity)},
            )
        self._batches_moved.add(b.id)

    def instances_for(self, line: EquipmentLine, item: InventoryItem, target: str) -> list[EquipmentInstance]:
        out = []
        for uid in line.instance_ids:
            inst = self.instances[uid.lower()]
            if inst.item_id != item.id:
                raise InventoryValidationError(
                    f"Instance {inst.unique_id} does not belong to item {item.code}",
                    details={"unique_id": inst.unique_id, "item_id": item.id},
                )
            if inst.unique_id.lower() in self._instances_seen:
                raise InventoryValidationError(f"Instance {inst.unique_id} appears twice in one movement")
            self._instances_seen.add(inst.unique_id.lower())
            if target not in TRANSITIONS[inst.status]:
                raise InvalidTransitionError(inst.unique_id, inst.status, target)
            if inst.status == "assigned" and inst.assigned_crew_id != self.crew.id:
                raise InvalidTransitionError(inst.unique_id, f"assigned to crew {inst.assigned_crew_id}", target)
            out.append(inst)
        return out

    def add(self, fn, *args, **kwargs) -> None:
        self.ops.append(partial(fn, self, *args, **kwargs))


def _require_kind(item: InventoryItem, line: Line, n: int) -> None:
    equipment = item.item_type == "equipment"
    if equipment and not isinstance(line, EquipmentLine):
        raise InventoryValidationError(
            f"line {n}: {item.code} is equipment; move it by instance_ids",
            details={"item_id": item.id},
        )
    if not equipment and isinstance(line, EquipmentLine):
        raise InventoryValidationError(
            f"line {n}: {item.code} is not equipment; instance_ids are not allowed",
            details={"item_id": item.id},
        )


# ---- apply steps. Each runs after every line validated; returns the history row id.

async def _restock(p: _Plan, item: InventoryItem, amount: Decimal) -> int:
    change_warehouse(item, amount)
    row = await ledger.record(p.session, item_id=item.id, movement_type="entry", quantity_change=amount,
                              reason=p.reason, performed_by=p.actor.user_id)
    return row.id

async def _to_crew(p: _Plan, item: InventoryItem, amount: Decimal, batch: InventoryBatch | None = None,
                   instances: list[EquipmentInstance] | None = None) -> int:
    if batch is not None:
        await transfer_whole(p.session, batch, p.crew.id)
    for inst in instances or []:
        transition_status(inst, "assigned", crew_id=p.crew.id)
    change_warehouse(item, -amount)
    await change_crew(p.session, p.crew.id, item, amount)
    row = await ledger.record(
        p.session, item_id=item.id, movement_type="assignment", quantity_change=-amount,
        reason=p.reason or f"Assigned to crew {p.crew.name}", crew_id=p.crew.id,
        batch_code=batch.batch_code if batch is not None else None,
        instance_ids=[i.unique_id for i in instances] if instances else None,
        performed_by=p.actor.user_id,
    )
    return row.id

async def _from_crew(p: _Plan, item: InventoryItem, amount: Decimal, batch: InventoryBatch | None = None,
                     instances: list[EquipmentInstance] | None = None) -> int:
    await change_crew(p.session, p.crew.id, item, -amount)
    if batch is not None:
        await return_whole(p.session, batch)
    for inst in instances or []:
        transition_status(inst, "in-stock")
    change_warehouse(item, amount)
    row = await ledger.record(
        p.session, item_id=item.id, movement_type="return", quantity_change=amount,
        reason=p.reason, crew_id=p.crew.id,
        batch_code=batch.batch_code if batch is not None else None,
        instance_ids=[i.unique_id for i in instances] if instances else None,
        performed_by=p.actor.user_id,
    )
    return row.id

async def _use(p: _Plan, item: InventoryItem, amount: Decimal, batch: InventoryBatch | None = None,
               instances: list[EquipmentInstance] | None = None) -> int:
    if batch is not None:
        batch.current_quantity = qty(batch.current_quantity) - amount
        batch.status = "depleted" if batch.current_quantity == ZERO else "active"
    for inst in instances or []:
        transition_status(inst, "installed", order_id=p.order.id, install_location=p.data.install_location)
    await change_crew(p.session, p.crew.id, item, -amount)
    row = await ledger.record(
        p.session, item_id=item.id, movement_type="usage_order", quantity_change=-amount,
        reason=p.reason or f"Used on order {p.order.ticket_id}", crew_id=p.crew.id, order_id=p.order.id,
        batch_code=batch.batch_code if batch is not None else None,
        instance_ids=[i.unique_id for i in instances] if instances else None,
        performed_by=p.actor.user_id,
    )
    return row.id

async def _adjust(p: _Plan, item: InventoryItem, delta: Decimal) -> int:
    if p.crew is not None:
        await change_crew(p.session, p.crew.id, item, delta)
    else:
        change_warehouse(item, delta)
    row = await ledger.record(
        p.session, item_id=item.id, movement_type="adjustment", quantity_change=delta,
        reason=p.reason, crew_id=p.crew.id if p.crew is not None else None,
        performed_by=p.actor.user_id,
    )
    return row.id


# ---- per-action validation

async def _plan_line(p: _Plan, n: int, line: Line) -> None:
    item = p.items[line.item_id]
    action = p.action

    if action == "restock":
        if item.item_type == "equipment":
            raise InventoryValidationError(
                f"line {n}: {item.code} is equipment; register instances to add stock",
                details={"item_id": item.id},
            )
        p.add(_restock, item, line.quantity)
        return

    if action == "adjustment":
        if item.item_type == "equipment":
            raise InventoryValidationError(
                f"line {n}: {item.code} is equipment; retire or register instances instead",
                details={"item_id": item.id},
            )
        if line.quantity < ZERO:
            if p.crew is not None:
                await p.draw_crew(item, -line.quantity)
            else:
                await p.draw_warehouse(item, -line.quantity)
        p.add(_adjust, item, line.quantity)
        return

    _require_kind(item, line, n)

    if action == "assign":
        if isinstance(line, PlainLine):
            await p.draw_warehouse(item, line.quantity)
            p.add(_to_crew, item, line.quantity)
        elif isinstance(line, BatchLine):
            b = p.batch(line, item)
            if b.location != "warehouse":
                raise BatchStateError(
                    f"Batch {b.batch_code} is not in the warehouse (held by crew {b.crew_id})",
                    details={"batch_code": b.batch_code, "location": b.location, "crew_id": b.crew_id},
                )
            p.take_whole(b, line)
            p.add(_to_crew, item, line.quantity, batch=b)
        else:
            insts = p.instances_for(line, item, "assigned")
            await p.draw_warehouse(item, line.quantity)
            p.add(_to_crew, item, line.quantity, instances=insts)
        return

    if action == "return":
        if isinstance(line, PlainLine):
            await p.draw_crew(item, line.quantity)
            p.add(_from_crew, item, line.quantity)
        elif isinstance(line, BatchLine):
            b = p.batch(line, item)
            if b.location != "crew" or b.crew_id != p.crew.id:
                raise BatchStateError(
                    f"Batch {b.batch_code} is not held by crew {p.crew.id}",
                    details={"batch_code": b.batch_code, "location": b.location, "crew_id": b.crew_id},
                )
            p.take_whole(b, line)
            p.add(_from_crew, item, line.quantity, batch=b)
        else:
            insts = p.instances_for(line, item, "in-stock")
            await p.draw_crew(item, line.quantity)
            p.add(_from_crew, item, line.quantity, instances=insts)
        return

    if action == "usage_order":
        if isinstance(line, PlainLine):
            await p.draw_crew(item, line.quantity)
            p.add(_use, item, line.quantity)
        elif isinstance(line, BatchLine):
            b = p.batch(line, item)
            if b.location != "crew" or b.crew_id != p.crew.id:
                raise BatchStateError(
                    f"Batch {b.batch_code} is not held by crew {p.crew.id}",
                    details={"batch_code": b.batch_code, "location": b.location, "crew_id": b.crew_id},
                )
            left = p._batch_left.setdefault(b.id, qty(b.current_quantity))
            if line.quantity > left:
                raise InsufficientStockError(item.code, line.quantity, left, where=f"batch {b.batch_code}")
            p._batch_left[b.id] = left - line.quantity
            p.add(_use, item, line.quantity, batch=b)
        else:
            insts = p.instances_for(line, item, "installed")
            await p.draw_crew(item, line.quantity)
            p.add(_use, item, line.quantity, instances=insts)
        return

    raise InventoryValidationError(f"Unknown action {action}")


async def _lock_batches(session: AsyncSession, codes: set[str]) -> dict[str, InventoryBatch]:
    if not codes:
        return {}
    rows = (await session.execute(
        select(InventoryBatch)
        .where(InventoryBatch.batch_code.in_(codes))
        .order_by(InventoryBatch.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalars().all()
    found = {r.batch_code: r for r in rows}
    missing = sorted(codes - set(found))
    if missing:
        raise BatchNotFoundError(missing[0])
    return found


async def apply_movement(session: AsyncSession, action: str, data: MovementData, actor: Actor) -> dict:
    """
    Validate every line against locked state, then apply them all.

    Nothing is written until the last line has been validated; any error
    leaves the session for the caller to roll back. Does not commit.
    """
    lines = [parse_line(raw) for raw in data.items]
    _check_request(action, data, lines, actor)

    if data.idempotency_key:
        previous = await idempotency.lookup(session, data.idempotency_key, action)
        if previous is not None:
            return previous

    crew = order = None
    if data.crew_id is not None and action in ("assign", "return", "usage_order", "adjustment"):
        crew = await get_crew(session, data.crew_id, require_active=(action == "assign"))
    if action == "usage_order":
        order = await get_order(session, data.order_id)

    # Lock order: items, batches, instances, crew rows; each ascending by id.
    items = await lock_items(session, [l.item_id for l in lines])
    batches = await _lock_batches(session, {l.batch_code for l in lines if isinstance(l, BatchLine)})
    instances = await lock_instances(session, [u for l in lines if isinstance(l, EquipmentLine) for u in l.instance_ids])
    if crew is not None:
        for item_id in sorted(items):
            await crew_row(session, crew.id, item_id)

    plan = _Plan(session, action, data, actor, items, batches, instances, crew, order)
    for n, line in enumerate(lines, start=1):
        await _plan_line(plan, n, line)

    history_ids = [await op() for op in plan.ops]
    await session.flush()

    response = {
        "success": True,
        "action": action,
        "history_ids": history_ids,
        "crew_id": crew.id if crew else None,
        "order_id": order.id if order else None,
        "items": [
            {"id": i.id, "code": i.code, "current_stock": float(i.current_stock)}
            for i in sorted(items.values(), key=lambda i: i.id)
        ],
    }
    if data.idempotency_key:
        await idempotency.remember(session, data.idempotency_key, action, response, actor.user_id)

    logger.info("movement %s: %s line(s) crew=%s order=%s by user %s",
                action, len(lines), response["crew_id"], response["order_id"], actor.user_id)
    return response


@router.post("/movements")
async def post_movement(req: MovementCall, session: AsyncSession = Depends(get_session),
                        actor: Actor = Depends(get_actor)):
    resp = await apply_movement(session, req.action, req.data, actor)
    await session.commit()
    return resp
