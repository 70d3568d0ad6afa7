from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.actors import Actor, get_actor
from fieldops_core.db import get_session
from fieldops_core.errors import (
    AmbiguousInstanceError, DuplicateUniqueIdError, InstanceNotFoundError,
    InstanceNotInStockError, InvalidTransitionError, InventoryValidationError,
)
from fieldops_core.models import EquipmentInstance, InventoryItem
from fieldops_core import ledger
from fieldops_core.stock import change_crew, change_warehouse, lock_item

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory/instances", tags=["instances"])

# in-stock <-> assigned -> installed; in-stock/assigned -> damaged/retired
TRANSITIONS: dict[str, set[str]] = {
    "in-stock": {"assigned", "damaged", "retired"},
    "assigned": {"in-stock", "installed", "damaged", "retired"},
    "installed": set(),
    "damaged": set(),
    "retired": set(),
}


class InstanceIn(BaseModel):
    unique_id: str = Field(min_length=1, max_length=128)
    serial_number: str | None = Field(default=None, max_length=128)
    mac_address: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=1000)

class RegisterInstancesRequest(BaseModel):
    inventory_id: int
    instances: List[InstanceIn] = Field(min_length=1)

class UpdateInstanceRequest(BaseModel):
    unique_id: str = Field(min_length=1, max_length=128)
    serial_number: str | None = Field(default=None, max_length=128)
    mac_address: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=1000)

class RetireInstanceRequest(BaseModel):
    status: Literal["damaged", "retired"]
    reason: str = Field(min_length=2, max_length=500)


def instance_to_dict(i: EquipmentInstance) -> dict:
    return {
        "id": i.id,
        "item_id": i.item_id,
        "unique_id": i.unique_id,
        "serial_number": i.serial_number,
        "mac_address": i.mac_address,
        "status": i.status,
        "assigned_to": {"crew_id": i.assigned_crew_id, "assigned_at": i.assigned_at} if i.assigned_crew_id else None,
        "installed_at": {
            "order_id": i.installed_order_id,
            "installed_at": i.installed_at,
            "location": i.install_location,
        } if i.installed_order_id else None,
        "notes": i.notes,
        "created_at": i.created_at,
    }


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _identifiers(unique_id: str | None, serial: str | None, mac: str | None) -> list[str]:
    return [v.lower() for v in (unique_id, serial, mac) if v]


async def _collisions(session: AsyncSession, idents: Iterable[str], exclude_id: int | None = None) -> list[str]:
    """Identifiers from `idents` already used in any field of any stored instance."""
    idents = set(idents)
    if not idents:
        return []
    E = EquipmentInstance
    q = select(E).where(or_(
        func.lower(E.unique_id).in_(idents),
        func.lower(E.serial_number).in_(idents),
        func.lower(E.mac_address).in_(idents),
    ))
    if exclude_id is not None:
        q = q.where(E.id != exclude_id)
    hits: set[str] = set()
    for row in (await session.execute(q)).scalars().all():
        hits.update(idents & set(_identifiers(row.unique_id, row.serial_number, row.mac_address)))
    return sorted(hits)


def transition_status(
    inst: EquipmentInstance,
    target: str,
    *,
    crew_id: int | None = None,
    order_id: int | None = None,
    install_location: str | None = None,
) -> None:
    """Move an instance along the lifecycle, keeping only the facts that match its new status."""
    if target not in TRANSITIONS.get(inst.status, set()):
        raise InvalidTransitionError(inst.unique_id, inst.status, target)

    now = datetime.now(timezone.utc)
    if target == "assigned":
        if crew_id is None:
            raise InventoryValidationError("crew_id is required to assign an instance")
        inst.assigned_crew_id = crew_id
        inst.assigned_at = now
        inst.installed_order_id = None
        inst.installed_at = None
        inst.install_location = None
    elif target == "installed":
        if order_id is None:
            raise InventoryValidationError("order_id is required to install an instance")
        inst.installed_order_id = order_id
        inst.installed_at = now
        inst.install_location = install_location
        inst.assigned_crew_id = None
        inst.assigned_at = None
    else:
        inst.assigned_crew_id = None
        inst.assigned_at = None
        inst.installed_order_id = None
        inst.installed_at = None
        inst.install_location = None
    inst.status = target


async def get_instance(session: AsyncSession, unique_id: str, lock: bool = False) -> EquipmentInstance:
    stmt = select(EquipmentInstance).where(func.lower(EquipmentInstance.unique_id) == unique_id.strip().lower())
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    inst = (await session.execute(stmt)).scalar_one_or_none()
    if not inst:
        raise InstanceNotFoundError(unique_id)
    return inst


async def lock_instances(session: AsyncSession, unique_ids: Iterable[str]) -> dict[str, EquipmentInstance]:
    """Lock instances by unique id, ascending primary key. Keys are lower-cased unique ids."""
    wanted = {u.strip().lower() for u in unique_ids}
    if not wanted:
        return {}
    rows = (await session.execute(
        select(EquipmentInstance)
        .where(func.lower(EquipmentInstance.unique_id).in_(wanted))
        .order_by(EquipmentInstance.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalars().all()
    found = {r.unique_id.lower(): r for r in rows}
    missing = sorted(wanted - set(found))
    if missing:
        raise InstanceNotFoundError(missing[0])
    return found


async def find_instance(session: AsyncSession, query: str) -> EquipmentInstance:
    """Case-insensitive exact match on unique id, serial number or MAC address."""
    needle = query.strip().lower()
    if not needle:
        raise InventoryValidationError("Search query must not be empty")
    E = EquipmentInstance
    rows = (await session.execute(
        select(E).where(or_(
            func.lower(E.unique_id) == needle,
            func.lower(E.serial_number) == needle,
            func.lower(E.mac_address) == needle,
        )).order_by(E.id.asc())
    )).scalars().all()
    if not rows:
        raise InstanceNotFoundError(query)
    if len(rows) > 1:
        raise AmbiguousInstanceError(query, [r.unique_id for r in rows])
    return rows[0]


async def list_instances(session: AsyncSession, item_id: int, status: str | None = None) -> list[EquipmentInstance]:
    q = select(EquipmentInstance).where(EquipmentInstance.item_id == item_id).order_by(EquipmentInstance.id.asc())
    if status:
        q = q.where(EquipmentInstance.status == status)
    return list((await session.execute(q)).scalars().all())


async def add_instances(session: AsyncSession, item: InventoryItem, specs: List[InstanceIn],
                        actor: Actor) -> list[EquipmentInstance]:
    """Create in-stock instances for an already locked equipment item. All or none."""
    if item.item_type != "equipment":
        raise InventoryValidationError(
            f"Item {item.code} is not equipment; instances cannot be registered",
            details={"item_id": item.id, "item_type": item.item_type},
        )

    seen: set[str] = set()
    clashing: set[str] = set()
    for s in specs:
        if not _clean(s.unique_id):
            raise InventoryValidationError("unique_id must not be blank")
        for ident in _identifiers(_clean(s.unique_id), _clean(s.serial_number), _clean(s.mac_address)):
            if ident in seen:
                clashing.add(ident)
            seen.add(ident)
    if clashing:
        raise DuplicateUniqueIdError(sorted(clashing))

    taken = await _collisions(session, seen)
    if taken:
        raise DuplicateUniqueIdError(taken)

    now = datetime.now(timezone.utc)
    created = []
    for s in specs:
        inst = EquipmentInstance(
            item_id=item.id,
            unique_id=_clean(s.unique_id),
            serial_number=_clean(s.serial_number),
            mac_address=_clean(s.mac_address),
            notes=s.notes,
            status="in-stock",
            created_at=now,
        )
        session.add(inst)
        created.append(inst)
    await session.flush()

    change_warehouse(item, len(created))
    await ledger.record(
        session,
        item_id=item.id,
        movement_type="entry",
        quantity_change=len(created),
        reason=f"Registered {len(created)} instance(s)",
        instance_ids=[i.unique_id for i in created],
        performed_by=actor.user_id,
    )
    logger.info("registered %s instance(s) on item %s by %s", len(created), item.code, actor.user_id)
    return created


async def register_instances_txn(req: RegisterInstancesRequest, session: AsyncSession,
                                 actor: Actor) -> list[EquipmentInstance]:
    item = await lock_item(session, req.inventory_id)
    return await add_instances(session, item, req.instances, actor)


async def update_instance_txn(req: UpdateInstanceRequest, session: AsyncSession) -> EquipmentInstance:
    inst = await get_instance(session, req.unique_id, lock=True)
    fields = req.model_dump(exclude_unset=True)

    serial = _clean(fields["serial_number"]) if "serial_number" in fields else inst.serial_number
    mac = _clean(fields["mac_address"]) if "mac_address" in fields else inst.mac_address

    mine = _identifiers(inst.unique_id, serial, mac)
    if len(mine) != len(set(mine)):
        raise DuplicateUniqueIdError(sorted({m for m in mine if mine.count(m) > 1}))
    taken = await _collisions(session, mine, exclude_id=inst.id)
    if taken:
        raise DuplicateUniqueIdError(taken)

    inst.serial_number = serial
    inst.mac_address = mac
    if "notes" in fields:
        inst.notes = fields["notes"]
    await session.flush()
    return inst


async def delete_instance_txn(unique_id: str, session: AsyncSession, actor: Actor,
                              inventory_id: int | None = None) -> dict:
    inst = await get_instance(session, unique_id)
    if inventory_id is not None and inst.item_id != inventory_id:
        raise InstanceNotFoundError(unique_id)
    item = await lock_item(session, inst.item_id)
    inst = await get_instance(session, unique_id, lock=True)

    if inst.status != "in-stock":
        raise InstanceNotInStockError(inst.unique_id, inst.status)
    actor.require_admin("instance removal")

    snapshot = instance_to_dict(inst)
    change_warehouse(item, -1)
    await ledger.record(
        session,
        item_id=item.id,
        movement_type="adjustment",
        quantity_change=-1,
        reason=f"Instance {inst.unique_id} removed",
        instance_ids=[inst.unique_id],
        performed_by=actor.user_id,
    )
    await session.delete(inst)
    await session.flush()
    return snapshot


async def retire_instance_txn(unique_id: str, req: RetireInstanceRequest, session: AsyncSession,
                              actor: Actor) -> EquipmentInstance:
    """Mark an instance damaged or retired, taking it out of whichever count held it."""
    inst = await get_instance(session, unique_id)
    item = await lock_item(session, inst.item_id)
    inst = await get_instance(session, unique_id, lock=True)

    actor.require_admin(f"marking an instance {req.status}")
    from_status = inst.status
    crew_id = inst.assigned_crew_id
    transition_status(inst, req.status)

    if from_status == "in-stock":
        change_warehouse(item, -1)
    else:
        await change_crew(session, crew_id, item, -1)
    await ledger.record(
        session,
        item_id=item.id,
        movement_type="adjustment",
        quantity_change=-1,
        reason=req.reason,
        crew_id=crew_id if from_status == "assigned" else None,
        instance_ids=[inst.unique_id],
        performed_by=actor.user_id,
    )
    await session.flush()
    logger.info("instance %s %s -> %s by %s", inst.unique_id, from_status, req.status, actor.user_id)
    return inst


@router.get("")
async def get_instances(inventory_id: int, status: str | None = None, session: AsyncSession = Depends(get_session)):
    rows = await list_instances(session, inventory_id, status)
    return {"success": True, "count": len(rows), "instances": [instance_to_dict(r) for r in rows]}

@router.get("/search")
async def search_instance(q: str, session: AsyncSession = Depends(get_session)):
    inst = await find_instance(session, q)
    return {"success": True, "instance": instance_to_dict(inst)}

@router.post("")
async def register_instances(req: RegisterInstancesRequest, session: AsyncSession = Depends(get_session),
                             actor: Actor = Depends(get_actor)):
    created = await register_instances_txn(req, session, actor)
    await session.commit()
    return {"success": True, "added_count": len(created), "instances": [instance_to_dict(i) for i in created]}

@router.put("")
async def update_instance(req: UpdateInstanceRequest, session: AsyncSession = Depends(get_session),
                          actor: Actor = Depends(get_actor)):
    inst = await update_instance_txn(req, session)
    await session.commit()
    return {"success": True, "instance": instance_to_dict(inst)}

@router.delete("")
async def delete_instance(unique_id: str, inventory_id: int | None = None,
                          session: AsyncSession = Depends(get_session), actor: Actor = Depends(get_actor)):
    deleted = await delete_instance_txn(unique_id, session, actor, inventory_id)
    await session.commit()
    return {"success": True, "instance": deleted}

@router.post("/{unique_id}/retire")
async def retire_instance(unique_id: str, req: RetireInstanceRequest, session: AsyncSession = Depends(get_session),
                          actor: Actor = Depends(get_actor)):
    inst = await retire_instance_txn(unique_id, req, session, actor)
    await session.commit()
    return {"success": True, "instance": instance_to_dict(inst)}
