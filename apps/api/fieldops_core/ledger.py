from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Iterable

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops_core.errors import LedgerValidationError
from fieldops_core.models import InventoryItem, MovementHistoryEntry, MOVEMENT_TYPES

logger = logging.getLogger(__name__)

PAGE_SIZE = 200


def _as_delta(value) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise LedgerValidationError("quantity_change must be numeric", details={"quantity_change": value})
    try:
        delta = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LedgerValidationError("quantity_change must be numeric", details={"quantity_change": str(value)})
    if not delta.is_finite():
        raise LedgerValidationError("quantity_change must be finite", details={"quantity_change": str(value)})
    return delta


async def record(
    session: AsyncSession,
    *,
    item_id: int,
    movement_type: str,
    quantity_change,
    performed_by: int,
    reason: str | None = None,
    crew_id: int | None = None,
    order_id: int | None = None,
    batch_code: str | None = None,
    instance_ids: list[str] | None = None,
    created_at: datetime | None = None,
) -> MovementHistoryEntry:
    """
    Append one history row. Rows are never updated or deleted afterwards.

    Raises LedgerValidationError on a missing item, an unknown movement type
    or a delta that is not a finite number.
    """
    if item_id is None:
        raise LedgerValidationError("item_id is required")
    if movement_type not in MOVEMENT_TYPES:
        raise LedgerValidationError(
            f"Unknown movement_type {movement_type!r}",
            details={"movement_type": movement_type, "allowed": list(MOVEMENT_TYPES)},
        )
    delta = _as_delta(quantity_change)

    exists = (await session.execute(
        select(InventoryItem.id).where(InventoryItem.id == item_id)
    )).scalar_one_or_none()
    if exists is None:
        raise LedgerValidationError(f"Inventory item {item_id} does not exist", details={"item_id": item_id})

    row = MovementHistoryEntry(
        item_id=item_id,
        movement_type=movement_type,
        quantity_change=delta,
        reason=reason,
        crew_id=crew_id,
        order_id=order_id,
        batch_code=batch_code,
        instance_ids=list(instance_ids) if instance_ids else None,
        performed_by=performed_by,
        created_at=created_at or datetime.now(timezone.utc),
    )
    session.add(row)
    await session.flush()
    logger.debug("history %s item=%s delta=%s crew=%s", movement_type, item_id, delta, crew_id)
    return row


class HistoryQuery:
    """
    Read-only, newest-first view over inventory_history.

    Iterating issues keyset-paged SELECTs lazily; every `async for` starts
    again from the newest row, so the same query object can be re-iterated.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        item_id: int | None = None,
        crew_id: int | None = None,
        order_id: int | None = None,
        movement_type: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page_size: int = PAGE_SIZE,
    ):
        self.session = session
        self.item_id = item_id
        self.crew_id = crew_id
        self.order_id = order_id
        self.movement_type = movement_type
        self.start_date = start_date
        self.end_date = end_date
        self.page_size = page_size

    def _apply_filters(self, stmt):
        H = MovementHistoryEntry
        if self.item_id is not None:
            stmt = stmt.where(H.item_id == self.item_id)
        if self.crew_id is not None:
            stmt = stmt.where(H.crew_id == self.crew_id)
        if self.order_id is not None:
            stmt = stmt.where(H.order_id == self.order_id)
        if self.movement_type is not None:
            stmt = stmt.where(H.movement_type == self.movement_type)
        if self.start_date is not None:
            stmt = stmt.where(H.created_at >= self.start_date)
        if self.end_date is not None:
            stmt = stmt.where(H.created_at <= self.end_date)
        return stmt

    def _ordered(self):
        H = MovementHistoryEntry
        return self._apply_filters(select(H)).order_by(H.created_at.desc(), H.id.desc())

    def __aiter__(self) -> AsyncIterator[MovementHistoryEntry]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[MovementHistoryEntry]:
        H = MovementHistoryEntry
        cursor: tuple[datetime, int] | None = None
        while True:
            stmt = self._ordered()
            if cursor is not None:
                at, last_id = cursor
                stmt = stmt.where(or_(H.created_at < at, and_(H.created_at == at, H.id < last_id)))
            rows = (await self.session.execute(stmt.limit(self.page_size))).scalars().all()
            for r in rows:
                yield r
            if len(rows) < self.page_size:
                return
            cursor = (rows[-1].created_at, rows[-1].id)

    async def all(self) -> list[MovementHistoryEntry]:
        return [r async for r in self]

    async def count(self) -> int:
        stmt = self._apply_filters(select(func.count(MovementHistoryEntry.id)))
        return int((await self.session.execute(stmt)).scalar_one())

    async def page(self, page: int, limit: int) -> list[MovementHistoryEntry]:
        stmt = self._ordered().offset((page - 1) * limit).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())


def query(session: AsyncSession, **filters) -> HistoryQuery:
    return HistoryQuery(session, **filters)


def entry_to_dict(r: MovementHistoryEntry) -> dict:
    return {
        "id": r.id,
        "item_id": r.item_id,
        "movement_type": r.movement_type,
        "quantity_change": float(r.quantity_change),
        "reason": r.reason,
        "crew_id": r.crew_id,
        "order_id": r.order_id,
        "batch_code": r.batch_code,
        "instance_ids": r.instance_ids or [],
        "performed_by": r.performed_by,
        "created_at": r.created_at,
    }


@dataclass
class Balance:
    warehouse: Decimal = Decimal("0")
    crews: dict[int, Decimal] = field(default_factory=dict)

    def _crew(self, crew_id: int, delta: Decimal) -> None:
        self.crews[crew_id] = self.crews.get(crew_id, Decimal("0")) + delta


def replay(entries: Iterable[MovementHistoryEntry]) -> dict[int, Balance]:
    """
    Project history rows into per-item balances.

    Sign of quantity_change by movement type:
      entry                   warehouse +d
      assignment, return      warehouse +d, crew -d
      usage_order             crew +d
      adjustment              crew +d when crew_id is set, else warehouse +d
    """
    out: dict[int, Balance] = {}
    for e in entries:
        b = out.setdefault(e.item_id, Balance())
        d = Decimal(e.quantity_change)
        t = e.movement_type
        if t == "entry":
            b.warehouse += d
        elif t in ("assignment", "return"):
            b.warehouse += d
            b._crew(e.crew_id, -d)
        elif t == "usage_order":
            b._crew(e.crew_id, d)
        elif t == "adjustment":
            if e.crew_id is not None:
                b._crew(e.crew_id, d)
            else:
                b.warehouse += d
        else:
            raise LedgerValidationError(f"Unknown movement_type {t!r} in history", details={"id": e.id})
    return out
