from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fieldops_core import ledger
from fieldops_core.errors import LedgerImmutableError, LedgerValidationError

from conftest import ADMIN


async def test_record_rejects_malformed_rows(make, session):
    item = await make.item("A-1")

    with pytest.raises(LedgerValidationError):
        await ledger.record(session, item_id=item.id, movement_type="transfer", quantity_change=1,
                            performed_by=ADMIN.user_id)
    with pytest.raises(LedgerValidationError):
        await ledger.record(session, item_id=item.id, movement_type="entry", quantity_change="ten",
                            performed_by=ADMIN.user_id)
    with pytest.raises(LedgerValidationError):
        await ledger.record(session, item_id=item.id, movement_type="entry", quantity_change=float("nan"),
                            performed_by=ADMIN.user_id)
    with pytest.raises(LedgerValidationError):
        await ledger.record(session, item_id=9999, movement_type="entry", quantity_change=1,
                            performed_by=ADMIN.user_id)
    assert await make.history(item.id) == []


async def test_history_rows_cannot_be_updated_or_deleted(make, session_factory):
    item = await make.item("A-1", initial_stock=5)
    item_id = item.id

    async with session_factory() as s:
        row = (await ledger.query(s, item_id=item_id).all())[0]
        row.reason = "rewritten"
        with pytest.raises(LedgerImmutableError):
            await s.flush()

    async with session_factory() as s:
        row = (await ledger.query(s, item_id=item_id).all())[0]
        await s.delete(row)
        with pytest.raises(LedgerImmutableError):
            await s.flush()

    rows = await make.history(item_id)
    assert len(rows) == 1
    assert rows[0].reason == "Initial stock"


async def test_query_is_newest_first_and_restartable(make, session):
    item = await make.item("A-1")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for n in range(7):
        await ledger.record(session, item_id=item.id, movement_type="entry", quantity_change=n + 1,
                            performed_by=ADMIN.user_id, created_at=base + timedelta(hours=n // 2))
    await session.commit()

    q = ledger.HistoryQuery(session, item_id=item.id, page_size=3)
    first = [r.quantity_change async for r in q]
    second = [r.quantity_change async for r in q]

    assert first == [Decimal(v) for v in (7, 6, 5, 4, 3, 2, 1)]
    assert second == first
    assert await q.count() == 7
    assert [r.quantity_change for r in await q.page(2, 3)] == [Decimal(v) for v in (4, 3, 2)]


async def test_query_filters(make, session):
    a = await make.item("A-1", initial_stock=10)
    b = await make.item("B-1", initial_stock=10)
    crew = await make.crew("C1")
    await make.move("assign", [{"inventory_id": a.id, "quantity": 2}, {"inventory_id": b.id, "quantity": 3}],
                    crew_id=crew.id)

    by_crew = await ledger.query(session, crew_id=crew.id).all()
    assert sorted(r.item_id for r in by_crew) == [a.id, b.id]
    by_type = await ledger.query(session, item_id=a.id, movement_type="entry").all()
    assert [r.quantity_change for r in by_type] == [Decimal("10.000")]

    future = datetime.now(timezone.utc) + timedelta(days=1)
    assert await ledger.query(session, start_date=future).all() == []


async def test_replay_follows_sign_convention(make, session):
    item = await make.item("CAB-1", unit="metros", initial_stock=100)
    crew = await make.crew("C1")
    order = await make.order("T-1")
    await make.move("assign", [{"inventory_id": item.id, "quantity": 30}], crew_id=crew.id)
    await make.move("usage_order", [{"inventory_id": item.id, "quantity": 12}], crew_id=crew.id, order_id=order.id)
    await make.move("return", [{"inventory_id": item.id, "quantity": 8}], crew_id=crew.id, reason="left over")
    await make.move("adjustment", [{"inventory_id": item.id, "quantity": -1}], actor=ADMIN, reason="damaged",
                    crew_id=crew.id)

    balance = ledger.replay(await make.history(item.id))[item.id]
    assert balance.warehouse == Decimal("78.000")
    assert balance.crews == {crew.id: Decimal("9.000")}
    assert await make.stock(item.id) == balance.warehouse
    assert await make.held(crew.id, item.id) == balance.crews[crew.id]
