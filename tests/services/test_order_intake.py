# tests/services/test_order_intake.py
from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from tests._helpers import (
    BIN_FIRST,
    BIN_LATE,
    BOLTS,
    WIDGET,
    buckets,
    claim,
    ingest,
    line_spec,
    receive,
    txn_count,
)
from wmscore.models.order import Order
from wmscore.services.errors import InvalidTransition, NotFound
from wmscore.services.order_intake import OrderIntakeService
from wmscore.services.order_reads import get_claim, get_order
from wmscore.services.pick_state_machine import PickService
from wmscore.services.picking_log_writer import list_picking_logs

pytestmark = pytest.mark.asyncio


async def test_ingest_is_idempotent_on_external_ref(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)

    first = await ingest(session, "SHOP-1001", line_spec(WIDGET, 2))
    second = await ingest(session, "SHOP-1001", line_spec(WIDGET, 2))

    assert first.created is True
    assert second.created is False and second.allocation is None
    assert second.order.id == first.order.id
    n = (await session.execute(sa.select(sa.func.count()).select_from(Order))).scalar_one()
    assert n == 1
    assert await txn_count(session, txn_type="reserve") == 1
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 2, 0)


async def test_ingest_resolves_sku_and_numbers_lines(session: AsyncSession):
    res = await ingest(
        session,
        "SHOP-1002",
        {"sku": "AB-12345", "qty": 1},
        {"item_id": WIDGET, "qty": 4},
        priority="rush",
    )

    assert res.order.priority == "rush"
    assert [(ln.line_no, ln.item_id, ln.required_qty) for ln in res.order.lines] == [
        (1, BOLTS, 1),
        (2, WIDGET, 4),
    ]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"external_ref": "", "lines": [line_spec(WIDGET, 1)]},
        {"external_ref": "X-1", "lines": []},
        {"external_ref": "X-1", "lines": [line_spec(WIDGET, 0)]},
        {"external_ref": "X-1", "lines": [{"qty": 1}]},
        {"external_ref": "X-1", "lines": [line_spec(WIDGET, 1)], "priority": "urgent"},
    ],
)
async def test_ingest_rejects_bad_input(session: AsyncSession, kwargs):
    with pytest.raises(ValueError):
        await OrderIntakeService().ingest_order(session, **kwargs)


async def test_ingest_unknown_sku_not_found(session: AsyncSession):
    with pytest.raises(NotFound):
        await OrderIntakeService().ingest_order(
            session, external_ref="X-2", lines=[{"sku": "NOPE-1", "qty": 1}]
        )


async def test_cancel_releases_all_reservations(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 5)
    await receive(session, WIDGET, BIN_LATE, 10)
    res = await ingest(session, "SHOP-1003", line_spec(WIDGET, 12))
    await claim(session, res.order.id, "w1")

    order = await OrderIntakeService().cancel_order(session, res.order.id, actor="sup", reason="customer")
    await session.commit()

    assert order.status == "cancelled" and order.cancelled_at is not None
    assert order.lines[0].reserved_qty == 0
    assert await buckets(session, WIDGET, BIN_FIRST) == (5, 0, 0)
    assert await buckets(session, WIDGET, BIN_LATE) == (10, 0, 0)
    assert await txn_count(session, txn_type="unreserve") == 2
    assert await get_claim(session, res.order.id) is None

    logs = await list_picking_logs(session, res.order.id)
    assert logs[-1].action == "order_cancelled"
    assert logs[-1].meta == {"released_qty": 12}

    # 再取消一次：原样返回
    again = await OrderIntakeService().cancel_order(session, res.order.id)
    assert again.status == "cancelled"
    assert await txn_count(session, txn_type="unreserve") == 2


async def test_cancel_refused_after_picking(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    res = await ingest(session, "SHOP-1004", line_spec(WIDGET, 3))
    order_id, line_id = res.order.id, res.order.lines[0].id
    await claim(session, order_id, "w1")
    await PickService().confirm_pick(session, line_id, "w1", 1)
    await session.commit()

    with pytest.raises(InvalidTransition):
        await OrderIntakeService().cancel_order(session, order_id)
    await session.rollback()
    assert (await get_order(session, order_id)).status == "in_progress"


async def test_hold_and_unhold(session: AsyncSession):
    res = await ingest(session, "SHOP-1005", line_spec(WIDGET, 1))
    svc = OrderIntakeService()

    held = await svc.hold_order(session, res.order.id)
    await session.commit()
    assert held.on_hold is True

    released = await svc.unhold_order(session, res.order.id)
    await session.commit()
    assert released.on_hold is False


async def test_hold_refused_on_cancelled_order(session: AsyncSession):
    res = await ingest(session, "SHOP-1006", line_spec(WIDGET, 1))
    svc = OrderIntakeService()
    await svc.cancel_order(session, res.order.id)
    await session.commit()

    with pytest.raises(InvalidTransition):
        await svc.hold_order(session, res.order.id)
