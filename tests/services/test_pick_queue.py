# tests/services/test_pick_queue.py
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests._helpers import WIDGET, claim, ingest, line_spec
from wmscore.services.order_intake import OrderIntakeService
from wmscore.services.pick_queue import list_pick_queue

pytestmark = pytest.mark.asyncio


async def test_queue_orders_by_priority_then_arrival(session: AsyncSession):
    a = await ingest(session, "Q-A", line_spec(WIDGET, 1))
    b = await ingest(session, "Q-B", line_spec(WIDGET, 1), priority="rush")
    c = await ingest(session, "Q-C", line_spec(WIDGET, 1), priority="high")
    d = await ingest(session, "Q-D", line_spec(WIDGET, 1))

    rows = await list_pick_queue(session)
    assert [o.external_ref for o in rows] == ["Q-B", "Q-C", "Q-A", "Q-D"]
    assert {o.id for o in rows} == {a.order.id, b.order.id, c.order.id, d.order.id}


async def test_queue_excludes_held_and_claimed(session: AsyncSession):
    a = await ingest(session, "Q-A", line_spec(WIDGET, 1))
    b = await ingest(session, "Q-B", line_spec(WIDGET, 1))
    await ingest(session, "Q-C", line_spec(WIDGET, 1))

    await OrderIntakeService().hold_order(session, a.order.id)
    await session.commit()
    await claim(session, b.order.id, "w1")

    rows = await list_pick_queue(session)
    assert [o.external_ref for o in rows] == ["Q-C"]


async def test_queue_limit(session: AsyncSession):
    for i in range(5):
        await ingest(session, f"Q-{i}", line_spec(WIDGET, 1))

    rows = await list_pick_queue(session, limit=2)
    assert [o.external_ref for o in rows] == ["Q-0", "Q-1"]
