# tests/services/test_reservation_backfill.py
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests._helpers import BIN_FIRST, BIN_MID, GADGET, WIDGET, buckets, ingest, line_spec, receive
from wmscore.services.order_reads import get_order
from wmscore.services.reservation_backfill import backfill_reservations, find_underreserved_orders

pytestmark = pytest.mark.asyncio


async def test_backfill_fills_orders_once_stock_arrives(session: AsyncSession):
    full = await ingest(session, "BF-1", line_spec(WIDGET, 4))
    partial = await ingest(session, "BF-2", line_spec(GADGET, 10))
    await ingest(session, "BF-3", line_spec(WIDGET, 1))

    # 到货：WIDGET 足够两单，GADGET 只有 6
    await receive(session, WIDGET, BIN_FIRST, 20)
    await receive(session, GADGET, BIN_MID, 6)

    candidates = await find_underreserved_orders(session)
    assert len(candidates) == 3

    report = await backfill_reservations(session)
    await session.commit()

    assert report.scanned == 3
    assert full.order.id in report.reserved
    assert report.partial == [partial.order.id]
    assert report.as_dict() == {"scanned": 3, "reserved": 2, "partial": 1, "failed": 0}

    assert await buckets(session, WIDGET, BIN_FIRST) == (20, 5, 0)
    assert await buckets(session, GADGET, BIN_MID) == (6, 6, 0)
    assert (await get_order(session, full.order.id)).allocation_short is False


async def test_backfill_is_safe_to_rerun(session: AsyncSession):
    await ingest(session, "BF-1", line_spec(WIDGET, 4))
    await receive(session, WIDGET, BIN_FIRST, 20)

    first = await backfill_reservations(session)
    await session.commit()
    second = await backfill_reservations(session)
    await session.commit()

    assert first.scanned == 1 and second.scanned == 0
    assert await buckets(session, WIDGET, BIN_FIRST) == (20, 4, 0)


async def test_backfill_without_stock_reports_failed(session: AsyncSession):
    res = await ingest(session, "BF-1", line_spec(GADGET, 2))

    report = await backfill_reservations(session, limit=10)
    assert report.failed == [res.order.id]
