# tests/services/test_claim_lease_sweep.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests._helpers import BIN_FIRST, WIDGET, ingest, line_spec, receive
from wmscore.services.claim_arbiter import ClaimArbiter
from wmscore.services.claim_lease_sweep import find_expired_claims, sweep_expired_claims
from wmscore.services.order_reads import get_claim, get_order
from wmscore.services.pick_state_machine import PickService
from wmscore.services.picking_log_writer import list_picking_logs

UTC = timezone.utc
T0 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=UTC)

pytestmark = pytest.mark.asyncio


async def _claimed_with_lease(session: AsyncSession, ref: str, worker: str = "w1") -> int:
    res = await ingest(session, ref, line_spec(WIDGET, 2))
    arbiter = ClaimArbiter(lease_seconds=60, now=lambda: T0)
    out = await arbiter.claim(session, res.order.id, worker)
    await session.commit()
    assert out.expires_at == T0 + timedelta(seconds=60)
    return res.order.id


async def test_unexpired_claims_are_left_alone(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    order_id = await _claimed_with_lease(session, "SO-1")

    released = await sweep_expired_claims(session, now=T0 + timedelta(seconds=30))
    await session.commit()

    assert released == 0
    assert (await get_order(session, order_id)).status == "claimed"


async def test_expired_claim_without_progress_is_released(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    order_id = await _claimed_with_lease(session, "SO-1")

    later = T0 + timedelta(minutes=5)
    assert await find_expired_claims(session, now=later, limit=10) == [order_id]

    released = await sweep_expired_claims(session, now=later)
    await session.commit()

    assert released == 1
    order = await get_order(session, order_id)
    assert order.status == "queued" and order.claimed_by is None
    assert await get_claim(session, order_id) is None
    logs = await list_picking_logs(session, order_id)
    assert logs[-1].action == "claim_expired"
    assert logs[-1].reason == "lease_expired"


async def test_expired_claim_with_progress_stays_sticky(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    order_id = await _claimed_with_lease(session, "SO-1")
    order = await get_order(session, order_id)
    await PickService().confirm_pick(session, order.lines[0].id, "w1", 1)
    await session.commit()

    later = T0 + timedelta(minutes=5)
    released = await sweep_expired_claims(session, now=later)
    await session.commit()

    assert released == 0
    assert (await get_order(session, order_id)).status == "in_progress"
    row = await get_claim(session, order_id)
    assert row is not None and row.worker_id == "w1"
    assert row.expires_at is None
    # 不再被扫描
    assert await find_expired_claims(session, now=later, limit=10) == []


async def test_sweep_handles_more_than_one_batch(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 20)
    ids = [await _claimed_with_lease(session, f"SO-{i}", worker=f"w{i}") for i in range(3)]

    released = await sweep_expired_claims(session, now=T0 + timedelta(hours=1), batch_size=2)
    await session.commit()

    assert released == 3
    for order_id in ids:
        assert (await get_order(session, order_id)).status == "queued"
