# tests/services/test_pick_state_machine.py
from __future__ import annotations

from typing import List

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests._helpers import (
    BIN_FIRST,
    BIN_LATE,
    BOLTS,
    GADGET,
    WIDGET,
    buckets,
    claim,
    ingest,
    line_spec,
    receive,
    txn_count,
)
from wmscore.models.order_line import OrderLine
from wmscore.services.errors import ClaimMismatch, InvalidTransition
from wmscore.services.order_reads import get_claim, get_line, get_order
from wmscore.services.pick_state_machine import PickService
from wmscore.services.picking_log_writer import list_picking_logs

pytestmark = pytest.mark.asyncio


async def _claimed(session: AsyncSession, *lines, ref: str = "SO-1", worker: str = "w1") -> List[OrderLine]:
    res = await ingest(session, ref, *lines)
    await claim(session, res.order.id, worker)
    order = await get_order(session, res.order.id)
    return list(order.lines)


async def test_full_confirm_completes_line_and_order(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 3))

    res = await PickService().confirm_pick(session, line.id, "w1", 3)
    await session.commit()

    assert res.line_status == "completed"
    assert res.picked_qty == 3 and res.reserved_qty == 0
    assert res.order_status == "completed" and res.order_completed is True
    assert res.needs_review is False
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 0, 3)
    # 订单完成后认领行移除
    assert await get_claim(session, line.order_id) is None

    actions = [x.action for x in await list_picking_logs(session, line.order_id)]
    assert actions == ["order_claimed", "item_picked", "order_completed"]


async def test_partial_confirm_moves_line_to_in_progress(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 3))

    res = await PickService().confirm_pick(session, line.id, "w1", 1)
    await session.commit()

    assert res.line_status == "in_progress"
    assert res.picked_qty == 1 and res.reserved_qty == 2
    assert res.order_status == "in_progress" and res.order_completed is False


async def test_pick_consumes_legs_in_pick_sequence(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 5)
    await receive(session, WIDGET, BIN_LATE, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 12))

    await PickService().confirm_pick(session, line.id, "w1", 6)
    await session.commit()

    assert await buckets(session, WIDGET, BIN_FIRST) == (5, 0, 5)
    assert await buckets(session, WIDGET, BIN_LATE) == (10, 6, 1)
    refreshed = await get_line(session, line.id)
    assert {a.bin_id: a.picked_qty for a in refreshed.allocations} == {BIN_FIRST: 5, BIN_LATE: 1}


async def test_over_pick_is_refused(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 3))

    with pytest.raises(InvalidTransition):
        await PickService().confirm_pick(session, line.id, "w1", 4)
    await session.rollback()
    assert await txn_count(session, txn_type="pick") == 0


async def test_pick_requires_the_claim_holder(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 3))

    with pytest.raises(ClaimMismatch):
        await PickService().confirm_pick(session, line.id, "w2", 1)


async def test_pick_on_unclaimed_order_is_invalid(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    res = await ingest(session, "SO-1", line_spec(WIDGET, 3))

    with pytest.raises(InvalidTransition):
        await PickService().confirm_pick(session, res.order.lines[0].id, "w1", 1)


async def test_pick_tops_up_reservation_when_stock_arrived_late(session: AsyncSession):
    """入队时无货；到货后拣货会先补分配再拣。"""
    (line,) = await _claimed(session, line_spec(GADGET, 2))
    assert line.reserved_qty == 0

    await receive(session, GADGET, BIN_LATE, 5)
    res = await PickService().confirm_pick(session, line.id, "w1", 2)
    await session.commit()

    assert res.line_status == "completed"
    assert await buckets(session, GADGET, BIN_LATE) == (5, 0, 2)


async def test_short_pick_releases_remaining_reservation(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 5))

    res = await PickService().short_pick(session, line.id, "w1", "damaged", picked_qty=2)
    await session.commit()

    assert res.line_status == "short" and res.short_reason == "damaged"
    assert res.picked_qty == 2 and res.reserved_qty == 0
    # 有已拣量：订单仍 completed，但需要复核
    assert res.order_status == "completed"
    assert res.needs_review is True
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 0, 2)
    assert await txn_count(session, txn_type="short") == 1

    order = await get_order(session, line.order_id)
    assert order.review_reason == "short lines: 1"


async def test_all_lines_short_with_nothing_picked_is_exception(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 2))

    res = await PickService().short_pick(session, line.id, "w1", "not_found")
    await session.commit()

    assert res.order_status == "exception"
    assert res.needs_review is True
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 0, 0)


async def test_short_pick_validation(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 3))
    svc = PickService()
    line_id = line.id
    await svc.confirm_pick(session, line_id, "w1", 2)
    await session.commit()

    with pytest.raises(ValueError):
        await svc.short_pick(session, line_id, "w1", "lost_in_space")
    with pytest.raises(InvalidTransition):
        await svc.short_pick(session, line_id, "w1", "partial", picked_qty=1)
    await session.rollback()
    with pytest.raises(InvalidTransition):
        await svc.short_pick(session, line_id, "w1", "partial", picked_qty=3)


async def test_terminal_line_cannot_transition(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    lines = await _claimed(session, line_spec(WIDGET, 1), line_spec(BOLTS, 1))
    svc = PickService()
    line_id = lines[0].id
    await svc.confirm_pick(session, line_id, "w1", 1)
    await session.commit()

    with pytest.raises(InvalidTransition):
        await svc.confirm_pick(session, line_id, "w1", 1)
    await session.rollback()
    with pytest.raises(InvalidTransition):
        await svc.short_pick(session, line_id, "w1", "damaged")


async def test_order_with_mixed_lines_completes_on_last_terminal(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    await receive(session, BOLTS, BIN_FIRST, 10)
    lines = await _claimed(session, line_spec(WIDGET, 2), line_spec(BOLTS, 1))
    svc = PickService()

    first = await svc.confirm_pick(session, lines[0].id, "w1", 2)
    await session.commit()
    assert first.order_completed is False and first.order_status == "in_progress"

    last = await svc.short_pick(session, lines[1].id, "w1", "not_found")
    await session.commit()
    assert last.order_completed is True
    assert last.order_status == "completed" and last.needs_review is True


# ------------------------------------------------------------------
# PATCH 语义
# ------------------------------------------------------------------


async def test_patch_completed_picks_remaining_units(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))
    svc = PickService()
    await svc.confirm_pick(session, line.id, "w1", 1)
    await session.commit()

    res = await svc.apply_item_patch(session, line.id, "w1", status="completed")
    await session.commit()

    assert res.line_status == "completed" and res.picked_qty == 4
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 0, 4)


async def test_patch_in_progress_with_quantity_sets_total(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))
    svc = PickService()
    line_id = line.id

    res = await svc.apply_item_patch(session, line_id, "w1", status="in_progress", picked_quantity=3)
    await session.commit()
    assert res.line_status == "in_progress" and res.picked_qty == 3

    # 同一目标再提交一次：无变化
    same = await svc.apply_item_patch(session, line_id, "w1", status="in_progress", picked_quantity=3)
    await session.commit()
    assert same.picked_qty == 3
    assert await txn_count(session, txn_type="pick") == 1

    with pytest.raises(InvalidTransition):
        await svc.apply_item_patch(session, line_id, "w1", status="in_progress", picked_quantity=4)
    await session.rollback()
    with pytest.raises(InvalidTransition):
        await svc.apply_item_patch(session, line_id, "w1", status="in_progress", picked_quantity=2)


async def test_patch_in_progress_without_quantity_starts_line(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))

    res = await PickService().apply_item_patch(session, line.id, "w1", status="in_progress")
    await session.commit()

    assert res.line_status == "in_progress" and res.picked_qty == 0
    assert await txn_count(session, txn_type="pick") == 0


async def test_patch_in_progress_with_zero_quantity_starts_line(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))
    line_id = line.id

    res = await PickService().apply_item_patch(session, line_id, "w1", status="in_progress", picked_quantity=0)
    await session.commit()

    assert res.line_status == "in_progress" and res.picked_qty == 0
    assert (await get_line(session, line_id)).status == "in_progress"
    assert await txn_count(session, txn_type="pick") == 0
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 4, 0)


async def test_patch_rejects_pending_and_short_without_reason(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))
    svc = PickService()

    with pytest.raises(InvalidTransition):
        await svc.apply_item_patch(session, line.id, "w1", status="pending")
    with pytest.raises(ValueError):
        await svc.apply_item_patch(session, line.id, "w1", status="short")


async def test_patch_short_with_quantity(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 4))

    res = await PickService().apply_item_patch(
        session, line.id, "w1", status="short", picked_quantity=1, short_reason="partial"
    )
    await session.commit()

    assert res.line_status == "short" and res.picked_qty == 1
    assert await buckets(session, WIDGET, BIN_FIRST) == (10, 0, 1)


# ------------------------------------------------------------------
# 扫码
# ------------------------------------------------------------------


async def test_scan_line_match_confirms_one_unit(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 2))

    res = await PickService().scan_line(session, line.id, "w1", " sku-0001 ")
    await session.commit()

    assert res.result == "MATCH"
    assert res.pick is not None and res.pick.picked_qty == 1


async def test_scan_line_wrong_item_is_logged_without_state_change(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 2))

    res = await PickService().scan_line(session, line.id, "w1", "SKU-0002")
    await session.commit()

    assert res.result == "WRONG_ITEM" and res.pick is None
    refreshed = await get_line(session, line.id)
    assert refreshed.picked_qty == 0 and refreshed.status == "pending"
    logs = await list_picking_logs(session, line.order_id)
    assert logs[-1].action == "scan_mismatch"
    assert logs[-1].meta == {"scanned": "SKU-0002"}


async def test_scan_line_partial_input_is_ignored(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 2))

    res = await PickService().scan_line(session, line.id, "w1", "SKU")
    assert res.result == "INCOMPLETE"
    assert len(await list_picking_logs(session, line.order_id)) == 1


async def test_scan_order_finds_matching_line(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    await receive(session, BOLTS, BIN_FIRST, 10)
    lines = await _claimed(session, line_spec(WIDGET, 1), line_spec(BOLTS, 2))
    svc = PickService()

    res = await svc.scan_order(session, lines[0].order_id, "w1", "ab12345")
    await session.commit()
    assert res.result == "MATCH" and res.line_id == lines[1].id
    assert res.pick.picked_qty == 1

    short_input = await svc.scan_order(session, lines[0].order_id, "w1", "ab1")
    assert short_input.result == "INCOMPLETE"

    wrong = await svc.scan_order(session, lines[0].order_id, "w1", "XYZ-99999")
    await session.commit()
    assert wrong.result == "WRONG_ITEM" and wrong.line_id is None


# ------------------------------------------------------------------
# 遍历 / 发货准备
# ------------------------------------------------------------------


async def test_next_pending_line_wraps_around(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    await receive(session, BOLTS, BIN_FIRST, 10)
    lines = await _claimed(session, line_spec(WIDGET, 1), line_spec(BOLTS, 1), line_spec(WIDGET, 1))
    svc = PickService()
    order_id = lines[0].order_id

    assert (await svc.next_pending_line(session, order_id)).id == lines[0].id
    assert (await svc.next_pending_line(session, order_id, lines[0].id)).id == lines[1].id

    await svc.confirm_pick(session, lines[0].id, "w1", 1)
    await session.commit()
    # 最后一行之后回绕到第一条未完成行
    assert (await svc.next_pending_line(session, order_id, lines[2].id)).id == lines[1].id


async def test_next_pending_line_none_when_all_terminal(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 1))
    svc = PickService()
    await svc.confirm_pick(session, line.id, "w1", 1)
    await session.commit()

    assert await svc.next_pending_line(session, line.order_id) is None


async def test_ready_to_ship_only_from_completed(session: AsyncSession):
    await receive(session, WIDGET, BIN_FIRST, 10)
    (line,) = await _claimed(session, line_spec(WIDGET, 2))
    svc = PickService()
    order_id, line_id = line.order_id, line.id

    with pytest.raises(InvalidTransition):
        await svc.mark_ready_to_ship(session, order_id, "w1")
    await session.rollback()

    await svc.confirm_pick(session, line_id, "w1", 2)
    await session.commit()
    order = await svc.mark_ready_to_ship(session, order_id, "w1")
    await session.commit()

    assert order.status == "ready_to_ship"
    assert order.ready_at is not None
