# tests/api/test_picking_api.py
from __future__ import annotations

from typing import Tuple

import httpx
import pytest

from tests._helpers import BIN_FIRST, BOLTS, WIDGET
from tests._problem import assert_problem

pytestmark = pytest.mark.asyncio


async def _claimed_order(client: httpx.AsyncClient, ref: str, *lines: Tuple[int, int], worker: str = "alice") -> dict:
    for item_id, qty in lines:
        r = await client.post("/inventory/receive", json={"item_id": item_id, "bin_id": BIN_FIRST, "qty": qty * 2})
        assert r.status_code == 200, r.text
    r = await client.post(
        "/orders",
        json={"external_ref": ref, "lines": [{"item_id": i, "qty": q} for i, q in lines]},
    )
    assert r.status_code == 201, r.text
    order = r.json()["order"]
    r = await client.post(f"/orders/{order['id']}/claim", json={"worker_id": worker})
    assert r.status_code == 200, r.text
    return order


async def test_full_flow_to_ready_to_ship(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-1", (WIDGET, 2), (BOLTS, 1))
    w_line, b_line = order["lines"]

    r = await client.patch(f"/order-lines/{w_line['id']}", json={"worker_id": "alice", "status": "completed"})
    assert r.status_code == 200, r.text
    assert r.json()["line_status"] == "completed" and r.json()["order_completed"] is False

    r = await client.post(f"/order-lines/{b_line['id']}/scan", json={"worker_id": "alice", "code": "ab-12345"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["result"] == "MATCH"
    assert body["pick"]["order_completed"] is True and body["pick"]["order_status"] == "completed"

    r = await client.post(f"/orders/{order['id']}/ready-to-ship", json={"worker_id": "alice"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "ready_to_ship"

    r = await client.get(f"/inventory/items/{WIDGET}")
    assert (r.json()["reserved"], r.json()["picked"]) == (0, 2)

    r = await client.get(f"/orders/{order['id']}/picking-logs")
    actions = [x["action"] for x in r.json()]
    assert actions == [
        "order_claimed",
        "item_picked",
        "item_picked",
        "order_completed",
        "order_ready_to_ship",
    ]


async def test_patch_by_non_holder_is_403(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-2", (WIDGET, 2))
    line_id = order["lines"][0]["id"]

    r = await client.patch(f"/order-lines/{line_id}", json={"worker_id": "bob", "status": "completed"})
    body = assert_problem(r, 403, "claim_mismatch")
    assert body["context"]["claimed_by"] == "alice"


async def test_patch_state_machine_errors(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-3", (WIDGET, 3))
    line_id = order["lines"][0]["id"]

    r = await client.patch(f"/order-lines/{line_id}", json={"worker_id": "alice", "status": "pending"})
    assert_problem(r, 409, "invalid_transition")

    r = await client.patch(f"/order-lines/{line_id}", json={"worker_id": "alice", "status": "short"})
    assert_problem(r, 422, "invalid_argument")

    r = await client.patch(
        f"/order-lines/{line_id}",
        json={"worker_id": "alice", "status": "completed", "picked_quantity": 4},
    )
    assert_problem(r, 409, "invalid_transition")

    r = await client.patch(f"/order-lines/{line_id}", json={"worker_id": "alice", "status": "done"})
    assert_problem(r, 422, "request_validation_error")


async def test_short_patch_flags_review(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-4", (WIDGET, 3))
    line_id = order["lines"][0]["id"]

    r = await client.patch(
        f"/order-lines/{line_id}",
        json={"worker_id": "alice", "status": "short", "picked_quantity": 1, "short_reason": "damaged"},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["line_status"] == "short" and body["picked_qty"] == 1
    assert body["order_status"] == "completed" and body["needs_review"] is True

    r = await client.get("/orders/review")
    assert [o["id"] for o in r.json()] == [order["id"]]


async def test_release_before_and_after_progress(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-5", (WIDGET, 2))
    order_id = order["id"]

    r = await client.post(f"/orders/{order_id}/release", json={"worker_id": "alice"})
    assert r.status_code == 200, r.text
    assert r.json() == {"order_id": order_id, "released": True, "status": "queued", "reason": None}

    r = await client.post(f"/orders/{order_id}/claim", json={"worker_id": "alice"})
    assert r.status_code == 200, r.text

    r = await client.patch(
        f"/order-lines/{order['lines'][0]['id']}",
        json={"worker_id": "alice", "status": "in_progress", "picked_quantity": 1},
    )
    assert r.status_code == 200, r.text

    # 已有进度：不是错误，认领保持
    r = await client.post(f"/orders/{order_id}/release")
    assert r.status_code == 200, r.text
    assert r.json()["released"] is False
    assert r.json()["status"] == "in_progress"
    assert r.json()["reason"]

    r = await client.get(f"/orders/{order_id}")
    assert r.json()["claimed_by"] == "alice" and r.json()["status"] == "in_progress"


async def test_release_by_other_worker_is_403(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-6", (WIDGET, 1))
    r = await client.post(f"/orders/{order['id']}/release", json={"worker_id": "bob"})
    assert_problem(r, 403, "claim_mismatch")


async def test_order_scan_and_next_line(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-7", (WIDGET, 1), (BOLTS, 1))
    first, second = order["lines"]

    r = await client.get(f"/orders/{order['id']}/next-line")
    assert r.status_code == 200 and r.json()["id"] == first["id"]

    r = await client.post(f"/orders/{order['id']}/scan", json={"worker_id": "alice", "code": "SKU:SKU-0001"})
    assert r.status_code == 200, r.text
    assert r.json()["result"] == "MATCH" and r.json()["line_id"] == first["id"]

    r = await client.get(f"/orders/{order['id']}/next-line", params={"after_line_id": first["id"]})
    assert r.json()["id"] == second["id"]

    r = await client.post(f"/orders/{order['id']}/scan", json={"worker_id": "alice", "code": "ZZ-00000"})
    assert r.json()["result"] == "WRONG_ITEM"

    r = await client.post(f"/orders/{order['id']}/scan", json={"worker_id": "alice", "code": "AB-12345"})
    assert r.json()["result"] == "MATCH"
    assert r.json()["pick"]["order_completed"] is True

    r = await client.get(f"/orders/{order['id']}/next-line")
    assert r.status_code == 200 and r.json() is None


async def test_ready_to_ship_requires_completed(client: httpx.AsyncClient):
    order = await _claimed_order(client, "PK-8", (WIDGET, 1))
    r = await client.post(f"/orders/{order['id']}/ready-to-ship")
    assert_problem(r, 409, "invalid_transition")


async def test_health_and_metrics(client: httpx.AsyncClient):
    r = await client.get("/healthz")
    assert r.status_code == 200 and r.json() == {"status": "ok"}

    await _claimed_order(client, "PK-9", (WIDGET, 1))
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "wms_claims_total" in r.text
