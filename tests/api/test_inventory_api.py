# tests/api/test_inventory_api.py
from __future__ import annotations

import httpx
import pytest

from tests._helpers import BIN_FIRST, BIN_LATE, WIDGET
from tests._problem import assert_problem

pytestmark = pytest.mark.asyncio


async def _receive(client: httpx.AsyncClient, bin_id: int, qty: int, **extra) -> dict:
    r = await client.post("/inventory/receive", json={"item_id": WIDGET, "bin_id": bin_id, "qty": qty, **extra})
    assert r.status_code == 200, r.text
    return r.json()


async def test_receive_and_item_stock(client: httpx.AsyncClient):
    out = await _receive(client, BIN_LATE, 4)
    assert out["status"] == "OK" and out["on_hand"] == 4 and out["available"] == 4
    await _receive(client, BIN_FIRST, 6)

    r = await client.get(f"/inventory/items/{WIDGET}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["sku"] == "SKU-0001"
    assert (body["on_hand"], body["reserved"], body["picked"], body["available"]) == (10, 0, 0, 10)
    assert [b["bin_code"] for b in body["bins"]] == ["A-01-02", "A-01-01"]


async def test_receive_with_receipt_ref_is_idempotent(client: httpx.AsyncClient):
    first = await _receive(client, BIN_FIRST, 5, ref_id="PO-77")
    again = await _receive(client, BIN_FIRST, 5, ref_id="PO-77")

    assert first["status"] == "OK"
    assert again["status"] == "IDEMPOTENT" and again["on_hand"] == 5

    r = await client.get("/inventory/txns", params={"ref_type": "receipt", "ref_id": "PO-77"})
    assert r.status_code == 200, r.text
    assert len(r.json()) == 1


async def test_receive_unknown_bin_is_404(client: httpx.AsyncClient):
    r = await client.post("/inventory/receive", json={"item_id": WIDGET, "bin_id": 999, "qty": 1})
    body = assert_problem(r, 404, "not_found")
    assert body["context"]["bin_id"] == 999


async def test_receive_rejects_non_positive_qty(client: httpx.AsyncClient):
    r = await client.post("/inventory/receive", json={"item_id": WIDGET, "bin_id": BIN_FIRST, "qty": 0})
    body = assert_problem(r, 422, "request_validation_error")
    assert any(d["path"].endswith("qty") for d in body["details"])


async def test_adjust_below_committed_is_409(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 5)
    r = await client.post("/orders", json={"external_ref": "INV-1", "lines": [{"item_id": WIDGET, "qty": 4}]})
    assert r.status_code == 201, r.text

    r = await client.post("/inventory/adjust", json={"item_id": WIDGET, "bin_id": BIN_FIRST, "delta": -2})
    body = assert_problem(r, 409, "insufficient_stock")
    assert body["context"]["available"] == 1

    r = await client.post("/inventory/adjust", json={"item_id": WIDGET, "bin_id": BIN_FIRST, "delta": -1})
    assert r.status_code == 200, r.text
    assert r.json()["on_hand"] == 4


async def test_adjust_zero_delta_is_422(client: httpx.AsyncClient):
    r = await client.post("/inventory/adjust", json={"item_id": WIDGET, "bin_id": BIN_FIRST, "delta": 0})
    assert_problem(r, 422, "request_validation_error")


async def test_txns_query_needs_a_filter(client: httpx.AsyncClient):
    r = await client.get("/inventory/txns")
    assert_problem(r, 422, "invalid_query")

    r = await client.get("/inventory/txns", params={"ref_type": "receipt"})
    assert_problem(r, 422, "invalid_query")


async def test_txns_by_item_newest_first(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 1)
    await _receive(client, BIN_FIRST, 2)

    r = await client.get("/inventory/txns", params={"item_id": WIDGET, "bin_id": BIN_FIRST})
    assert r.status_code == 200, r.text
    assert [t["qty_delta"] for t in r.json()] == [2, 1]
    assert r.json()[0]["on_hand_after"] == 3


async def test_timeline_and_reconcile(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 3)

    r = await client.get("/inventory/timeline", params={"item_id": WIDGET, "bin_id": BIN_FIRST})
    assert r.status_code == 200, r.text
    assert r.json()[0]["after"] == {"on_hand": 3, "reserved": 0, "picked": 0}

    r = await client.post("/inventory/reconcile", json={"apply": False})
    assert r.status_code == 200, r.text
    assert r.json() == {"checked": 1, "clean": True, "applied": False, "drifts": []}


async def test_unknown_item_stock_is_404(client: httpx.AsyncClient):
    r = await client.get("/inventory/items/404")
    assert_problem(r, 404, "not_found")


async def test_transfer_between_bins(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 10)
    payload = {"item_id": WIDGET, "from_bin_id": BIN_FIRST, "to_bin_id": BIN_LATE, "qty": 4, "ref_id": "MV-9"}

    r = await client.post("/inventory/transfer", json=payload)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "OK"
    assert body["source"]["on_hand"] == 6 and body["destination"]["on_hand"] == 4

    r = await client.post("/inventory/transfer", json=payload)
    assert r.json()["status"] == "IDEMPOTENT"

    r = await client.get(f"/inventory/items/{WIDGET}")
    assert r.json()["on_hand"] == 10
    assert {b["bin_id"]: b["on_hand"] for b in r.json()["bins"]} == {BIN_FIRST: 6, BIN_LATE: 4}

    r = await client.get("/inventory/txns", params={"ref_type": "transfer", "ref_id": "MV-9"})
    assert [x["qty_delta"] for x in r.json()] == [-4, 4]


async def test_transfer_of_reserved_units_is_409(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 5)
    r = await client.post("/orders", json={"external_ref": "INV-9", "lines": [{"item_id": WIDGET, "qty": 4}]})
    assert r.status_code == 201, r.text

    r = await client.post(
        "/inventory/transfer",
        json={"item_id": WIDGET, "from_bin_id": BIN_FIRST, "to_bin_id": BIN_LATE, "qty": 2},
    )
    body = assert_problem(r, 409, "insufficient_stock")
    assert body["context"]["available"] == 1

    r = await client.get(f"/inventory/items/{WIDGET}")
    assert [b["bin_id"] for b in r.json()["bins"]] == [BIN_FIRST]


async def test_transfer_to_same_bin_is_422(client: httpx.AsyncClient):
    await _receive(client, BIN_FIRST, 5)
    r = await client.post(
        "/inventory/transfer",
        json={"item_id": WIDGET, "from_bin_id": BIN_FIRST, "to_bin_id": BIN_FIRST, "qty": 1},
    )
    assert_problem(r, 422, "invalid_argument")
