# wmscore/api/routers/order_lines_schemas.py
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, conint, constr

from wmscore.api.routers.orders_schemas import WorkerId
from wmscore.services.pick_state_machine import PickResult, ScanResult


class LinePatchIn(BaseModel):
    worker_id: WorkerId
    status: Literal["pending", "in_progress", "completed", "short"]
    picked_quantity: Optional[conint(ge=0)] = None
    short_reason: Optional[Literal["not_found", "damaged", "wrong_item", "partial"]] = None


class LineScanIn(BaseModel):
    worker_id: WorkerId
    code: constr(max_length=128)
    qty: conint(gt=0) = 1


class PickOut(BaseModel):
    order_id: int
    line_id: int
    sku: str
    line_status: str
    required_qty: int
    picked_qty: int
    reserved_qty: int
    short_reason: Optional[str] = None
    order_status: str
    order_completed: bool = False
    needs_review: bool = False

    @classmethod
    def from_result(cls, r: PickResult) -> "PickOut":
        return cls(
            order_id=r.order_id,
            line_id=r.line_id,
            sku=r.sku,
            line_status=r.line_status,
            required_qty=r.required_qty,
            picked_qty=r.picked_qty,
            reserved_qty=r.reserved_qty,
            short_reason=r.short_reason,
            order_status=r.order_status,
            order_completed=r.order_completed,
            needs_review=r.needs_review,
        )


class ScanOut(BaseModel):
    result: str  # MATCH | WRONG_ITEM | INCOMPLETE
    order_id: int
    line_id: Optional[int] = None
    scanned: str
    expected: Optional[str] = None
    pick: Optional[PickOut] = None

    @classmethod
    def from_result(cls, r: ScanResult) -> "ScanOut":
        return cls(
            result=r.result,
            order_id=r.order_id,
            line_id=r.line_id,
            scanned=r.scanned,
            expected=r.expected,
            pick=PickOut.from_result(r.pick) if r.pick is not None else None,
        )
