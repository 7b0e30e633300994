# wmscore/api/routers/orders_schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, constr, model_validator

from wmscore.models.order import Order
from wmscore.models.order_line import OrderLine

WorkerId = constr(strip_whitespace=True, min_length=1, max_length=64)


# ------------------------------------------------------------------
# 入队
# ------------------------------------------------------------------


class OrderLineIn(BaseModel):
    item_id: Optional[conint(gt=0)] = None
    sku: Optional[constr(strip_whitespace=True, min_length=1, max_length=64)] = None
    qty: conint(gt=0)

    @model_validator(mode="after")
    def _need_item(self) -> "OrderLineIn":
        if self.item_id is None and self.sku is None:
            raise ValueError("item_id or sku is required")
        return self


class OrderIn(BaseModel):
    external_ref: constr(strip_whitespace=True, min_length=1, max_length=128)
    priority: Literal["rush", "high", "normal"] = "normal"
    lines: List[OrderLineIn] = Field(..., min_length=1)


# ------------------------------------------------------------------
# 输出
# ------------------------------------------------------------------


class AllocationOut(BaseModel):
    bin_id: int
    pick_sequence: int
    reserved_qty: int
    picked_qty: int
    released_qty: int

    model_config = ConfigDict(from_attributes=True)


class OrderLineOut(BaseModel):
    id: int
    line_no: int
    item_id: int
    sku: str
    required_qty: int
    reserved_qty: int
    picked_qty: int
    status: str
    short_reason: Optional[str] = None
    bin_id: Optional[int] = None
    allocations: List[AllocationOut] = []

    @classmethod
    def from_model(cls, ln: OrderLine) -> "OrderLineOut":
        return cls(
            id=ln.id,
            line_no=ln.line_no,
            item_id=ln.item_id,
            sku=ln.item.sku,
            required_qty=ln.required_qty,
            reserved_qty=ln.reserved_qty,
            picked_qty=ln.picked_qty,
            status=ln.status,
            short_reason=ln.short_reason,
            bin_id=ln.bin_id,
            allocations=[
                AllocationOut.model_validate(a) for a in sorted(ln.allocations, key=lambda a: a.pick_sequence)
            ],
        )


class OrderOut(BaseModel):
    id: int
    external_ref: str
    priority: str
    status: str
    version: int
    on_hold: bool
    allocation_short: bool
    needs_review: bool
    review_reason: Optional[str] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    claimed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lines: List[OrderLineOut] = []

    @classmethod
    def from_model(cls, o: Order) -> "OrderOut":
        return cls(
            id=o.id,
            external_ref=o.external_ref,
            priority=o.priority,
            status=o.status,
            version=o.version,
            on_hold=o.on_hold,
            allocation_short=o.allocation_short,
            needs_review=o.needs_review,
            review_reason=o.review_reason,
            resolution=o.resolution,
            resolved_by=o.resolved_by,
            claimed_by=o.claimed_by,
            created_at=o.created_at,
            completed_at=o.completed_at,
            lines=[OrderLineOut.from_model(ln) for ln in o.lines],
        )


class OrderSummaryOut(BaseModel):
    """队列 / 复核列表用的精简视图"""

    id: int
    external_ref: str
    priority: str
    status: str
    on_hold: bool
    allocation_short: bool
    needs_review: bool
    line_count: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, o: Order) -> "OrderSummaryOut":
        return cls(
            id=o.id,
            external_ref=o.external_ref,
            priority=o.priority,
            status=o.status,
            on_hold=o.on_hold,
            allocation_short=o.allocation_short,
            needs_review=o.needs_review,
            line_count=len(o.lines),
            created_at=o.created_at,
        )


class IngestOut(BaseModel):
    created: bool
    order: OrderOut


# ------------------------------------------------------------------
# 订单动作
# ------------------------------------------------------------------


class CancelIn(BaseModel):
    actor: Optional[WorkerId] = None
    reason: Optional[constr(max_length=255)] = None


class ResolveExceptionIn(BaseModel):
    resolution: Literal["ship_partial", "resolved", "hold", "cancelled"]
    resolved_by: WorkerId
    notes: Optional[str] = None


class ReadyToShipIn(BaseModel):
    worker_id: Optional[WorkerId] = None


class ClaimIn(BaseModel):
    worker_id: WorkerId


class ClaimOut(BaseModel):
    order_id: int
    worker_id: str
    claimed_at: datetime
    expires_at: Optional[datetime] = None
    reclaimed: bool = False


class ReleaseIn(BaseModel):
    worker_id: Optional[WorkerId] = None


class ReleaseOut(BaseModel):
    order_id: int
    released: bool
    status: Optional[str] = None
    reason: Optional[str] = None


class OrderScanIn(BaseModel):
    worker_id: WorkerId
    code: constr(max_length=128)


class PickingLogOut(BaseModel):
    id: int
    action: str
    order_id: int
    line_id: Optional[int] = None
    worker_id: Optional[str] = None
    sku: Optional[str] = None
    qty_before: Optional[int] = None
    qty_after: Optional[int] = None
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    reason: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
