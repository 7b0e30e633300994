# wmscore/api/routers/inventory_schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, conint, constr, field_validator

from wmscore.services.inventory_ledger import BinStock, LedgerOutcome, TransferOutcome
from wmscore.services.ledger_replay_service import ReconcileReport

RefId = constr(strip_whitespace=True, min_length=1, max_length=128)


class ReceiveIn(BaseModel):
    item_id: conint(gt=0)
    bin_id: conint(gt=0)
    qty: conint(gt=0)
    # 收货单号；带上即按 (receive, receipt, ref_id, ref_seq) 幂等
    ref_id: Optional[RefId] = None
    ref_seq: conint(gt=0) = 1
    note: Optional[str] = None


class AdjustIn(BaseModel):
    item_id: conint(gt=0)
    bin_id: conint(gt=0)
    delta: int
    ref_id: Optional[RefId] = None
    note: Optional[str] = None

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class TransferIn(BaseModel):
    item_id: conint(gt=0)
    from_bin_id: conint(gt=0)
    to_bin_id: conint(gt=0)
    qty: conint(gt=0)
    # 移库单号；带上即按 (adjust, transfer, ref_id, 1|2) 幂等
    ref_id: Optional[RefId] = None
    note: Optional[str] = None


class LedgerOutcomeOut(BaseModel):
    status: str
    txn_type: str
    item_id: int
    bin_id: int
    qty: int
    on_hand: int
    reserved: int
    picked: int
    available: int
    txn_id: Optional[int] = None

    @classmethod
    def from_outcome(cls, o: LedgerOutcome) -> "LedgerOutcomeOut":
        return cls(
            status=o.status,
            txn_type=o.txn_type,
            item_id=o.item_id,
            bin_id=o.bin_id,
            qty=o.qty,
            on_hand=o.on_hand,
            reserved=o.reserved,
            picked=o.picked,
            available=o.available,
            txn_id=o.txn_id or None,
        )


class TransferOut(BaseModel):
    status: str
    item_id: int
    qty: int
    source: LedgerOutcomeOut
    destination: Optional[LedgerOutcomeOut] = None

    @classmethod
    def from_outcome(cls, o: TransferOutcome, qty: int) -> "TransferOut":
        return cls(
            status=o.status,
            item_id=o.source.item_id,
            qty=qty,
            source=LedgerOutcomeOut.from_outcome(o.source),
            destination=LedgerOutcomeOut.from_outcome(o.destination) if o.destination else None,
        )


class BinStockOut(BaseModel):
    bin_id: int
    bin_code: str
    pick_sequence: int
    on_hand: int
    reserved: int
    picked: int
    available: int

    @classmethod
    def from_stock(cls, s: BinStock) -> "BinStockOut":
        return cls(
            bin_id=s.bin_id,
            bin_code=s.bin_code,
            pick_sequence=s.pick_sequence,
            on_hand=s.on_hand,
            reserved=s.reserved,
            picked=s.picked,
            available=s.available,
        )


class ItemStockOut(BaseModel):
    item_id: int
    sku: str
    on_hand: int
    reserved: int
    picked: int
    available: int
    bins: List[BinStockOut]


class TxnOut(BaseModel):
    id: int
    item_id: int
    bin_id: int
    txn_type: str
    qty_delta: int
    ref_type: str
    ref_id: str
    ref_seq: int
    order_id: Optional[int] = None
    note: Optional[str] = None
    on_hand_after: int
    reserved_after: int
    picked_after: int
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReconcileIn(BaseModel):
    apply: bool = False


class ReconcileOut(BaseModel):
    checked: int
    clean: bool
    applied: bool
    drifts: List[Dict[str, Any]]

    @classmethod
    def from_report(cls, r: ReconcileReport) -> "ReconcileOut":
        return cls(
            checked=r.checked,
            clean=r.clean,
            applied=r.applied,
            drifts=[d.as_dict() for d in r.drifts],
        )
