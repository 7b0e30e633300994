# wmscore/models/enums.py
from __future__ import annotations

from enum import StrEnum


class TxnType(StrEnum):
    """
    inventory_txns.txn_type（库存流水类型）：

    - RECEIVE    入库，on_hand 增加
    - ADJUST     手工调整（盘点差异 / 报损），on_hand 正负调整
    - RESERVE    预占，reserved 增加
    - UNRESERVE  取消预占（订单取消 / 放弃），reserved 减少
    - PICK       拣货确认，reserved → picked
    - SHORT      缺货释放，reserved 减少（不进入 picked）
    """

    RECEIVE = "receive"
    ADJUST = "adjust"
    RESERVE = "reserve"
    UNRESERVE = "unreserve"
    PICK = "pick"
    SHORT = "short"


class RefType(StrEnum):
    ORDER_LINE = "order_line"
    RECEIPT = "receipt"
    MANUAL = "manual"
    TRANSFER = "transfer"


class OrderStatus(StrEnum):
    QUEUED = "queued"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXCEPTION = "exception"
    READY_TO_SHIP = "ready_to_ship"
    CANCELLED = "cancelled"


class LineStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SHORT = "short"

    @property
    def is_terminal(self) -> bool:
        return self in (LineStatus.COMPLETED, LineStatus.SHORT)


class ShortReason(StrEnum):
    NOT_FOUND = "not_found"
    DAMAGED = "damaged"
    WRONG_ITEM = "wrong_item"
    PARTIAL = "partial"


class Priority(StrEnum):
    RUSH = "rush"
    HIGH = "high"
    NORMAL = "normal"

    @property
    def rank(self) -> int:
        # 越小越先出队
        return {"rush": 0, "high": 1, "normal": 2}[self.value]


class Resolution(StrEnum):
    """异常复核处理结论"""

    SHIP_PARTIAL = "ship_partial"
    RESOLVED = "resolved"
    HOLD = "hold"
    CANCELLED = "cancelled"


class PickAction(StrEnum):
    """picking_logs.action"""

    ORDER_CLAIMED = "order_claimed"
    ORDER_RELEASED = "order_released"
    CLAIM_EXPIRED = "claim_expired"
    ITEM_PICKED = "item_picked"
    ITEM_SHORTED = "item_shorted"
    SCAN_MISMATCH = "scan_mismatch"
    ORDER_COMPLETED = "order_completed"
    ORDER_READY_TO_SHIP = "order_ready_to_ship"
    ORDER_CANCELLED = "order_cancelled"
    EXCEPTION_RESOLVED = "exception_resolved"
