# wmscore/services/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class WmsError(Exception):
    """
    领域错误基类：

    - code：稳定的机器可读错误码（HTTP 层直接作为 Problem.error_code）
    - message：给人看的说明
    - context：定位信息（order_id / line_id / item_id ...）
    """

    code = "wms_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})


class NotFound(WmsError):
    code = "not_found"


class InsufficientStock(WmsError):
    """预占 / 拣货数量超出可用（或已预占）数量"""

    code = "insufficient_stock"


class AlreadyClaimed(WmsError):
    """认领竞争失败：订单已被其他作业员认领"""

    code = "already_claimed"


class ReleaseRefused(WmsError):
    """订单已有拣货进度，认领不可释放"""

    code = "release_refused"


class ConcurrentModification(WmsError):
    """条件更新的前置条件已失效（并发修改）"""

    code = "concurrent_modification"


class InvalidTransition(WmsError):
    """状态机 / 订单状态不允许该动作"""

    code = "invalid_transition"


class ClaimMismatch(WmsError):
    """作业员未持有该订单的认领"""

    code = "claim_mismatch"


class OrderOnHold(WmsError):
    code = "order_on_hold"
