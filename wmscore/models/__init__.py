# wmscore/models/__init__.py
"""
统一导出 ORM 模型。
"""

from wmscore.models.inventory_txn import InventoryTxn
from wmscore.models.ledger_entry import LedgerEntry
from wmscore.models.order import Order
from wmscore.models.order_claim import OrderClaim
from wmscore.models.order_line import OrderLine
from wmscore.models.order_line_allocation import OrderLineAllocation
from wmscore.models.picking_log import PickingLog
from wmscore.models.stocked_item import StockedItem
from wmscore.models.storage_bin import StorageBin

__all__ = [
    "StockedItem",
    "StorageBin",
    "LedgerEntry",
    "InventoryTxn",
    "Order",
    "OrderLine",
    "OrderLineAllocation",
    "OrderClaim",
    "PickingLog",
]
