# wmscore/db/base.py
from __future__ import annotations

import importlib
import logging

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("wmscore.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

# 显式导入链：关系字符串目标必须先注册
MODEL_MODULES = [
    "wmscore.models.stocked_item",
    "wmscore.models.storage_bin",
    "wmscore.models.ledger_entry",
    "wmscore.models.inventory_txn",
    "wmscore.models.order",
    "wmscore.models.order_line",
    "wmscore.models.order_line_allocation",
    "wmscore.models.order_claim",
    "wmscore.models.picking_log",
]


def init_models(*, force: bool = False) -> None:
    """
    集中导入模型 + 固化关系映射（Alembic / create_all / 测试前调用）。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(MODEL_MODULES))
