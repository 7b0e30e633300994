# wmscore/api/routers/orders.py
from __future__ import annotations

from fastapi import APIRouter

from wmscore.api.routers.orders_routes_floor import register as register_floor
from wmscore.api.routers.orders_routes_intake import register as register_intake

router = APIRouter(prefix="/orders", tags=["orders"])

# /queue、/review 必须先于 /{order_id} 注册
register_intake(router)
register_floor(router)
