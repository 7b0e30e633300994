# wmscore/router_mount.py
from __future__ import annotations

from fastapi import FastAPI


def mount_routers(app: FastAPI) -> None:
    from wmscore.api.routers.inventory import router as inventory_router
    from wmscore.api.routers.order_lines import router as order_lines_router
    from wmscore.api.routers.orders import router as orders_router
    from wmscore.metrics import router as metrics_router

    app.include_router(orders_router)
    app.include_router(order_lines_router)
    app.include_router(inventory_router)
    app.include_router(metrics_router)
