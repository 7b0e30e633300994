# wmscore/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from wmscore.core.config import get_settings
from wmscore.core.logging import setup_logging
from wmscore.core.scheduler import init_scheduler, shutdown_scheduler
from wmscore.db.base import init_models
from wmscore.db.session import close_engines
from wmscore.http_problem_handlers import register_exception_handlers
from wmscore.router_mount import mount_routers

settings = get_settings()
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger("wmscore")

init_models()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_scheduler()
    logger.info("wmscore started (env=%s)", settings.ENV)
    try:
        yield
    finally:
        shutdown_scheduler()
        await close_engines()


app = FastAPI(
    title="WMS Core",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

register_exception_handlers(app)
mount_routers(app)


@app.get("/")
async def root():
    return {"name": "WMS Core", "version": "0.1.0"}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
