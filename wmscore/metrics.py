# wmscore/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, generate_latest
from prometheus_client import multiprocess

# 业务指标
RESERVATIONS = Counter(
    "wms_reservations_total", "Reservation attempts by outcome", ["outcome"]
)
CLAIMS = Counter("wms_claims_total", "Claim / release results", ["action", "result"])
PICK_TRANSITIONS = Counter(
    "wms_pick_transitions_total", "Order line transitions", ["status"]
)
SCANS = Counter("wms_scans_total", "Scan verification results", ["result"])
CONFLICT_RETRIES = Counter(
    "wms_conflict_retries_total", "Automatic retries after concurrent modification", ["op"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    多进程（PROMETHEUS_MULTIPROC_DIR 已设置）时合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
