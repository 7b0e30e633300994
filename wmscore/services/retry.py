# wmscore/services/retry.py
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from wmscore.metrics import CONFLICT_RETRIES
from wmscore.services.errors import ConcurrentModification

logger = logging.getLogger("wmscore.retry")

T = TypeVar("T")


async def with_conflict_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    limit: int,
    op: str = "unit",
    on_conflict: Optional[Callable[[], Awaitable[None]]] = None,
) -> T:
    """
    ConcurrentModification 自动重试：

    - fn 必须是“可整体重跑”的工作单元（内部重新读取最新状态）
    - on_conflict 在每次冲突后执行（典型：session.rollback()，丢弃失效的读）
    - 共执行 1 + limit 次；最后一次仍冲突则向上抛出
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except ConcurrentModification as e:
            if on_conflict is not None:
                await on_conflict()
            if attempt >= limit:
                logger.warning("conflict retry exhausted op=%s attempts=%d: %s", op, attempt + 1, e)
                raise
            attempt += 1
            CONFLICT_RETRIES.labels(op).inc()
            logger.info("conflict on op=%s, retry %d/%d", op, attempt, limit)
