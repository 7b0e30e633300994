# wmscore/services/claim_arbiter.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.core.config import get_settings
from wmscore.metrics import CLAIMS
from wmscore.models.enums import LineStatus, OrderStatus, PickAction
from wmscore.models.order import Order
from wmscore.models.order_claim import OrderClaim
from wmscore.models.order_line import OrderLine
from wmscore.services.errors import (
    AlreadyClaimed,
    ClaimMismatch,
    ConcurrentModification,
    InvalidTransition,
    OrderOnHold,
    ReleaseRefused,
)
from wmscore.services.order_reads import get_claim, get_order
from wmscore.services.picking_log_writer import PickingLogWriter
from wmscore.services.retry import with_conflict_retry

UTC = timezone.utc

logger = logging.getLogger("wmscore.claims")

# 认领仍然有效（作业员持有）的订单状态
ACTIVE_CLAIM_STATUSES = (OrderStatus.CLAIMED.value, OrderStatus.IN_PROGRESS.value)

_TERMINAL_LINE_STATUSES = (LineStatus.COMPLETED.value, LineStatus.SHORT.value)


@dataclass(frozen=True)
class ClaimResult:
    order_id: int
    worker_id: str
    claimed_at: datetime
    expires_at: Optional[datetime]
    reclaimed: bool = False


@dataclass(frozen=True)
class ReleaseResult:
    order_id: int
    worker_id: str
    status: str


def _progress_exists(order_id: int):
    """订单是否已有拣货进度：任一行 picked_qty > 0 或已到终态。"""
    return sa.exists().where(
        OrderLine.order_id == int(order_id),
        sa.or_(OrderLine.picked_qty > 0, OrderLine.status.in_(_TERMINAL_LINE_STATUSES)),
    )


class ClaimArbiter:
    """
    订单认领仲裁：同一时刻一个订单只归一个作业员。

    claim：
      UPDATE orders SET status='claimed' ... WHERE id=:id AND status='queued' AND NOT on_hold
      命中 1 行即赢得竞争，同一事务内落 order_claims 行；
      0 行 → 读一次订单判定失败原因（AlreadyClaimed / OrderOnHold / InvalidTransition）。
      输家不应重试同一订单，而是刷新队列。

    release：
      仅在零进度时允许（无 picked、无终态行），否则 ReleaseRefused。
      一旦开始拣货，认领是“粘住”的，避免部分完成的预占被静默丢弃。
    """

    def __init__(self, *, lease_seconds: Optional[int] = None, now=None) -> None:
        self._lease_seconds = lease_seconds
        self._now = now or (lambda: datetime.now(UTC))

    @property
    def lease_seconds(self) -> int:
        if self._lease_seconds is not None:
            return int(self._lease_seconds)
        return int(get_settings().CLAIM_LEASE_SECONDS)

    # ------------------------------------------------------------------
    # claim
    # ------------------------------------------------------------------

    async def claim(self, session: AsyncSession, order_id: int, worker_id: str) -> ClaimResult:
        worker_id = _require_worker(worker_id)
        ts = self._now()
        expires_at = ts + timedelta(seconds=self.lease_seconds) if self.lease_seconds > 0 else None

        won = (
            await session.execute(
                sa.update(Order)
                .where(
                    Order.id == int(order_id),
                    Order.status == OrderStatus.QUEUED.value,
                    Order.on_hold.is_(False),
                )
                .values(
                    status=OrderStatus.CLAIMED.value,
                    claimed_by=worker_id,
                    claimed_at=ts,
                    version=Order.version + 1,
                )
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        if won is None:
            return await self._diagnose_claim_failure(session, order_id, worker_id)

        await session.execute(
            sa.insert(OrderClaim).values(
                order_id=int(order_id),
                worker_id=worker_id,
                claimed_at=ts,
                expires_at=expires_at,
            )
        )
        await PickingLogWriter.write(
            session,
            action=PickAction.ORDER_CLAIMED,
            order_id=int(order_id),
            worker_id=worker_id,
            status_before=OrderStatus.QUEUED.value,
            status_after=OrderStatus.CLAIMED.value,
            meta={"expires_at": expires_at.isoformat()} if expires_at else None,
        )
        CLAIMS.labels("claim", "ok").inc()
        return ClaimResult(int(order_id), worker_id, ts, expires_at)

    async def _diagnose_claim_failure(
        self, session: AsyncSession, order_id: int, worker_id: str
    ) -> ClaimResult:
        order = await get_order(session, order_id)
        ctx = {"order_id": order.id, "status": order.status}

        if order.status in ACTIVE_CLAIM_STATUSES:
            if order.claimed_by == worker_id:
                # 同一作业员重复认领：幂等成功
                claim = await get_claim(session, order.id)
                CLAIMS.labels("claim", "reclaimed").inc()
                return ClaimResult(
                    order.id,
                    worker_id,
                    claim.claimed_at if claim else order.claimed_at,
                    claim.expires_at if claim else None,
                    reclaimed=True,
                )
            CLAIMS.labels("claim", "already_claimed").inc()
            logger.info("claim lost: order=%s worker=%s holder=%s", order.id, worker_id, order.claimed_by)
            raise AlreadyClaimed(
                f"order {order.id} is already claimed by another worker",
                context={**ctx, "claimed_by": order.claimed_by},
            )

        if order.on_hold:
            CLAIMS.labels("claim", "on_hold").inc()
            raise OrderOnHold(f"order {order.id} is on hold", context=ctx)

        CLAIMS.labels("claim", "invalid").inc()
        raise InvalidTransition(f"order {order.id} cannot be claimed in status {order.status}", context=ctx)

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------

    async def release(
        self,
        session: AsyncSession,
        order_id: int,
        *,
        worker_id: Optional[str] = None,
        action: PickAction = PickAction.ORDER_RELEASED,
        reason: Optional[str] = None,
        retry: bool = True,
    ) -> ReleaseResult:
        """
        零进度才释放。条件更新撞上并发变更（ConcurrentModification）时，
        回滚后整体重跑，最多 CONFLICT_RETRY_LIMIT 次；重跑会读到最新状态，
        通常转成 ReleaseRefused / InvalidTransition / ClaimMismatch。

        retry=False：冲突直接抛出，由调用方处理（租约扫描在一个事务里批量释放，不能回滚整批）。
        """

        async def unit() -> ReleaseResult:
            return await self._release_once(session, order_id, worker_id=worker_id, action=action, reason=reason)

        if not retry:
            return await unit()
        return await with_conflict_retry(
            unit,
            limit=get_settings().CONFLICT_RETRY_LIMIT,
            op="release",
            on_conflict=session.rollback,
        )

    async def _release_once(
        self,
        session: AsyncSession,
        order_id: int,
        *,
        worker_id: Optional[str],
        action: PickAction,
        reason: Optional[str],
    ) -> ReleaseResult:
        order = await get_order(session, order_id)
        claim = await get_claim(session, order.id)
        ctx = {"order_id": order.id, "status": order.status}

        if claim is None or order.status not in ACTIVE_CLAIM_STATUSES:
            raise InvalidTransition(f"order {order.id} is not claimed", context=ctx)
        if worker_id is not None and claim.worker_id != worker_id:
            raise ClaimMismatch(
                f"worker {worker_id} does not hold the claim on order {order.id}",
                context={**ctx, "claimed_by": claim.worker_id},
            )

        released = (
            await session.execute(
                sa.update(Order)
                .where(
                    Order.id == order.id,
                    Order.status == OrderStatus.CLAIMED.value,
                    Order.claimed_by == claim.worker_id,
                    ~_progress_exists(order.id),
                )
                .values(
                    status=OrderStatus.QUEUED.value,
                    claimed_by=None,
                    claimed_at=None,
                    version=Order.version + 1,
                )
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        if released is None:
            has_progress = (await session.execute(sa.select(_progress_exists(order.id)))).scalar()
            if has_progress or order.status == OrderStatus.IN_PROGRESS.value:
                CLAIMS.labels("release", "refused").inc()
                logger.info("release refused: order=%s has picking progress", order.id)
                raise ReleaseRefused(
                    "picking has started on this order; the claim cannot be released",
                    context={**ctx, "claimed_by": claim.worker_id},
                )
            raise ConcurrentModification(f"order {order.id} changed during release", context=ctx)

        await session.execute(sa.delete(OrderClaim).where(OrderClaim.order_id == order.id))
        # 只“开始作业”未拣货的行回到 pending
        await session.execute(
            sa.update(OrderLine)
            .where(
                OrderLine.order_id == order.id,
                OrderLine.status == LineStatus.IN_PROGRESS.value,
                OrderLine.picked_qty == 0,
            )
            .values(status=LineStatus.PENDING.value)
            .execution_options(synchronize_session=False)
        )
        await PickingLogWriter.write(
            session,
            action=action,
            order_id=order.id,
            worker_id=claim.worker_id,
            status_before=OrderStatus.CLAIMED.value,
            status_after=OrderStatus.QUEUED.value,
            reason=reason,
        )
        CLAIMS.labels("release", "ok").inc()
        return ReleaseResult(order.id, claim.worker_id, OrderStatus.QUEUED.value)

    # ------------------------------------------------------------------
    # 其他服务使用
    # ------------------------------------------------------------------

    async def require_claim(self, session: AsyncSession, order: Order, worker_id: str) -> OrderClaim:
        """拣货动作前置：订单处于作业中，且由该作业员持有认领。"""
        worker_id = _require_worker(worker_id)
        ctx = {"order_id": order.id, "status": order.status}
        if order.status not in ACTIVE_CLAIM_STATUSES:
            raise InvalidTransition(f"order {order.id} is not being picked", context=ctx)

        claim = await get_claim(session, order.id)
        if claim is None or claim.worker_id != worker_id:
            raise ClaimMismatch(
                f"worker {worker_id} does not hold the claim on order {order.id}",
                context={**ctx, "claimed_by": claim.worker_id if claim else None},
            )
        return claim

    async def end_claim(self, session: AsyncSession, order_id: int) -> None:
        """订单完成 / 取消：移除认领行（订单上的 claimed_by 保留作记录）。"""
        await session.execute(sa.delete(OrderClaim).where(OrderClaim.order_id == int(order_id)))


def _require_worker(worker_id: str) -> str:
    wid = (worker_id or "").strip()
    if not wid:
        raise ValueError("worker_id is required")
    return wid
