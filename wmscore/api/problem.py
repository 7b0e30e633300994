# wmscore/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from fastapi import HTTPException

from wmscore.services import errors


class ProblemDetail(TypedDict, total=False):
    # 必填
    type: str  # validation|state|shortage|claim
    # 可选：用于行内定位
    path: str  # e.g. lines[2].qty
    reason: str
    order_id: int
    line_id: int
    item_id: int
    bin_id: int
    available: int
    reserved: int


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    p = Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        trace_id=trace_id,
    )
    return p.to_dict()


def raise_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
) -> None:
    raise HTTPException(
        status_code=int(status_code),
        detail=make_problem(
            status_code=int(status_code),
            error_code=error_code,
            message=message,
            context=context,
            details=details,
        ),
    )


def raise_422(error_code: str, message: str, *, details: Optional[Sequence[ProblemDetail]] = None) -> None:
    raise_problem(status_code=422, error_code=error_code, message=message, details=details)


# 领域错误 → HTTP 状态码；未列出的 WmsError 一律 409
_STATUS_BY_ERROR: Dict[type, int] = {
    errors.NotFound: 404,
    errors.ClaimMismatch: 403,
    errors.InsufficientStock: 409,
    errors.AlreadyClaimed: 409,
    errors.ReleaseRefused: 409,
    errors.ConcurrentModification: 409,
    errors.InvalidTransition: 409,
    errors.OrderOnHold: 409,
}


def status_for_error(exc: errors.WmsError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 409


def problem_from_error(exc: errors.WmsError, *, trace_id: Optional[str] = None) -> Dict[str, Any]:
    """领域错误 → Problem：error_code 直接取异常类上的稳定 code。"""
    return make_problem(
        status_code=status_for_error(exc),
        error_code=exc.code,
        message=exc.message,
        context=exc.context or None,
        trace_id=trace_id,
    )
