# tests/_problem.py
from __future__ import annotations

from typing import Any, Dict

import httpx


def assert_problem(r: httpx.Response, status: int, error_code: str) -> Dict[str, Any]:
    """
    断言错误响应为统一 Problem 形状：
    顶层 error_code / message / http_status / trace_id，context 带请求 path。
    """
    assert r.status_code == status, r.text
    body = r.json()
    assert body["error_code"] == error_code, body
    assert body["http_status"] == status, body
    assert isinstance(body.get("message"), str) and body["message"], body
    assert str(body.get("trace_id", "")).startswith("t_"), body
    assert body.get("context", {}).get("path"), body
    return body
