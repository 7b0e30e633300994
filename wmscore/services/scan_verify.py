# wmscore/services/scan_verify.py
from __future__ import annotations

import re
from dataclasses import dataclass

MATCH = "MATCH"
WRONG_ITEM = "WRONG_ITEM"
INCOMPLETE = "INCOMPLETE"

# 列表视图扫码：输入达到此长度仍匹配不到任何待拣行，判定为扫错
LIST_SCAN_MIN_LEN = 5

_SEPARATORS = re.compile(r"[\s\-_./]+")
_PREFIX = re.compile(r"^\s*(SKU|ITEM)\s*:\s*", re.I)


@dataclass(frozen=True)
class ScanVerdict:
    """
    扫码校验结果：
    - result：MATCH / WRONG_ITEM / INCOMPLETE
    - scanned / expected：归一化后的比较值
    """

    result: str
    scanned: str
    expected: str

    @property
    def matched(self) -> bool:
        return self.result == MATCH


def normalize_code(code: str) -> str:
    """
    条码 / SKU 归一化：
      1) 去掉 "SKU:" / "ITEM:" 前缀
      2) casefold
      3) 去掉空白与分隔符（- _ . /）
    """
    s = _PREFIX.sub("", code or "")
    return _SEPARATORS.sub("", s.casefold())


def verify_scan(code: str, sku: str) -> ScanVerdict:
    """
    与期望 SKU 比对：
      - 归一化后相等 → MATCH
      - 不相等且长度 >= SKU 长度 → WRONG_ITEM（报警，不改状态）
      - 更短 → INCOMPLETE（扫码枪仍在输入，忽略）
    """
    scanned = normalize_code(code)
    expected = normalize_code(sku)
    if scanned and scanned == expected:
        return ScanVerdict(MATCH, scanned, expected)
    if scanned and len(scanned) >= len(expected):
        return ScanVerdict(WRONG_ITEM, scanned, expected)
    return ScanVerdict(INCOMPLETE, scanned, expected)
