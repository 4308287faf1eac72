"""Checksum 工具 -- 规范化 + SHA-256

规范化规则：排除 checksum 字段与值为 None 的字段，按字段名排序，
每个字段渲染为 `name:<JSON 值>`，以 `|` 连接。
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

CHECKSUM_FIELD = "checksum"
FIELD_SEPARATOR = "|"


def sha256_hex(data: str) -> str:
    """计算字符串的 SHA-256 十六进制摘要"""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def canonicalize(record: Mapping[str, Any]) -> str:
    """将记录规范化为确定性的字符串"""
    parts = []
    for key in sorted(record):
        value = record[key]
        if key == CHECKSUM_FIELD or value is None:
            continue
        encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
        parts.append(f"{key}:{encoded}")
    return FIELD_SEPARATOR.join(parts)


def compute_checksum(record: Mapping[str, Any]) -> str:
    return sha256_hex(canonicalize(record))


def verify_checksum(record: Mapping[str, Any], expected: str) -> bool:
    """重新计算 checksum 并与 expected 比较"""
    return hmac.compare_digest(compute_checksum(record), expected)


def short_checksum(checksum: str, length: int = 8) -> str:
    return checksum[:length]
