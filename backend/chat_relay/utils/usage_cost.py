"""计费字段提取工具

网关返回的 usage 结构不固定，费用可能出现在多个字段上；按 COST_FIELDS
顺序取第一个可解析为数值的字段。SQL 聚合（后台列表 total_cost）使用同一顺序。
"""
from __future__ import annotations

import json
import math
from typing import Any, Optional

COST_FIELDS = ("total", "total_cost", "cost", "subtotal")


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_usage(raw: Any) -> Optional[Any]:
    """数据库中的 usage 文本反序列化；非法 JSON 返回 None"""
    if raw is None:
        return None
    if not isinstance(raw, str):
        return raw
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def serialize_usage(usage: Any) -> Optional[str]:
    if usage is None:
        return None
    return json.dumps(usage, ensure_ascii=False)


def extract_cost(usage: Any) -> Optional[float]:
    """取单条消息费用，找不到可用字段返回 None"""
    if isinstance(usage, str):
        usage = parse_usage(usage)
    if not isinstance(usage, dict):
        return None
    for field in COST_FIELDS:
        number = _to_number(usage.get(field))
        if number is not None:
            return number
    return None
