# src/shoptrans/domain/priority.py
"""任务优先级：资源类型权重 + 调用方紧急程度。"""

from __future__ import annotations

from shoptrans.core.types import Urgency

# 主目录内容 > 正文内容 > 导航/主题资源
RESOURCE_TYPE_WEIGHTS: dict[str, int] = {
    "PRODUCT": 10,
    "COLLECTION": 8,
    "PAGE": 6,
    "ARTICLE": 5,
    "BLOG": 5,
    "SHOP_POLICY": 5,
    "MENU": 4,
    "LINK": 4,
    "ONLINE_STORE_THEME": 4,
}
DEFAULT_TYPE_WEIGHT = 3

URGENCY_BOOST: dict[Urgency, int] = {
    Urgency.INTERACTIVE: 20,
    Urgency.RECOVERY: 5,
    Urgency.BACKGROUND: 0,
}

LONG_FORM_TYPES = frozenset({"ARTICLE", "PAGE", "BLOG", "SHOP_POLICY"})


def type_weight(resource_type: str) -> int:
    return RESOURCE_TYPE_WEIGHTS.get(resource_type.upper(), DEFAULT_TYPE_WEIGHT)


def compute_priority(resource_type: str, urgency: Urgency) -> int:
    return type_weight(resource_type) + URGENCY_BOOST[urgency]


def is_long_form(resource_type: str, content_length: int, threshold: int) -> bool:
    """正文类资源或内容长度超过阈值，视为长内容。"""
    return resource_type.upper() in LONG_FORM_TYPES or content_length >= threshold
