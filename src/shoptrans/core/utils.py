# src/shoptrans/core/utils.py
"""通用工具函数：时间、语言代码校验、原因码本地化。"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

import langcodes


def utcnow() -> datetime:
    """返回带时区信息的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


def validate_lang_codes(lang_codes: Iterable[str]) -> list[str]:
    """校验并规范化语言代码列表，遇到非法代码时抛出 ValueError。"""
    normalized: list[str] = []
    for code in lang_codes:
        if not code or not langcodes.tag_is_valid(code):
            raise ValueError(f"提供的语言代码 '{code}' 不是一个有效的 BCP 47 标签。")
        if code not in normalized:
            normalized.append(code)
    return normalized


_REASON_MESSAGES: dict[str, dict[str, str]] = {
    "zh-CN": {
        "NEW": "尚无译文，需要翻译",
        "UP_TO_DATE": "内容未变化且译文已同步，跳过",
        "STALE": "源内容已变化，需要重新翻译",
        "LOW_QUALITY": "译文质量低于阈值，重新翻译",
        "QUALITY_CAP_REACHED": "质量重译已达上限，跳过",
        "RETRY_FAILED": "上次翻译失败，可重试",
        "RETRY_LIMIT_REACHED": "重试次数已耗尽，跳过",
        "UNSYNCED": "译文尚未同步，重新翻译",
        "USER_REQUESTED": "用户手动请求翻译",
        "FORCE_RELATED": "关联内容强制翻译",
        "EMPTY_CONTENT": "没有可翻译的内容，跳过",
        "LANGUAGE_EXCLUDED": "目标语言已被排除，跳过",
        "RESOURCE_TYPE_EXCLUDED": "资源类型已被排除，跳过",
        "RESOURCE_NOT_FOUND": "资源不存在",
        "EVALUATION_ERROR": "评估失败，默认执行翻译",
        "EXCEEDED_RETRY_LIMIT": "自动恢复次数超限，需要人工处理",
        "INCOMPLETE_CONTENT": "内容不完整，未更新指纹",
    },
    "en": {
        "NEW": "No translation yet",
        "UP_TO_DATE": "Unchanged and synced, skipped",
        "STALE": "Source content changed",
        "LOW_QUALITY": "Translation quality below threshold",
        "QUALITY_CAP_REACHED": "Quality retry limit reached, skipped",
        "RETRY_FAILED": "Previous attempt failed, retrying",
        "RETRY_LIMIT_REACHED": "Retries exhausted, skipped",
        "UNSYNCED": "Translation not synced yet",
        "USER_REQUESTED": "Requested by user",
        "FORCE_RELATED": "Forced by related content",
        "EMPTY_CONTENT": "Nothing to translate, skipped",
        "LANGUAGE_EXCLUDED": "Target language excluded, skipped",
        "RESOURCE_TYPE_EXCLUDED": "Resource type excluded, skipped",
        "RESOURCE_NOT_FOUND": "Resource not found",
        "EVALUATION_ERROR": "Evaluation failed, translating by default",
        "EXCEEDED_RETRY_LIMIT": "Automatic recovery limit exceeded, manual action required",
        "INCOMPLETE_CONTENT": "Content incomplete, fingerprint not updated",
    },
}


def describe_reason(code: str, locale: str = "zh-CN") -> str:
    """把原因码翻译成用户可读的本地化文本；未知语言回退到英文。"""
    messages = _REASON_MESSAGES.get(locale)
    if messages is None:
        language = (
            langcodes.Language.get(locale).language
            if langcodes.tag_is_valid(locale)
            else None
        )
        messages = _REASON_MESSAGES["zh-CN" if language == "zh" else "en"]
    return messages.get(code, code)
