# src/shoptrans/domain/diagnosis.py
"""
基于规则的错误诊断。

错误在边界处只被分类一次，得到带标签的 `Diagnosis`（`ErrorKind` + 置信度），
之后各层只根据 `ErrorKind` 分派，不再对消息做子串匹配。
规则按顺序匹配：类型规则 > 错误码规则 > 消息模式规则，首个命中即返回。
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from shoptrans.core.exceptions import ResourceNotFoundError, ShopTransError
from shoptrans.core.types import Diagnosis, ErrorKind

from .fingerprint import compute_error_fingerprint, normalize_error_message


@dataclass(frozen=True)
class _MessageRule:
    kind: ErrorKind
    pattern: re.Pattern[str]
    confidence: float
    name: str


_CODE_ALIASES: dict[str, ErrorKind] = {
    "TIMEOUT": ErrorKind.TIMEOUT,
    "ETIMEDOUT": ErrorKind.TIMEOUT,
    "RATE_LIMIT": ErrorKind.RATE_LIMIT,
    "THROTTLED": ErrorKind.RATE_LIMIT,
    "429": ErrorKind.RATE_LIMIT,
    "NETWORK": ErrorKind.NETWORK,
    "NETWORK_ERROR": ErrorKind.NETWORK,
    "ECONNRESET": ErrorKind.NETWORK,
    "ECONNREFUSED": ErrorKind.NETWORK,
    "QUALITY_VALIDATION": ErrorKind.QUALITY_VALIDATION,
    "QUALITY_CHECK_FAILED": ErrorKind.QUALITY_VALIDATION,
    "HTML_STRUCTURE": ErrorKind.HTML_STRUCTURE,
    "HTML_STRUCTURE_ERROR": ErrorKind.HTML_STRUCTURE,
    "CONTENT_TOO_LONG": ErrorKind.CONTENT_TOO_LONG,
    "RESOURCE_NOT_FOUND": ErrorKind.RESOURCE_NOT_FOUND,
    "NOT_FOUND": ErrorKind.RESOURCE_NOT_FOUND,
    "404": ErrorKind.RESOURCE_NOT_FOUND,
}

_MESSAGE_RULES: tuple[_MessageRule, ...] = (
    _MessageRule(
        ErrorKind.RATE_LIMIT,
        re.compile(r"\brate[\s_-]?limit|\btoo many requests\b|\b429\b|\bthrottl", re.I),
        0.95,
        "message:rate_limit",
    ),
    _MessageRule(
        ErrorKind.TIMEOUT,
        re.compile(r"\btime[\s_-]?out\b|\btimed out\b|\bdeadline exceeded\b", re.I),
        0.9,
        "message:timeout",
    ),
    _MessageRule(
        ErrorKind.CONTENT_TOO_LONG,
        re.compile(
            r"\btoo long\b|\bcontent length\b|\bmaximum context\b|\btoken limit\b", re.I
        ),
        0.95,
        "message:content_too_long",
    ),
    _MessageRule(
        ErrorKind.RESOURCE_NOT_FOUND,
        re.compile(r"\bnot found\b|\b404\b|\bdoes not exist\b", re.I),
        0.9,
        "message:not_found",
    ),
    _MessageRule(
        ErrorKind.HTML_STRUCTURE,
        re.compile(r"\bhtml\b|\bunclosed\b|\bmismatched tag|\bmalformed markup\b", re.I),
        0.9,
        "message:html",
    ),
    _MessageRule(
        ErrorKind.QUALITY_VALIDATION,
        re.compile(r"\bquality\b|\bvalidation\b", re.I),
        0.8,
        "message:quality",
    ),
    _MessageRule(
        ErrorKind.NETWORK,
        re.compile(
            r"\bnetwork\b|\bconnection (?:reset|refused|error|closed)\b|\bdns\b", re.I
        ),
        0.85,
        "message:network",
    ),
)

_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.NETWORK,
        ErrorKind.QUALITY_VALIDATION,
        ErrorKind.HTML_STRUCTURE,
        ErrorKind.CONTENT_TOO_LONG,
    }
)


def error_code_of(error: BaseException | str) -> str:
    if isinstance(error, ShopTransError):
        return error.code
    if isinstance(error, str):
        return "UNKNOWN"
    return type(error).__name__


def _classify_by_type(error: BaseException) -> tuple[ErrorKind, float, str] | None:
    if isinstance(error, ResourceNotFoundError):
        return ErrorKind.RESOURCE_NOT_FOUND, 1.0, "type:resource_not_found"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT, 0.95, "type:timeout"
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK, 0.9, "type:connection"
    return None


def classify_error(error: BaseException | str, code: str | None = None) -> Diagnosis:
    """把异常或错误消息分类为一个 `Diagnosis`。"""
    message = str(error) if not isinstance(error, str) else error
    code = (code or error_code_of(error)).upper()

    kind, confidence, rule = ErrorKind.UNKNOWN, 0.5, None
    matched = _classify_by_type(error) if isinstance(error, BaseException) else None
    if matched is None and code in _CODE_ALIASES:
        matched = (_CODE_ALIASES[code], 1.0, f"code:{code}")
    if matched is None:
        for candidate in _MESSAGE_RULES:
            if candidate.pattern.search(message):
                matched = (candidate.kind, candidate.confidence, candidate.name)
                break
    if matched is not None:
        kind, confidence, rule = matched

    return Diagnosis(
        kind=kind,
        code=code,
        message=message,
        normalized_message=normalize_error_message(message),
        fingerprint=compute_error_fingerprint(code, message),
        confidence=confidence,
        retryable=kind in _RETRYABLE_KINDS,
        matched_rule=rule,
    )
