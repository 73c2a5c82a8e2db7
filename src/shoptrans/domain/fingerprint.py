# src/shoptrans/domain/fingerprint.py
"""
内容指纹与错误指纹。

- 内容指纹：对规范化后的可翻译字段集合按 JCS 序列化后做 sha256，与字段顺序无关。
- 错误指纹：对 错误码 + 归一化消息 做 sha256，用于去重与恢复次数统计。
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from collections.abc import Iterable, Mapping
from typing import Any

import rfc8785

from shoptrans.core.exceptions import CanonicalizationError

# 预编译正则表达式以提高性能
RE_SHOPIFY_GID = re.compile(r"gid://shopify/\w+/\d+")
RE_UUID = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
RE_TIMESTAMP = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?")
RE_IP = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
RE_PORT = re.compile(r":\d{4,5}\b")
RE_LONG_ID = re.compile(r"\b\d{5,}\b")
RE_HANDLE = re.compile(r"handle-[\w-]+")
RE_FILE_PATH = re.compile(r"/[\w/.-]+\.(?:py|js|jsx|ts|tsx)\b")
RE_LINE_COL = re.compile(r":\d+:\d+")
RE_WHITESPACE = re.compile(r"\s+")

# 列表中的元素若全部为带 key 的映射，则视为无序字段集合
_FIELD_KEY_NAMES = ("key", "name")


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value).strip()
    if isinstance(value, Mapping):
        normalized = {str(k): _normalize_value(v) for k, v in value.items()}
        return {k: v for k, v in normalized.items() if v not in (None, "", [], {})}
    if isinstance(value, (list, tuple)):
        items = [_normalize_value(v) for v in value]
        items = [v for v in items if v not in (None, "", [], {})]
        key_name = _keyed_by(items)
        if key_name is not None:
            items.sort(key=lambda item: str(item[key_name]))
        return items
    return value


def _keyed_by(items: list[Any]) -> str | None:
    if not items or not all(isinstance(i, dict) for i in items):
        return None
    for key_name in _FIELD_KEY_NAMES:
        if all(key_name in item for item in items):
            return key_name
    return None


def normalize_content(content: Mapping[str, Any]) -> dict[str, Any]:
    """把可翻译字段规范化为与顺序、首尾空白和空值无关的结构。"""
    return _normalize_value(content)


def compute_content_fingerprint(content: Mapping[str, Any]) -> str:
    """计算内容指纹：规范化字段的 RFC 8785 (JCS) 字节串的 sha256 十六进制。"""
    try:
        canonical = rfc8785.dumps(normalize_content(content))
    except rfc8785.CanonicalizationError as e:
        raise CanonicalizationError(f"内容无法规范化: {e}") from e
    return hashlib.sha256(canonical).hexdigest()


def missing_required_fields(
    content: Mapping[str, Any], required_fields: Iterable[str]
) -> list[str]:
    """返回缺失或为空白的必需字段列表。"""
    missing: list[str] = []
    for name in required_fields:
        value = content.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def has_translatable_content(content: Mapping[str, Any]) -> bool:
    return bool(normalize_content(content))


def normalize_error_message(message: str | None) -> str:
    """移除错误消息中的动态部分（ID、时间戳、地址等）。"""
    if not message:
        return ""
    text = RE_SHOPIFY_GID.sub("gid://shopify/[TYPE]/[ID]", message)
    text = RE_UUID.sub("[UUID]", text)
    text = RE_TIMESTAMP.sub("[TIMESTAMP]", text)
    text = RE_IP.sub("[IP]", text)
    text = RE_PORT.sub(":[PORT]", text)
    text = RE_LONG_ID.sub("[ID]", text)
    text = RE_HANDLE.sub("handle-[DYNAMIC]", text)
    text = RE_FILE_PATH.sub("/[FILE]", text)
    text = RE_LINE_COL.sub(":[LINE]:[COL]", text)
    return RE_WHITESPACE.sub(" ", text).strip()


def compute_error_fingerprint(code: str, message: str | None) -> str:
    """错误指纹 = sha256(code|归一化消息) 的前 16 位。"""
    payload = f"{code}|{normalize_error_message(message)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
