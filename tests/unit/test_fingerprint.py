# tests/unit/test_fingerprint.py
"""
针对 `shoptrans.domain.fingerprint` 的单元测试。

验证内容指纹对字段顺序、首尾空白与空值不敏感，
以及错误消息归一化会抹掉动态部分。
"""

import hashlib
from datetime import datetime

import pytest
import rfc8785

from shoptrans.core.exceptions import CanonicalizationError
from shoptrans.domain.fingerprint import (
    compute_content_fingerprint,
    compute_error_fingerprint,
    has_translatable_content,
    missing_required_fields,
    normalize_content,
    normalize_error_message,
)


def test_fingerprint_is_independent_of_field_order() -> None:
    a = {"title": "Shirt", "body_html": "<p>Soft</p>", "seo": {"a": "1", "b": "2"}}
    b = {"seo": {"b": "2", "a": "1"}, "body_html": "<p>Soft</p>", "title": "Shirt"}
    assert compute_content_fingerprint(a) == compute_content_fingerprint(b)


def test_fingerprint_ignores_surrounding_whitespace_and_empty_values() -> None:
    a = {"title": "  Shirt \n", "description": "", "tags": []}
    b = {"title": "Shirt"}
    assert compute_content_fingerprint(a) == compute_content_fingerprint(b)


def test_fingerprint_sorts_keyed_lists() -> None:
    """带 key 的字段列表被视为无序集合。"""
    a = {"metafields": [{"key": "b", "value": "2"}, {"key": "a", "value": "1"}]}
    b = {"metafields": [{"key": "a", "value": "1"}, {"key": "b", "value": "2"}]}
    assert compute_content_fingerprint(a) == compute_content_fingerprint(b)


def test_fingerprint_keeps_order_of_plain_lists() -> None:
    a = {"options": ["S", "M", "L"]}
    b = {"options": ["L", "M", "S"]}
    assert compute_content_fingerprint(a) != compute_content_fingerprint(b)


def test_fingerprint_changes_with_content() -> None:
    assert compute_content_fingerprint({"title": "A"}) != compute_content_fingerprint(
        {"title": "B"}
    )


def test_fingerprint_is_hex_sha256() -> None:
    fp = compute_content_fingerprint({"title": "A"})
    assert len(fp) == 64
    int(fp, 16)


def test_fingerprint_hashes_jcs_bytes_of_normalized_content() -> None:
    content = {"title": " Shirt ", "seo": {"b": "2", "a": "1"}, "count": 3}
    expected = hashlib.sha256(
        rfc8785.dumps({"count": 3, "seo": {"a": "1", "b": "2"}, "title": "Shirt"})
    ).hexdigest()
    assert compute_content_fingerprint(content) == expected


def test_fingerprint_rejects_non_json_values() -> None:
    with pytest.raises(CanonicalizationError):
        compute_content_fingerprint({"title": "Shirt", "published_at": datetime(2024, 1, 1)})


def test_normalize_content_applies_unicode_nfc() -> None:
    decomposed = "Cafe\u0301"
    assert normalize_content({"title": decomposed}) == {"title": "Caf\u00e9"}


@pytest.mark.parametrize(
    "content, expected",
    [
        ({"title": "Shirt"}, True),
        ({"title": "   "}, False),
        ({}, False),
        ({"seo": {"title": ""}}, False),
    ],
)
def test_has_translatable_content(content: dict, expected: bool) -> None:
    assert has_translatable_content(content) is expected


def test_missing_required_fields_treats_blank_as_missing() -> None:
    content = {"title": "  ", "body_html": "<p>x</p>"}
    assert missing_required_fields(content, ["title", "body_html", "handle"]) == [
        "title",
        "handle",
    ]


def test_normalize_error_message_strips_dynamic_parts() -> None:
    message = (
        "Timeout for gid://shopify/Product/123456 at 2024-05-01T10:00:00Z "
        "from 10.0.0.1 request 550e8400-e29b-41d4-a716-446655440000"
    )
    normalized = normalize_error_message(message)
    assert "123456" not in normalized
    assert "gid://shopify/[TYPE]/[ID]" in normalized
    assert "[TIMESTAMP]" in normalized
    assert "[IP]" in normalized
    assert "[UUID]" in normalized


def test_normalize_error_message_handles_empty() -> None:
    assert normalize_error_message(None) == ""
    assert normalize_error_message("") == ""


def test_error_fingerprint_groups_messages_differing_only_in_ids() -> None:
    a = compute_error_fingerprint("TIMEOUT", "request 98765 timed out")
    b = compute_error_fingerprint("TIMEOUT", "request 12345 timed out")
    assert a == b
    assert len(a) == 16


def test_error_fingerprint_depends_on_code() -> None:
    assert compute_error_fingerprint("TIMEOUT", "x") != compute_error_fingerprint(
        "NETWORK", "x"
    )
