# tests/unit/test_markup.py
"""标签配平与长文本切分。"""

from shoptrans.domain.markup import (
    balance_html,
    looks_like_html,
    repair_markup_fields,
    split_long_fields,
    split_text,
)


def test_plain_text_is_returned_unchanged() -> None:
    assert looks_like_html("no tags here") is False
    assert balance_html("no tags here") == "no tags here"


def test_unclosed_tags_are_closed() -> None:
    assert balance_html("<div><p>Hello") == "<div><p>Hello</p></div>"


def test_orphan_end_tags_are_dropped() -> None:
    assert balance_html("<p>Hello</p></span>") == "<p>Hello</p>"


def test_mismatched_inline_tag_is_closed_before_its_parent() -> None:
    assert balance_html("<p>Soft <b>cotton</p>") == "<p>Soft <b>cotton</b></p>"


def test_leading_text_is_kept() -> None:
    assert balance_html("Intro <em>note") == "Intro <em>note</em>"


def test_void_elements_need_no_closing_tag() -> None:
    assert balance_html("<p>a<br>b</p>") == "<p>a<br>b</p>"


def test_well_formed_html_is_stable() -> None:
    html = '<p class="lead">Hi <strong>there</strong></p>'
    assert balance_html(html) == html


def test_repair_markup_fields_reports_changed_fields() -> None:
    fields = {"title": "Shirt", "body_html": "<p>Soft", "count": 3}
    repaired, changed = repair_markup_fields(fields)
    assert changed == ["body_html"]
    assert repaired["body_html"] == "<p>Soft</p>"
    assert repaired["title"] == "Shirt"
    assert repaired["count"] == 3


def test_short_text_is_not_split() -> None:
    assert split_text("short", 100) == ["short"]


def test_split_prefers_paragraph_boundaries() -> None:
    text = "<p>" + "a" * 80 + "</p>" + "<p>" + "b" * 80 + "</p>"
    segments = split_text(text, 100)
    assert len(segments) == 2
    assert segments[0].endswith("</p>")
    assert "".join(segments) == text


def test_split_falls_back_to_sentences_and_hard_cuts() -> None:
    text = "First sentence here. " * 10 + "x" * 250
    segments = split_text(text, 100)
    assert all(len(s) <= 100 for s in segments)
    assert len(segments) > 3


def test_split_long_fields_only_returns_oversized_strings() -> None:
    fields = {"title": "short", "body_html": "word. " * 50, "count": 1}
    result = split_long_fields(fields, 100)
    assert list(result) == ["body_html"]
    assert all(len(s) <= 100 for s in result["body_html"])
