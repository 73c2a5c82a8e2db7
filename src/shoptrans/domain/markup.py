# src/shoptrans/domain/markup.py
"""
恢复策略用到的内容变换：标签配平（markup repair）与长内容切分。
这里只做结构层面的修复，不涉及清洗规则。
"""

from __future__ import annotations

import re

import structlog
from lxml import etree
from lxml import html as lxml_html

logger = structlog.get_logger(__name__)

RE_HTML_TAG = re.compile(r"</?[a-zA-Z][a-zA-Z0-9]*(?:\s[^>]*)?/?>")
RE_PARAGRAPH_BREAK = re.compile(r"(?<=</p>)|(?<=</div>)|(?<=\n\n)")
RE_SENTENCE_END = re.compile(r"(?<=[.!?。！？])\s+")

# 片段解析时套上的临时容器，序列化后再剥掉
_WRAPPER = "div"
_OPEN, _CLOSE = f"<{_WRAPPER}>", f"</{_WRAPPER}>"


def looks_like_html(text: str) -> bool:
    return bool(RE_HTML_TAG.search(text))


def balance_html(text: str) -> str:
    """
    用 libxml2 的容错 HTML 解析器重建片段：未闭合的标签被补齐，孤立的结束标签被丢弃。
    非 HTML 文本原样返回。
    """
    if not looks_like_html(text):
        return text
    parser = lxml_html.HTMLParser(recover=True, remove_comments=False)
    try:
        container = lxml_html.fragment_fromstring(
            text, create_parent=_WRAPPER, parser=parser
        )
    except etree.ParserError as e:
        logger.warning("标签配平失败，保留原文", error=str(e))
        return text
    rendered = lxml_html.tostring(container, encoding="unicode", method="html")
    return rendered[len(_OPEN) : -len(_CLOSE)]


def repair_markup_fields(fields: dict[str, object]) -> tuple[dict[str, object], list[str]]:
    """对所有字符串字段做标签配平，返回 (新字段, 被修改的字段名)。"""
    repaired: dict[str, object] = {}
    changed: list[str] = []
    for name, value in fields.items():
        if isinstance(value, str):
            fixed = balance_html(value)
            if fixed != value:
                changed.append(name)
            repaired[name] = fixed
        else:
            repaired[name] = value
    return repaired, changed


def split_text(text: str, max_chars: int) -> list[str]:
    """
    把长文本切分为不超过 `max_chars` 的片段。

    优先在段落边界切分，其次在句子边界；单句仍超长时按字符硬切。
    """
    if len(text) <= max_chars:
        return [text]

    segments: list[str] = []
    current = ""
    for block in _pieces(text, max_chars):
        if current and len(current) + len(block) > max_chars:
            segments.append(current)
            current = ""
        current += block
    if current:
        segments.append(current)
    return segments


def _pieces(text: str, max_chars: int) -> list[str]:
    pieces: list[str] = []
    for paragraph in filter(None, RE_PARAGRAPH_BREAK.split(text)):
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        for sentence in filter(None, RE_SENTENCE_END.split(paragraph)):
            sentence = sentence if sentence.endswith(" ") else sentence + " "
            while len(sentence) > max_chars:
                pieces.append(sentence[:max_chars])
                sentence = sentence[max_chars:]
            pieces.append(sentence)
    return pieces


def split_long_fields(
    fields: dict[str, object], max_chars: int
) -> dict[str, list[str]]:
    """返回需要切分的字段及其片段；无需切分的字段不出现在结果中。"""
    return {
        name: split_text(value, max_chars)
        for name, value in fields.items()
        if isinstance(value, str) and len(value) > max_chars
    }
