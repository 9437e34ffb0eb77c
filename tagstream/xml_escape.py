"""
Escaping helpers for the XML-like tag grammar.
"""

from __future__ import annotations

import re

# FULLWIDTH LESS-THAN / GREATER-THAN SIGN
LOOKALIKE_LT = "＜"
LOOKALIKE_GT = "＞"

_OPEN_DYAD_TAG = re.compile(r'<dyad-[\w-]*(?:[^>"]|"[^"]*")*>')
_QUOTED_ATTR = re.compile(r'="([^"]*)"')
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")
_PROBLEM_REPORT_BLOCK = re.compile(r"<dyad-problem-report[^>]*>[\s\S]*?</dyad-problem-report>")


def escape_xml_attr(value: str) -> str:
    """Escape a value for use inside a double-quoted attribute."""
    return (
        value.replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def unescape_xml_attr(value: str) -> str:
    """Reverse escape_xml_attr. &amp; is decoded last."""
    return (
        value.replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&quot;", '"')
        .replace("&amp;", "&")
    )


def escape_xml_content(value: str) -> str:
    """Escape element text content."""
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def unescape_xml_content(value: str) -> str:
    """Reverse escape_xml_content."""
    return value.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")


def escape_dyad_tags(text: str) -> str:
    """
    Replace literal tag openers with a look-alike character.

    Reasoning text and tool payloads may quote our own tags; left as-is they
    would be picked up by the markdown renderer and by the tag lexer.
    """
    return text.replace("<dyad", f"{LOOKALIKE_LT}dyad").replace(
        "</dyad", f"{LOOKALIKE_LT}/dyad"
    )


def clean_full_response(text: str) -> str:
    """
    Normalize a response after each chunk.

    Angle brackets inside quoted attribute values of <dyad-...> opening tags
    (e.g. description="add <Button>") are swapped for look-alikes so the tag
    boundary stays unambiguous. Idempotent.
    """

    def _clean_attr(attr_match: re.Match[str]) -> str:
        value = attr_match.group(1)
        if "<" not in value and ">" not in value:
            return attr_match.group(0)
        cleaned = value.replace("<", LOOKALIKE_LT).replace(">", LOOKALIKE_GT)
        return f'="{cleaned}"'

    def _clean_tag(tag_match: re.Match[str]) -> str:
        return _QUOTED_ATTR.sub(_clean_attr, tag_match.group(0))

    if "<dyad-" not in text:
        return text
    return _OPEN_DYAD_TAG.sub(_clean_tag, text)


def render_output_block(kind: str, message: str, body: str = "") -> str:
    """<dyad-output type="warning|error" message="..">body</dyad-output>"""
    return f'<dyad-output type="{kind}" message="{escape_xml_attr(message)}">{escape_xml_content(body)}</dyad-output>'


def remove_thinking_tags(text: str) -> str:
    return _THINK_BLOCK.sub("", text).strip()


def remove_problem_report_tags(text: str) -> str:
    return _PROBLEM_REPORT_BLOCK.sub("", text).strip()


def remove_non_essential_tags(text: str) -> str:
    """Strip thinking and problem-report blocks before replaying a turn to the model."""
    return remove_problem_report_tags(remove_thinking_tags(text))


__all__ = [
    "LOOKALIKE_GT",
    "LOOKALIKE_LT",
    "clean_full_response",
    "escape_dyad_tags",
    "escape_xml_attr",
    "escape_xml_content",
    "remove_non_essential_tags",
    "remove_problem_report_tags",
    "render_output_block",
    "remove_thinking_tags",
    "unescape_xml_attr",
    "unescape_xml_content",
]
