"""
Extract typed tag records from raw response text.

Everything in the pipeline that needs tags goes through a TagLexer; the only
raw-text probes outside this module are the unclosed-write check and the
search-replace dry run.
"""

from __future__ import annotations

import re
from typing import Protocol

from .tags import (
    AddDependencyTag,
    DeleteTag,
    ExecuteSqlTag,
    McpToolCallTag,
    McpToolResultTag,
    RenameTag,
    SearchReplaceTag,
    Tag,
    WriteTag,
)
from .xml_escape import escape_xml_content, unescape_xml_attr


class TagLexer(Protocol):
    """Interface the pipeline uses to read tags out of a response."""

    def write_tags(self, text: str) -> list[WriteTag]: ...

    def rename_tags(self, text: str) -> list[RenameTag]: ...

    def delete_tags(self, text: str) -> list[DeleteTag]: ...

    def add_dependency_tags(self, text: str) -> list[AddDependencyTag]: ...

    def dependency_packages(self, text: str) -> list[str]: ...

    def execute_sql_tags(self, text: str) -> list[ExecuteSqlTag]: ...

    def search_replace_tags(self, text: str) -> list[SearchReplaceTag]: ...

    def chat_summary(self, text: str) -> str | None: ...

    def tags(self, text: str) -> list[Tag]: ...


def normalize_path(path: str) -> str:
    """Use forward slashes and drop a leading './'."""
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def strip_code_fence(content: str) -> str:
    """Remove a markdown fence wrapping the whole body, if present."""
    lines = content.split("\n")
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines)


def parse_attributes(raw: str) -> dict[str, str]:
    """Parse name="value" pairs from the inside of an opening tag."""
    return {
        name: unescape_xml_attr(value)
        for name, value in RegexTagLexer.ATTRIBUTE.findall(raw)
    }


class RegexTagLexer:
    """
    Default lexer for the <dyad-*> grammar.

    Bodies of write, SQL and search-replace tags are trimmed and unwrapped from
    a surrounding markdown fence. Rename and delete accept either an explicit
    closing tag or the self-closing form.
    """

    ATTRIBUTE = re.compile(r'([\w-]+)="([^"]*)"')
    WRITE = re.compile(r"<dyad-write([^>]*)>([\s\S]*?)</dyad-write>", re.IGNORECASE)
    RENAME = re.compile(
        r"<dyad-rename([^>]*?)\s*(?:/>|>[\s\S]*?</dyad-rename>)", re.IGNORECASE
    )
    DELETE = re.compile(
        r"<dyad-delete([^>]*?)\s*(?:/>|>[\s\S]*?</dyad-delete>)", re.IGNORECASE
    )
    ADD_DEPENDENCY = re.compile(
        r"<dyad-add-dependency([^>]*)>[\s\S]*?</dyad-add-dependency>", re.IGNORECASE
    )
    EXECUTE_SQL = re.compile(
        r"<dyad-execute-sql([^>]*)>([\s\S]*?)</dyad-execute-sql>", re.IGNORECASE
    )
    SEARCH_REPLACE = re.compile(
        r"<dyad-search-replace([^>]*)>([\s\S]*?)</dyad-search-replace>", re.IGNORECASE
    )
    TOOL_CALL = re.compile(
        r"<dyad-mcp-tool-call([^>]*)>([\s\S]*?)</dyad-mcp-tool-call>", re.IGNORECASE
    )
    TOOL_RESULT = re.compile(
        r"<dyad-mcp-tool-result([^>]*)>([\s\S]*?)</dyad-mcp-tool-result>", re.IGNORECASE
    )
    CHAT_SUMMARY = re.compile(r"<dyad-chat-summary>([\s\S]*?)</dyad-chat-summary>")

    def write_tags(self, text: str) -> list[WriteTag]:
        return [tag for _, tag in self._write_matches(text)]

    def rename_tags(self, text: str) -> list[RenameTag]:
        return [tag for _, tag in self._rename_matches(text)]

    def delete_tags(self, text: str) -> list[DeleteTag]:
        return [tag for _, tag in self._delete_matches(text)]

    def add_dependency_tags(self, text: str) -> list[AddDependencyTag]:
        return [tag for _, tag in self._add_dependency_matches(text)]

    def execute_sql_tags(self, text: str) -> list[ExecuteSqlTag]:
        return [tag for _, tag in self._execute_sql_matches(text)]

    def search_replace_tags(self, text: str) -> list[SearchReplaceTag]:
        return [tag for _, tag in self._search_replace_matches(text)]

    def dependency_packages(self, text: str) -> list[str]:
        """All packages across every add-dependency tag, in order."""
        packages: list[str] = []
        for tag in self.add_dependency_tags(text):
            packages.extend(tag.packages)
        return packages

    def chat_summary(self, text: str) -> str | None:
        match = self.CHAT_SUMMARY.search(text)
        if not match:
            return None
        summary = match.group(1).strip()
        return summary or None

    def tags(self, text: str) -> list[Tag]:
        """Every tag kind, in document order."""
        found: list[tuple[int, Tag]] = []
        found.extend(self._write_matches(text))
        found.extend(self._rename_matches(text))
        found.extend(self._delete_matches(text))
        found.extend(self._add_dependency_matches(text))
        found.extend(self._execute_sql_matches(text))
        found.extend(self._search_replace_matches(text))
        found.extend(self._tool_matches(text))
        found.sort(key=lambda item: item[0])
        return [tag for _, tag in found]

    def _write_matches(self, text: str) -> list[tuple[int, WriteTag]]:
        results = []
        for match in self.WRITE.finditer(text):
            attrs = parse_attributes(match.group(1))
            path = attrs.get("path")
            if not path:
                continue
            content = strip_code_fence(match.group(2).strip())
            results.append(
                (
                    match.start(),
                    WriteTag(
                        path=normalize_path(path),
                        content=content,
                        description=attrs.get("description"),
                    ),
                )
            )
        return results

    def _rename_matches(self, text: str) -> list[tuple[int, RenameTag]]:
        results = []
        for match in self.RENAME.finditer(text):
            attrs = parse_attributes(match.group(1))
            if not attrs.get("from") or not attrs.get("to"):
                continue
            results.append(
                (
                    match.start(),
                    RenameTag(
                        from_path=normalize_path(attrs["from"]),
                        to_path=normalize_path(attrs["to"]),
                    ),
                )
            )
        return results

    def _delete_matches(self, text: str) -> list[tuple[int, DeleteTag]]:
        results = []
        for match in self.DELETE.finditer(text):
            attrs = parse_attributes(match.group(1))
            if not attrs.get("path"):
                continue
            results.append((match.start(), DeleteTag(path=normalize_path(attrs["path"]))))
        return results

    def _add_dependency_matches(self, text: str) -> list[tuple[int, AddDependencyTag]]:
        results = []
        for match in self.ADD_DEPENDENCY.finditer(text):
            attrs = parse_attributes(match.group(1))
            packages = tuple(p for p in attrs.get("packages", "").split(" ") if p)
            if packages:
                results.append((match.start(), AddDependencyTag(packages=packages)))
        return results

    def _execute_sql_matches(self, text: str) -> list[tuple[int, ExecuteSqlTag]]:
        results = []
        for match in self.EXECUTE_SQL.finditer(text):
            attrs = parse_attributes(match.group(1))
            content = strip_code_fence(match.group(2).strip())
            results.append(
                (
                    match.start(),
                    ExecuteSqlTag(content=content, description=attrs.get("description")),
                )
            )
        return results

    def _search_replace_matches(self, text: str) -> list[tuple[int, SearchReplaceTag]]:
        results = []
        for match in self.SEARCH_REPLACE.finditer(text):
            attrs = parse_attributes(match.group(1))
            path = attrs.get("path")
            if not path:
                continue
            content = strip_code_fence(match.group(2).strip())
            results.append(
                (
                    match.start(),
                    SearchReplaceTag(
                        path=normalize_path(path),
                        content=content,
                        description=attrs.get("description"),
                    ),
                )
            )
        return results

    def _tool_matches(self, text: str) -> list[tuple[int, Tag]]:
        results: list[tuple[int, Tag]] = []
        for match in self.TOOL_CALL.finditer(text):
            attrs = parse_attributes(match.group(1))
            results.append(
                (
                    match.start(),
                    McpToolCallTag(
                        server=attrs.get("server", ""),
                        tool=attrs.get("tool", ""),
                        content=match.group(2).strip(),
                    ),
                )
            )
        for match in self.TOOL_RESULT.finditer(text):
            attrs = parse_attributes(match.group(1))
            results.append(
                (
                    match.start(),
                    McpToolResultTag(
                        server=attrs.get("server", ""),
                        tool=attrs.get("tool", ""),
                        content=match.group(2).strip(),
                    ),
                )
            )
        return results


def set_add_dependency_output(text: str, output: str) -> str:
    """Replace the body of every <dyad-add-dependency> tag with installer output."""
    pattern = re.compile(r"(<dyad-add-dependency[^>]*>)[\s\S]*?(</dyad-add-dependency>)", re.IGNORECASE)
    body = escape_xml_content(output)
    return pattern.sub(lambda m: f"{m.group(1)}{body}{m.group(2)}", text)


default_lexer = RegexTagLexer()


__all__ = [
    "RegexTagLexer",
    "TagLexer",
    "default_lexer",
    "normalize_path",
    "parse_attributes",
    "set_add_dependency_output",
    "strip_code_fence",
]
