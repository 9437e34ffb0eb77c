"""
Typed records for the directives a model embeds in its response.

Tags are view objects: they are recomputed from the response text every time
they are needed and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class WriteTag:
    """Full-file write: <dyad-write path=".." description="..">content</dyad-write>."""

    path: str
    content: str
    description: str | None = None


@dataclass(frozen=True)
class RenameTag:
    """<dyad-rename from=".." to=".."></dyad-rename>."""

    from_path: str
    to_path: str


@dataclass(frozen=True)
class DeleteTag:
    """<dyad-delete path=".."></dyad-delete>."""

    path: str


@dataclass(frozen=True)
class AddDependencyTag:
    """<dyad-add-dependency packages="a b"></dyad-add-dependency>."""

    packages: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExecuteSqlTag:
    """<dyad-execute-sql description="..">SQL</dyad-execute-sql>."""

    content: str
    description: str | None = None


@dataclass(frozen=True)
class SearchReplaceTag:
    """<dyad-search-replace path="..">SEARCH/REPLACE blocks</dyad-search-replace>."""

    path: str
    content: str
    description: str | None = None


@dataclass(frozen=True)
class McpToolCallTag:
    """Rendered tool invocation."""

    server: str
    tool: str
    content: str


@dataclass(frozen=True)
class McpToolResultTag:
    """Rendered tool output."""

    server: str
    tool: str
    content: str


Tag = Union[
    WriteTag,
    RenameTag,
    DeleteTag,
    AddDependencyTag,
    ExecuteSqlTag,
    SearchReplaceTag,
    McpToolCallTag,
    McpToolResultTag,
]


__all__ = [
    "AddDependencyTag",
    "DeleteTag",
    "ExecuteSqlTag",
    "McpToolCallTag",
    "McpToolResultTag",
    "RenameTag",
    "SearchReplaceTag",
    "Tag",
    "WriteTag",
]
