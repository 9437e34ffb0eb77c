"""
Provider-neutral stream events.

Model clients translate their SDK's streaming output into these records; the
chunk processor consumes nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class TextDelta:
    """Visible assistant text."""

    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    """Model reasoning, rendered inside <think> markers."""

    text: str


@dataclass(frozen=True)
class ToolCall:
    """
    A tool invocation.

    tool_name is the qualified key "{server}__{tool}".
    """

    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Output returned for a tool invocation."""

    tool_name: str
    output: Any = None


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCall, ToolResult]

TOOL_KEY_SEPARATOR = "__"


def parse_mcp_tool_key(key: str) -> tuple[str, str]:
    """
    Split a qualified tool key into (server, tool) on the last separator.

    Server names may themselves contain the separator, tool names may not.
    """
    index = key.rfind(TOOL_KEY_SEPARATOR)
    if index < 0:
        return "", key
    return key[:index], key[index + len(TOOL_KEY_SEPARATOR):]


__all__ = [
    "ReasoningDelta",
    "StreamEvent",
    "TextDelta",
    "ToolCall",
    "ToolResult",
    "parse_mcp_tool_key",
]
