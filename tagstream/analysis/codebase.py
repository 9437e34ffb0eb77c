"""
Render the overlay as a codebase prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..xml_escape import escape_xml_attr
from .virtual_fs import VirtualFileSystem

CODEBASE_PROMPT_PREFIX = "This is my codebase."
DEFAULT_MAX_FILE_BYTES = 100_000

TEXT_EXTENSIONS = frozenset(
    {
        ".py", ".js", ".jsx", ".ts", ".tsx", ".json", ".md", ".txt", ".html",
        ".css", ".scss", ".sql", ".toml", ".yaml", ".yml", ".sh", ".mjs", ".cjs",
    }
)


@dataclass
class CodebaseSnapshot:
    formatted_output: str
    files: list[str] = field(default_factory=list)
    omitted: list[str] = field(default_factory=list)


def extract_codebase(vfs: VirtualFileSystem, max_file_bytes: int = DEFAULT_MAX_FILE_BYTES) -> CodebaseSnapshot:
    """Dump every text file visible through the overlay as <dyad-file> blocks."""
    parts: list[str] = []
    included: list[str] = []
    omitted: list[str] = []

    for path in vfs.list_files():
        dot = path.rfind(".")
        if dot < 0 or path[dot:].lower() not in TEXT_EXTENSIONS:
            continue
        content = vfs.read_file(path)
        if content is None:
            continue
        if len(content.encode("utf-8")) > max_file_bytes:
            omitted.append(path)
            content = "// File contents excluded from context"
        parts.append(f'<dyad-file path="{escape_xml_attr(path)}">\n{content}\n</dyad-file>')
        included.append(path)

    return CodebaseSnapshot("\n\n".join(parts), included, omitted)


def create_codebase_prompt(formatted_output: str) -> str:
    return f"{CODEBASE_PROMPT_PREFIX} {formatted_output}"


__all__ = [
    "CODEBASE_PROMPT_PREFIX",
    "CodebaseSnapshot",
    "create_codebase_prompt",
    "extract_codebase",
]
