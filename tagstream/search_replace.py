"""
Apply SEARCH/REPLACE diff blocks to file content.

Block format:

    <<<<<<< SEARCH
    old lines
    =======
    new lines
    >>>>>>> REPLACE

Each SEARCH section must identify exactly one location in the file. Matching
tries the literal text first, then a line-by-line comparison that ignores
leading/trailing whitespace on each line.
"""

from __future__ import annotations

from dataclasses import dataclass

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


@dataclass
class SearchReplaceBlock:
    """One SEARCH/REPLACE pair."""

    search: str
    replace: str


@dataclass
class SearchReplaceResult:
    """Outcome of applying a diff. content is set only on success."""

    success: bool
    content: str | None = None
    error: str | None = None


class DiffParseError(ValueError):
    """The diff body is not a sequence of well-formed blocks."""

    pass


def parse_search_replace_blocks(diff: str) -> list[SearchReplaceBlock]:
    """
    Parse diff content into blocks.

    Raises:
        DiffParseError: On unterminated or out-of-order markers.
    """
    blocks: list[SearchReplaceBlock] = []
    state = "outside"
    search_lines: list[str] = []
    replace_lines: list[str] = []

    for line in diff.split("\n"):
        marker = line.strip()
        if state == "outside":
            if marker == SEARCH_MARKER:
                state = "search"
                search_lines, replace_lines = [], []
            elif marker in (DIVIDER_MARKER, REPLACE_MARKER):
                raise DiffParseError(f"Unexpected '{marker}' outside of a SEARCH block")
        elif state == "search":
            if marker == DIVIDER_MARKER:
                state = "replace"
            elif marker == SEARCH_MARKER or marker == REPLACE_MARKER:
                raise DiffParseError(f"Unexpected '{marker}' inside a SEARCH section")
            else:
                search_lines.append(line)
        else:
            if marker == REPLACE_MARKER:
                blocks.append(
                    SearchReplaceBlock(
                        search="\n".join(search_lines),
                        replace="\n".join(replace_lines),
                    )
                )
                state = "outside"
            elif marker == SEARCH_MARKER:
                raise DiffParseError("Missing '>>>>>>> REPLACE' before next SEARCH block")
            else:
                replace_lines.append(line)

    if state != "outside":
        raise DiffParseError("Unterminated SEARCH/REPLACE block")
    return blocks


def _line_trimmed_matches(file_lines: list[str], search_lines: list[str]) -> list[int]:
    """Start indices where search_lines match file_lines ignoring per-line padding."""
    wanted = [line.strip() for line in search_lines]
    size = len(wanted)
    matches = []
    for start in range(0, len(file_lines) - size + 1):
        if all(file_lines[start + i].strip() == wanted[i] for i in range(size)):
            matches.append(start)
    return matches


def _apply_block(content: str, block: SearchReplaceBlock, index: int) -> str:
    if not block.search.strip():
        raise DiffParseError(f"Search block #{index} is empty")

    occurrences = content.count(block.search)
    if occurrences == 1:
        return content.replace(block.search, block.replace, 1)
    if occurrences > 1:
        raise DiffParseError(
            f"Search block #{index} matched {occurrences} locations in the target file; "
            "include more surrounding lines to make it unique"
        )

    file_lines = content.split("\n")
    search_lines = block.search.split("\n")
    # Blank edge lines carry no anchoring information.
    while search_lines and not search_lines[0].strip():
        search_lines.pop(0)
    while search_lines and not search_lines[-1].strip():
        search_lines.pop()

    starts = _line_trimmed_matches(file_lines, search_lines)
    if not starts:
        raise DiffParseError(f"Search block #{index} did not match any content in the target file")
    if len(starts) > 1:
        raise DiffParseError(
            f"Search block #{index} matched {len(starts)} locations in the target file "
            "(ignoring whitespace); include more surrounding lines to make it unique"
        )

    start = starts[0]
    replace_lines = block.replace.split("\n") if block.replace else []
    new_lines = file_lines[:start] + replace_lines + file_lines[start + len(search_lines):]
    return "\n".join(new_lines)


def apply_search_replace(original: str, diff: str) -> SearchReplaceResult:
    """
    Apply every block of diff to original, in order.

    Never raises for bad diffs or failed matches; the reason is returned in
    SearchReplaceResult.error.
    """
    try:
        blocks = parse_search_replace_blocks(diff)
    except DiffParseError as e:
        return SearchReplaceResult(success=False, error=str(e))

    if not blocks:
        return SearchReplaceResult(success=False, error="No SEARCH/REPLACE blocks found")

    content = original
    for index, block in enumerate(blocks, start=1):
        try:
            content = _apply_block(content, block, index)
        except DiffParseError as e:
            return SearchReplaceResult(success=False, error=str(e))

    return SearchReplaceResult(success=True, content=content)


__all__ = [
    "DiffParseError",
    "SearchReplaceBlock",
    "SearchReplaceResult",
    "apply_search_replace",
    "parse_search_replace_blocks",
]
