"""
Static checks over a proposed overlay.

The checker only sees the overlay, so problems introduced by the response are
found before anything is written to disk.
"""

from __future__ import annotations

import json
import logging
import warnings
from pathlib import Path
from typing import Protocol

from ..tag_parser import TagLexer, default_lexer
from .problems import Problem, ProblemReport
from .virtual_fs import VirtualFileSystem

logger = logging.getLogger(__name__)


class ProblemChecker(Protocol):
    """Anything that can produce a ProblemReport for an overlay."""

    async def check(self, vfs: VirtualFileSystem) -> ProblemReport: ...


def _snippet(source: str, line: int) -> str | None:
    lines = source.splitlines()
    if 1 <= line <= len(lines):
        return lines[line - 1]
    return None


def check_python_source(path: str, source: str) -> Problem | None:
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            compile(source, path, "exec", dont_inherit=True)
    except SyntaxError as e:
        line = e.lineno or 1
        return Problem(
            file=path,
            line=line,
            column=e.offset or 1,
            code=type(e).__name__,
            message=e.msg or "invalid syntax",
            snippet=_snippet(source, line),
        )
    return None


def check_json_source(path: str, source: str) -> Problem | None:
    try:
        json.loads(source)
    except json.JSONDecodeError as e:
        return Problem(
            file=path,
            line=e.lineno,
            column=e.colno,
            code="JSONDecodeError",
            message=e.msg,
            snippet=_snippet(source, e.lineno),
        )
    return None


class SyntaxProblemChecker:
    """
    Syntax-level checker for Python and JSON files.

    Only files changed by the overlay are checked unless check_all is set.
    """

    CHECKS = {
        ".py": check_python_source,
        ".json": check_json_source,
    }

    def __init__(self, check_all: bool = False):
        self.check_all = check_all

    async def check(self, vfs: VirtualFileSystem) -> ProblemReport:
        paths = vfs.list_files() if self.check_all else vfs.changed_files()
        problems: list[Problem] = []
        for path in paths:
            check = self.CHECKS.get(Path(path).suffix.lower())
            if check is None:
                continue
            source = vfs.read_file(path)
            if source is None:
                continue
            problem = check(path, source)
            if problem is not None:
                problems.append(problem)
        return ProblemReport(problems=problems)


def build_overlay(full_response: str, app_path: str | Path, lexer: TagLexer = default_lexer) -> VirtualFileSystem:
    """Overlay of every write, rename and delete proposed in full_response."""
    vfs = VirtualFileSystem(app_path)
    vfs.apply_response_changes(
        delete_paths=[tag.path for tag in lexer.delete_tags(full_response)],
        renames=lexer.rename_tags(full_response),
        writes=lexer.write_tags(full_response),
    )
    return vfs


async def generate_problem_report(
    full_response: str,
    app_path: str | Path,
    checker: ProblemChecker,
    lexer: TagLexer = default_lexer,
) -> ProblemReport:
    """Check the proposed state of the app, never the committed one."""
    vfs = build_overlay(full_response, app_path, lexer)
    report = await checker.check(vfs)
    logger.info(f"Problem report for {app_path}: {len(report.problems)} problems")
    return report


__all__ = [
    "ProblemChecker",
    "SyntaxProblemChecker",
    "build_overlay",
    "check_json_source",
    "check_python_source",
    "generate_problem_report",
]
