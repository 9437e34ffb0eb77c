"""
Problem reports: the structured result of checking a proposed overlay.

Serialized into the response as

    <dyad-problem-report summary="N problems">
    <problem file=".." line=".." column=".." code="..">message</problem>
    </dyad-problem-report>
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from ..xml_escape import escape_xml_attr, escape_xml_content, unescape_xml_attr, unescape_xml_content


class Problem(BaseModel):
    """One diagnostic against a file in the overlay."""

    file: str
    line: int
    column: int
    code: str
    message: str
    snippet: str | None = None


class ProblemReport(BaseModel):
    """All diagnostics for one overlay."""

    problems: list[Problem] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.problems)

    @property
    def summary(self) -> str:
        return f"{len(self.problems)} problems"

    def to_problem_report_block(self) -> str:
        rows = "\n".join(
            f'<problem file="{escape_xml_attr(p.file)}" line="{p.line}" '
            f'column="{p.column}" code="{escape_xml_attr(p.code)}">'
            f"{escape_xml_content(p.message)}</problem>"
            for p in self.problems
        )
        return f'<dyad-problem-report summary="{self.summary}">\n{rows}\n</dyad-problem-report>'


_REPORT_BLOCK = re.compile(r"<dyad-problem-report[^>]*>([\s\S]*?)</dyad-problem-report>")
_PROBLEM_ROW = re.compile(
    r'<problem file="([^"]*)" line="(\d+)" column="(\d+)" code="([^"]*)">([\s\S]*?)</problem>'
)


def parse_problem_report_block(text: str) -> ProblemReport | None:
    """Parse the first problem-report block in text, or None if there is none."""
    match = _REPORT_BLOCK.search(text)
    if not match:
        return None
    problems = [
        Problem(
            file=unescape_xml_attr(file),
            line=int(line),
            column=int(column),
            code=unescape_xml_attr(code),
            message=unescape_xml_content(message),
        )
        for file, line, column, code, message in _PROBLEM_ROW.findall(match.group(1))
    ]
    return ProblemReport(problems=problems)


def create_problem_fix_prompt(report: ProblemReport) -> str:
    """Build the user turn asking the model to fix every reported problem."""
    total = len(report.problems)
    if total == 0:
        return "No problems detected."

    noun = "problem" if total == 1 else "problems"
    lines = [f"Fix these {total} {noun}:", ""]
    for index, problem in enumerate(report.problems, start=1):
        lines.append(
            f"{index}. {problem.file}:{problem.line}:{problem.column} - "
            f"{problem.message} ({problem.code})"
        )
        if problem.snippet:
            lines.append("```")
            lines.append(problem.snippet)
            lines.append("```")
    lines.append("")
    lines.append("Please fix all problems in a concise way.")
    return "\n".join(lines)


__all__ = [
    "Problem",
    "ProblemReport",
    "create_problem_fix_prompt",
    "parse_problem_report_block",
]
