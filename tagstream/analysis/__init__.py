"""
Proposed-state analysis: virtual overlay, problem reports, codebase prompts.
"""

from .checker import (
    ProblemChecker,
    SyntaxProblemChecker,
    build_overlay,
    generate_problem_report,
)
from .codebase import CODEBASE_PROMPT_PREFIX, create_codebase_prompt, extract_codebase
from .problems import Problem, ProblemReport, create_problem_fix_prompt, parse_problem_report_block
from .virtual_fs import VirtualFileSystem

__all__ = [
    "CODEBASE_PROMPT_PREFIX",
    "Problem",
    "ProblemChecker",
    "ProblemReport",
    "SyntaxProblemChecker",
    "VirtualFileSystem",
    "build_overlay",
    "create_codebase_prompt",
    "create_problem_fix_prompt",
    "extract_codebase",
    "generate_problem_report",
    "parse_problem_report_block",
]
