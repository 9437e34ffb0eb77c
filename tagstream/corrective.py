"""
Corrective loops run after the primary stream.

Three bounded repair rounds, always in this order:

1. Continuation: the last <dyad-write> was never closed, so the model is
   re-invoked with the partial text prefilled as its own turn.
2. Search-replace repair: search-replace tags that cannot be applied to the
   files on disk are reported back to the model.
3. Auto-fix: the proposed file state is checked and any problems are sent back
   with a fix prompt.

Every loop only appends to the response, checks the cancellation token at the
top of each iteration and stops after its configured number of attempts.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .analysis.checker import ProblemChecker, build_overlay, generate_problem_report
from .analysis.codebase import CODEBASE_PROMPT_PREFIX, create_codebase_prompt, extract_codebase
from .analysis.problems import ProblemReport, create_problem_fix_prompt
from .config import CorrectionConfig
from .llm.client import ModelClient
from .paths import safe_join
from .prompts import (
    SEARCH_REPLACE_WARNING_MESSAGE,
    create_search_replace_fix_prompt,
    format_search_replace_issues,
)
from .search_replace import apply_search_replace
from .session_registry import CancellationToken
from .stream.chunk_processor import OnUpdate, continue_text_only, process_stream_chunks
from .tag_parser import TagLexer, default_lexer
from .telemetry import TelemetryRecorder
from .types import ConversationMessage
from .xml_escape import remove_non_essential_tags, render_output_block

logger = logging.getLogger(__name__)

_WRITE_OPEN = re.compile(r"<dyad-write[^>]*>")
_WRITE_CLOSE = "</dyad-write>"

SEARCH_REPLACE_TELEMETRY_EVENT = "search_replace:fix"
UNRESOLVED_SEARCH_REPLACE_MESSAGE = "Some search-replace edits could not be applied after retrying"

# Hard ceiling on re-invocations per loop; config may only lower it.
MAX_CORRECTION_ATTEMPTS = 2


def attempt_limit(configured: int) -> int:
    return max(0, min(configured, MAX_CORRECTION_ATTEMPTS))


def has_unclosed_write(text: str) -> bool:
    """True iff the last <dyad-write> opening marker has no closing marker after it."""
    last_open = -1
    for match in _WRITE_OPEN.finditer(text):
        last_open = match.start()
    if last_open == -1:
        return False
    return _WRITE_CLOSE not in text[last_open:]


@dataclass
class SearchReplaceIssue:
    file_path: str
    error: str


async def dry_run_search_replace(
    full_response: str,
    app_path: str | Path,
    lexer: TagLexer = default_lexer,
) -> list[SearchReplaceIssue]:
    """
    Try every search-replace tag against the file currently on disk.

    Never raises; every failure becomes an issue.
    """
    issues: list[SearchReplaceIssue] = []
    for tag in lexer.search_replace_tags(full_response):
        file_path = tag.path
        try:
            full_path = safe_join(app_path, file_path)
            if not full_path.exists():
                issues.append(
                    SearchReplaceIssue(file_path, f"Search-replace target file does not exist: {file_path}")
                )
                continue

            original = full_path.read_text(encoding="utf-8")
            result = apply_search_replace(original, tag.content)
            if not result.success or result.content is None:
                issues.append(
                    SearchReplaceIssue(
                        file_path,
                        f"Unable to apply search-replace to file because: {result.error}",
                    )
                )
                logger.warning(f"Unable to apply search-replace to file {file_path} because: {result.error}")
        except (OSError, UnicodeDecodeError, ValueError) as e:
            issues.append(SearchReplaceIssue(file_path, str(e) or "Unknown error"))
    return issues


@dataclass
class CorrectionContext:
    """Everything the loops need about one in-flight response."""

    chat_id: int
    app_path: Path
    full_response: str
    history: list[ConversationMessage]
    token: CancellationToken
    on_update: OnUpdate
    system: str | None = None
    read_only: bool = False


@dataclass
class CorrectionOutcome:
    full_response: str
    continuation_attempts: int = 0
    search_replace_attempts: int = 0
    auto_fix_attempts: int = 0
    unresolved_issues: list[SearchReplaceIssue] = field(default_factory=list)
    remaining_problems: ProblemReport | None = None
    cancelled: bool = False


class CorrectiveLoopController:
    """
    Runs the repair loops over one response.

    Usage:
        controller = CorrectiveLoopController(model_client, config.correction)
        outcome = await controller.run(ctx)
    """

    def __init__(
        self,
        model_client: ModelClient,
        config: CorrectionConfig,
        lexer: TagLexer = default_lexer,
        problem_checker: ProblemChecker | None = None,
        telemetry: TelemetryRecorder | None = None,
    ):
        self.model_client = model_client
        self.config = config
        self.lexer = lexer
        self.problem_checker = problem_checker
        self.telemetry = telemetry or TelemetryRecorder()

    async def run(self, ctx: CorrectionContext) -> CorrectionOutcome:
        outcome = CorrectionOutcome(full_response=ctx.full_response)
        if ctx.read_only:
            return outcome

        await self.run_continuation(ctx, outcome)
        if self.config.enable_turbo_edits_v2 and not outcome.cancelled:
            await self.run_search_replace_repair(ctx, outcome)
        if self.config.enable_auto_fix_problems and not outcome.cancelled:
            await self.run_auto_fix(ctx, outcome)

        if ctx.token.cancelled:
            outcome.cancelled = True
        return outcome

    async def _append(self, ctx: CorrectionContext, outcome: CorrectionOutcome, text: str) -> None:
        outcome.full_response += text
        await ctx.on_update(outcome.full_response)

    async def run_continuation(self, ctx: CorrectionContext, outcome: CorrectionOutcome) -> None:
        while (
            has_unclosed_write(outcome.full_response)
            and outcome.continuation_attempts < attempt_limit(self.config.max_continuation_attempts)
        ):
            if ctx.token.cancelled:
                outcome.cancelled = True
                return
            outcome.continuation_attempts += 1
            logger.warning(
                f"Received unclosed dyad-write tag, attempting to continue, "
                f"attempt #{outcome.continuation_attempts}"
            )
            messages = [*ctx.history, {"role": "assistant", "content": outcome.full_response}]
            stream = self.model_client.stream(messages, system=ctx.system)
            result = await continue_text_only(
                stream, outcome.full_response, ctx.token, ctx.on_update, chat_id=ctx.chat_id
            )
            outcome.full_response = result.full_response
            if result.cancelled:
                outcome.cancelled = True
                return

    def _record_search_replace(self, attempt: int, issues: list[SearchReplaceIssue]) -> None:
        self.telemetry.record(
            SEARCH_REPLACE_TELEMETRY_EVENT,
            {
                "attemptNumber": attempt,
                "success": not issues,
                "issueCount": len(issues),
                "errors": [{"filePath": i.file_path, "error": i.error} for i in issues],
            },
        )

    async def run_search_replace_repair(self, ctx: CorrectionContext, outcome: CorrectionOutcome) -> None:
        issues = await dry_run_search_replace(outcome.full_response, ctx.app_path, self.lexer)
        self._record_search_replace(0, issues)

        original_response = outcome.full_response
        previous_attempts: list[ConversationMessage] = []

        while issues and outcome.search_replace_attempts < attempt_limit(self.config.max_search_replace_fix_attempts):
            if ctx.token.cancelled:
                outcome.cancelled = True
                break
            logger.warning(
                f"Detected search-replace issues (attempt #{outcome.search_replace_attempts + 1}): "
                f"{', '.join(i.error for i in issues)}"
            )
            formatted = format_search_replace_issues(issues)
            await self._append(ctx, outcome, render_output_block("warning", SEARCH_REPLACE_WARNING_MESSAGE, formatted))

            prompt: ConversationMessage = {
                "role": "user",
                "content": create_search_replace_fix_prompt(outcome.search_replace_attempts, formatted),
            }
            outcome.search_replace_attempts += 1
            messages = [
                *ctx.history,
                {"role": "assistant", "content": original_response},
                *previous_attempts,
                prompt,
            ]
            previous_attempts.append(prompt)

            stream = self.model_client.stream(messages, system=ctx.system)
            result = await process_stream_chunks(
                stream, outcome.full_response, ctx.token, ctx.on_update, chat_id=ctx.chat_id
            )
            outcome.full_response = result.full_response
            previous_attempts.append(
                {"role": "assistant", "content": remove_non_essential_tags(result.incremental_response)}
            )
            if result.cancelled:
                outcome.cancelled = True
                break

            # Only the new output is re-validated; earlier tags were already reported.
            issues = await dry_run_search_replace(result.incremental_response, ctx.app_path, self.lexer)
            self._record_search_replace(outcome.search_replace_attempts, issues)

        outcome.unresolved_issues = issues
        if issues and not outcome.cancelled:
            logger.warning(f"Search-replace issues remain after {outcome.search_replace_attempts} attempts")
            await self._append(
                ctx,
                outcome,
                render_output_block(
                    "warning", UNRESOLVED_SEARCH_REPLACE_MESSAGE, format_search_replace_issues(issues)
                ),
            )

    async def _problem_report(self, ctx: CorrectionContext, full_response: str) -> ProblemReport | None:
        try:
            return await generate_problem_report(full_response, ctx.app_path, self.problem_checker, self.lexer)
        except Exception as e:
            logger.error(f"Error generating problem report for chat {ctx.chat_id}: {e}")
            return None

    def _refresh_codebase(self, ctx: CorrectionContext, full_response: str) -> list[ConversationMessage]:
        """Replace a leading codebase prompt with the overlay's current state."""
        history = list(ctx.history)
        if history and history[0]["role"] == "user" and history[0]["content"].startswith(CODEBASE_PROMPT_PREFIX):
            vfs = build_overlay(full_response, ctx.app_path, self.lexer)
            snapshot = extract_codebase(vfs)
            history[0] = {"role": "user", "content": create_codebase_prompt(snapshot.formatted_output)}
        return history

    async def run_auto_fix(self, ctx: CorrectionContext, outcome: CorrectionOutcome) -> None:
        if self.problem_checker is None:
            return
        # Newly added packages are not installed yet and would only produce noise.
        if self.lexer.add_dependency_tags(outcome.full_response):
            logger.info(f"Skipping auto-fix for chat {ctx.chat_id}: response adds dependencies")
            return

        report = await self._problem_report(ctx, outcome.full_response)
        original_response = outcome.full_response
        previous_attempts: list[ConversationMessage] = []

        while (
            report is not None
            and report.problems
            and outcome.auto_fix_attempts < attempt_limit(self.config.max_auto_fix_attempts)
        ):
            if ctx.token.cancelled:
                outcome.cancelled = True
                break
            await self._append(ctx, outcome, report.to_problem_report_block())
            outcome.auto_fix_attempts += 1
            logger.info(f"Attempting to auto-fix problems, attempt #{outcome.auto_fix_attempts}")

            fix_prompt: ConversationMessage = {"role": "user", "content": create_problem_fix_prompt(report)}
            messages = [
                *self._refresh_codebase(ctx, outcome.full_response),
                {"role": "assistant", "content": remove_non_essential_tags(original_response)},
                *previous_attempts,
                fix_prompt,
            ]
            previous_attempts.append(fix_prompt)

            stream = self.model_client.stream(messages, system=ctx.system)
            result = await process_stream_chunks(
                stream, outcome.full_response, ctx.token, ctx.on_update, chat_id=ctx.chat_id
            )
            outcome.full_response = result.full_response
            previous_attempts.append(
                {"role": "assistant", "content": remove_non_essential_tags(result.incremental_response)}
            )
            if result.cancelled:
                outcome.cancelled = True
                break

            report = await self._problem_report(ctx, outcome.full_response)

        outcome.remaining_problems = report


__all__ = [
    "CorrectionContext",
    "CorrectionOutcome",
    "CorrectiveLoopController",
    "MAX_CORRECTION_ATTEMPTS",
    "SearchReplaceIssue",
    "attempt_limit",
    "dry_run_search_replace",
    "has_unclosed_write",
]
