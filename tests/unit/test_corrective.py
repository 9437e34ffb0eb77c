"""Tests for the corrective loops: continuation, search-replace repair, auto-fix."""

from pathlib import Path

import pytest

from tagstream.analysis import SyntaxProblemChecker
from tagstream.config import CorrectionConfig
from tagstream.corrective import (
    MAX_CORRECTION_ATTEMPTS,
    SEARCH_REPLACE_TELEMETRY_EVENT,
    UNRESOLVED_SEARCH_REPLACE_MESSAGE,
    CorrectionContext,
    CorrectiveLoopController,
    attempt_limit,
    dry_run_search_replace,
    has_unclosed_write,
)
from tagstream.prompts import SEARCH_REPLACE_REREAD_PROMPT, SEARCH_REPLACE_WARNING_MESSAGE, SEARCH_REPLACE_WRITE_PROMPT
from tagstream.session_registry import CancellationToken
from tagstream.telemetry import TelemetryRecorder


def search_replace(path: str, search: str, replace: str) -> str:
    return (
        f'<dyad-search-replace path="{path}">\n'
        f"<<<<<<< SEARCH\n{search}\n=======\n{replace}\n>>>>>>> REPLACE\n"
        "</dyad-search-replace>"
    )


async def ignore_update(text: str) -> None:
    return None


def make_context(app_path: Path, full_response: str, token: CancellationToken | None = None, **kwargs):
    return CorrectionContext(
        chat_id=1,
        app_path=app_path,
        full_response=full_response,
        history=[{"role": "user", "content": "do it"}],
        token=token or CancellationToken(),
        on_update=ignore_update,
        **kwargs,
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "App.tsx").write_text("const title = 'old';\n")
    return tmp_path


class TestHasUnclosedWrite:
    def test_closed(self):
        assert not has_unclosed_write('<dyad-write path="a">x</dyad-write>')

    def test_unclosed(self):
        assert has_unclosed_write('<dyad-write path="a">x</dyad-write><dyad-write path="b">y')

    def test_no_write(self):
        assert not has_unclosed_write("plain text")

    def test_earlier_close_does_not_count(self):
        assert has_unclosed_write('</dyad-write><dyad-write path="b">y')


class TestDryRun:
    """dry_run_search_replace never raises and reports every failure."""

    @pytest.mark.asyncio
    async def test_missing_target_is_an_issue(self, project):
        issues = await dry_run_search_replace(search_replace("src/Nope.tsx", "a", "b"), project)
        assert len(issues) == 1
        assert issues[0].file_path == "src/Nope.tsx"
        assert issues[0].error == "Search-replace target file does not exist: src/Nope.tsx"

    @pytest.mark.asyncio
    async def test_unmatched_search(self, project):
        issues = await dry_run_search_replace(search_replace("src/App.tsx", "missing", "b"), project)
        assert len(issues) == 1
        assert issues[0].error.startswith("Unable to apply search-replace to file because: ")

    @pytest.mark.asyncio
    async def test_applicable_edit(self, project):
        text = search_replace("src/App.tsx", "const title = 'old';", "const title = 'new';")
        assert await dry_run_search_replace(text, project) == []
        # Dry run never touches the file.
        assert (project / "src" / "App.tsx").read_text() == "const title = 'old';\n"

    @pytest.mark.asyncio
    async def test_path_escape_is_an_issue(self, project):
        issues = await dry_run_search_replace(search_replace("../outside.ts", "a", "b"), project)
        assert len(issues) == 1
        assert "outside of app directory" in issues[0].error


class TestContinuation:
    @pytest.mark.asyncio
    async def test_unclosed_write_is_continued(self, project, scripted_client):
        client = scripted_client(" = 1;\n</dyad-write>")
        controller = CorrectiveLoopController(client, CorrectionConfig())
        outcome = await controller.run(make_context(project, '<dyad-write path="src/a.ts">const a'))

        assert outcome.full_response == '<dyad-write path="src/a.ts">const a = 1;\n</dyad-write>'
        assert outcome.continuation_attempts == 1
        # The partial text is prefilled as the assistant's own turn.
        assert client.calls[0]["messages"][-1] == {
            "role": "assistant",
            "content": '<dyad-write path="src/a.ts">const a',
        }

    @pytest.mark.asyncio
    async def test_continuation_is_bounded(self, project, scripted_client):
        client = scripted_client(" more", " and more", " never closed")
        controller = CorrectiveLoopController(client, CorrectionConfig(max_continuation_attempts=2))
        outcome = await controller.run(make_context(project, '<dyad-write path="src/a.ts">x'))

        assert outcome.continuation_attempts == 2
        assert len(client.calls) == 2
        assert outcome.full_response.endswith(" more and more")


class TestSearchReplaceRepair:
    """Bounded search-replace repair with warning output."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts_with_warning(self, project, scripted_client):
        bad = search_replace("src/Missing.tsx", "a", "b")
        client = scripted_client(bad, bad, bad)
        telemetry = TelemetryRecorder()
        controller = CorrectiveLoopController(
            client, CorrectionConfig(enable_turbo_edits_v2=True), telemetry=telemetry
        )

        outcome = await controller.run(make_context(project, bad))

        assert len(client.calls) == 2
        assert outcome.search_replace_attempts == 2
        assert len(outcome.unresolved_issues) == 1
        assert outcome.full_response.count(SEARCH_REPLACE_WARNING_MESSAGE) == 2
        assert UNRESOLVED_SEARCH_REPLACE_MESSAGE in outcome.full_response
        events = telemetry.named(SEARCH_REPLACE_TELEMETRY_EVENT)
        assert [e.properties["attemptNumber"] for e in events] == [0, 1, 2]
        assert all(not e.properties["success"] for e in events)

    @pytest.mark.asyncio
    async def test_prompts_escalate_from_reread_to_write(self, project, scripted_client):
        bad = search_replace("src/Missing.tsx", "a", "b")
        client = scripted_client(bad, bad)
        controller = CorrectiveLoopController(client, CorrectionConfig(enable_turbo_edits_v2=True))
        await controller.run(make_context(project, bad))

        first_prompt = client.calls[0]["messages"][-1]["content"]
        second_prompt = client.calls[1]["messages"][-1]["content"]
        assert first_prompt.startswith(SEARCH_REPLACE_REREAD_PROMPT)
        assert "File path: src/Missing.tsx" in first_prompt
        assert second_prompt.startswith(SEARCH_REPLACE_WRITE_PROMPT)

    @pytest.mark.asyncio
    async def test_resolved_on_first_retry(self, project, scripted_client):
        bad = search_replace("src/App.tsx", "nope", "b")
        good = search_replace("src/App.tsx", "const title = 'old';", "const title = 'new';")
        client = scripted_client(good)
        controller = CorrectiveLoopController(client, CorrectionConfig(enable_turbo_edits_v2=True))

        outcome = await controller.run(make_context(project, bad))

        assert outcome.search_replace_attempts == 1
        assert outcome.unresolved_issues == []
        assert UNRESOLVED_SEARCH_REPLACE_MESSAGE not in outcome.full_response
        assert outcome.full_response.endswith(good)

    @pytest.mark.asyncio
    async def test_disabled_without_turbo_edits(self, project, scripted_client):
        bad = search_replace("src/Missing.tsx", "a", "b")
        client = scripted_client()
        controller = CorrectiveLoopController(client, CorrectionConfig(enable_turbo_edits_v2=False))
        outcome = await controller.run(make_context(project, bad))
        assert client.calls == []
        assert outcome.full_response == bad


class TestAutoFix:
    """Problem reports against the proposed overlay."""

    @pytest.mark.asyncio
    async def test_fixes_syntax_error(self, tmp_path, scripted_client):
        broken = '<dyad-write path="main.py">\ndef f(:\n    pass\n</dyad-write>'
        fixed = '<dyad-write path="main.py">\ndef f():\n    pass\n</dyad-write>'
        client = scripted_client(fixed)
        controller = CorrectiveLoopController(
            client,
            CorrectionConfig(enable_auto_fix_problems=True),
            problem_checker=SyntaxProblemChecker(),
        )

        outcome = await controller.run(make_context(tmp_path, broken))

        assert outcome.auto_fix_attempts == 1
        assert '<dyad-problem-report summary="1 problems">' in outcome.full_response
        assert outcome.remaining_problems is not None
        assert outcome.remaining_problems.problems == []
        assert client.calls[0]["messages"][-1]["content"].startswith("Fix these 1 problem:")
        # Nothing is written to disk during the check.
        assert not (tmp_path / "main.py").exists()

    @pytest.mark.asyncio
    async def test_bounded_attempts(self, tmp_path, scripted_client):
        broken = '<dyad-write path="main.py">\ndef f(:\n</dyad-write>'
        client = scripted_client(broken, broken, broken)
        controller = CorrectiveLoopController(
            client,
            CorrectionConfig(enable_auto_fix_problems=True, max_auto_fix_attempts=2),
            problem_checker=SyntaxProblemChecker(),
        )
        outcome = await controller.run(make_context(tmp_path, broken))

        assert outcome.auto_fix_attempts == 2
        assert len(client.calls) == 2
        assert len(outcome.remaining_problems.problems) == 1

    @pytest.mark.asyncio
    async def test_skipped_when_dependencies_added(self, tmp_path, scripted_client):
        text = (
            '<dyad-add-dependency packages="zod"></dyad-add-dependency>'
            '<dyad-write path="main.py">def f(:</dyad-write>'
        )
        client = scripted_client()
        controller = CorrectiveLoopController(
            client,
            CorrectionConfig(enable_auto_fix_problems=True),
            problem_checker=SyntaxProblemChecker(),
        )
        outcome = await controller.run(make_context(tmp_path, text))
        assert outcome.auto_fix_attempts == 0
        assert client.calls == []


class TestReadOnlyAndCancel:
    @pytest.mark.asyncio
    async def test_read_only_skips_every_loop(self, project, scripted_client):
        client = scripted_client()
        controller = CorrectiveLoopController(
            client, CorrectionConfig(enable_turbo_edits_v2=True, enable_auto_fix_problems=True)
        )
        text = '<dyad-write path="a.ts">unclosed'
        outcome = await controller.run(make_context(project, text, read_only=True))
        assert outcome.full_response == text
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_reinvoking(self, project, scripted_client):
        token = CancellationToken()
        token.cancel()
        client = scripted_client()
        controller = CorrectiveLoopController(client, CorrectionConfig())
        outcome = await controller.run(make_context(project, '<dyad-write path="a.ts">x', token=token))
        assert outcome.cancelled
        assert client.calls == []


class TestAttemptCeiling:
    """Configured attempt limits never raise the ceiling of two re-invocations."""

    def test_attempt_limit(self):
        assert MAX_CORRECTION_ATTEMPTS == 2
        assert attempt_limit(5) == 2
        assert attempt_limit(1) == 1
        assert attempt_limit(-1) == 0

    @pytest.mark.asyncio
    async def test_oversized_continuation_limit(self, project, scripted_client):
        client = scripted_client(*[" more"] * 5)
        controller = CorrectiveLoopController(client, CorrectionConfig(max_continuation_attempts=5))
        outcome = await controller.run(make_context(project, '<dyad-write path="src/a.ts">x'))

        assert outcome.continuation_attempts == 2
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_oversized_search_replace_limit(self, project, scripted_client):
        bad = search_replace("src/Missing.tsx", "a", "b")
        client = scripted_client(*[bad] * 5)
        controller = CorrectiveLoopController(
            client, CorrectionConfig(enable_turbo_edits_v2=True, max_search_replace_fix_attempts=5)
        )
        outcome = await controller.run(make_context(project, bad))

        assert outcome.search_replace_attempts == 2
        assert len(client.calls) == 2
        assert UNRESOLVED_SEARCH_REPLACE_MESSAGE in outcome.full_response

    @pytest.mark.asyncio
    async def test_oversized_auto_fix_limit(self, tmp_path, scripted_client):
        broken = '<dyad-write path="main.py">\ndef f(:\n</dyad-write>'
        client = scripted_client(*[broken] * 5)
        controller = CorrectiveLoopController(
            client,
            CorrectionConfig(enable_auto_fix_problems=True, max_auto_fix_attempts=5),
            problem_checker=SyntaxProblemChecker(),
        )
        outcome = await controller.run(make_context(tmp_path, broken))

        assert outcome.auto_fix_attempts == 2
        assert len(client.calls) == 2
