"""
Prompt templates for the build/ask/agent system prompts and the repair loops.
"""

from __future__ import annotations

from .types import ChatMode

SEARCH_REPLACE_WARNING_MESSAGE = (
    "Could not apply Turbo Edits properly for some of the files; re-generating code..."
)

SEARCH_REPLACE_REREAD_PROMPT = (
    "There was an issue with the following `dyad-search-replace` tags. "
    "Make sure you use `dyad-read` to read the latest version of the file "
    "and then trying to do search & replace again."
)

SEARCH_REPLACE_WRITE_PROMPT = (
    "There was an issue with the following `dyad-search-replace` tags. "
    "Please fix the errors by generating the code changes using `dyad-write` tags instead."
)

_TAG_REFERENCE = """## Making changes

Use these tags to change the codebase. Always close every tag.

- `<dyad-write path="src/file.ts" description="...">full file content</dyad-write>`
  writes a complete file. Never write partial files.
- `<dyad-rename from="old/path" to="new/path"></dyad-rename>`
- `<dyad-delete path="path/to/file"></dyad-delete>`
- `<dyad-add-dependency packages="pkg-one pkg-two"></dyad-add-dependency>`
- `<dyad-execute-sql description="...">SQL</dyad-execute-sql>`
- `<dyad-chat-summary>short title for this change</dyad-chat-summary>`
"""

_SEARCH_REPLACE_REFERENCE = """
- `<dyad-search-replace path="src/file.ts">` with one or more blocks of

  <<<<<<< SEARCH
  exact existing lines
  =======
  replacement lines
  >>>>>>> REPLACE

  `</dyad-search-replace>`. Each SEARCH section must match exactly one
  location in the current file.
"""

_ASK_MODE = """You are a helpful coding assistant answering questions about the user's codebase.

Do NOT change any files. Never emit `<dyad-write>`, `<dyad-rename>`,
`<dyad-delete>`, `<dyad-add-dependency>` or `<dyad-execute-sql>` tags.
Explain with plain markdown and code snippets instead.
"""

_BUILD_MODE = """You are an AI editor that creates and modifies web applications.
You make efficient, correct changes and explain them briefly.
"""

_AGENT_MODE = """You are an AI agent that gathers information with the available tools
before writing code. Call tools when you need facts you do not have, then
call the `generate-code` tool when you are ready to make changes.
"""


def construct_system_prompt(
    chat_mode: ChatMode | str,
    ai_rules: str | None = None,
    enable_turbo_edits_v2: bool = False,
) -> str:
    """Build the system prompt for a chat mode."""
    mode = ChatMode(chat_mode)
    if mode == ChatMode.ASK:
        prompt = _ASK_MODE
    else:
        prompt = (_AGENT_MODE if mode == ChatMode.AGENT else _BUILD_MODE) + "\n" + _TAG_REFERENCE
        if enable_turbo_edits_v2 and mode == ChatMode.BUILD:
            prompt += _SEARCH_REPLACE_REFERENCE
    if ai_rules:
        prompt += f"\n# Project rules\n\n{ai_rules.strip()}\n"
    return prompt


def format_search_replace_issues(issues) -> str:
    return "\n\n".join(f"File path: {issue.file_path}\nError: {issue.error}" for issue in issues)


def create_search_replace_fix_prompt(attempt_index: int, formatted_issues: str) -> str:
    """First retry asks for a re-read; later retries ask for full-file writes."""
    instruction = SEARCH_REPLACE_REREAD_PROMPT if attempt_index == 0 else SEARCH_REPLACE_WRITE_PROMPT
    return f"{instruction}\n\n{formatted_issues}"


__all__ = [
    "SEARCH_REPLACE_REREAD_PROMPT",
    "SEARCH_REPLACE_WARNING_MESSAGE",
    "SEARCH_REPLACE_WRITE_PROMPT",
    "construct_system_prompt",
    "create_search_replace_fix_prompt",
    "format_search_replace_issues",
]
