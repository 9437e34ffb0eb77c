#!/usr/bin/env python3
"""
Run one chat turn against an app from the command line.

Usage:
    # Build mode: stream, repair, apply and commit
    python scripts/run_chat.py --app-path ~/apps/todo "Add a dark mode toggle"

    # Continue an existing chat
    python scripts/run_chat.py --app-path ~/apps/todo --chat-id 3 "Now persist it"

    # Read-only question
    python scripts/run_chat.py --app-path ~/apps/todo --mode ask "How is routing done?"

Ctrl-C cancels the stream; the partial response is kept with a cancellation note.

LLM Provider Selection:
    - "opus"/"sonnet"/"haiku" -> Anthropic (ANTHROPIC_API_KEY)
    - "gpt-4o"/"o3-mini"/...  -> OpenAI (OPENAI_API_KEY)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from tagstream.analysis import SyntaxProblemChecker
from tagstream.config import TagstreamConfig
from tagstream.llm import LLMError, create_model_client
from tagstream.mutation import DefaultActionAdapters, SupabaseManagementClient
from tagstream.pipeline import ChatEvent, ChatStreamPipeline, ChunkEvent, EndEvent, ErrorEvent
from tagstream.session_registry import SessionRegistry
from tagstream.store import JsonChatStore
from tagstream.telemetry import TelemetryRecorder
from tagstream.types import OutcomeKind


class ConsoleSink:
    """Prints the growing assistant message and the terminal event."""

    def __init__(self) -> None:
        self._printed = 0

    async def send(self, event: ChatEvent) -> None:
        if isinstance(event, ChunkEvent):
            if not event.messages or event.messages[-1].role != "assistant":
                return
            content = event.messages[-1].content
            if len(content) > self._printed:
                sys.stdout.write(content[self._printed:])
                sys.stdout.flush()
            self._printed = len(content)
        elif isinstance(event, ErrorEvent):
            print(f"\n[tagstream:ERROR] {event.error}", file=sys.stderr)
        elif isinstance(event, EndEvent):
            print(f"\n[tagstream:END] updated_files={event.updated_files}")
            if event.extra_files:
                print(f"[tagstream:END] extra files committed: {', '.join(event.extra_files)}")
            if event.extra_files_error:
                print(f"[tagstream:END] extra files error: {event.extra_files_error}")


async def run_chat(args: argparse.Namespace) -> OutcomeKind:
    config = TagstreamConfig.load(Path(args.config).expanduser() if args.config else None)
    if args.mode:
        config.chat.chat_mode = args.mode
    if args.model:
        config.models.model = args.model

    store = JsonChatStore(Path(config.persistence.store_dir).expanduser())
    app_path = Path(args.app_path).expanduser()
    # Bare app names live under the configured apps directory.
    if not app_path.is_absolute() and not app_path.exists():
        app_path = Path(config.chat.app_base_dir).expanduser() / app_path
    app_path = app_path.resolve()

    if args.chat_id is not None and store.chat_exists(args.chat_id):
        chat_id = args.chat_id
    else:
        app = store.create_app(app_path.name, app_path, supabase_project_id=args.supabase_project)
        chat_id = store.create_chat(app, chat_id=args.chat_id).id
        print(f"[tagstream:CHAT] Created chat {chat_id} for {app_path}")

    registry = SessionRegistry(sink=store, persist_throttle_ms=config.persistence.persist_throttle_ms)
    supabase = SupabaseManagementClient(
        access_token=os.environ.get(config.supabase.access_token_env),
        api_base=config.supabase.api_base,
        timeout=config.supabase.timeout_seconds,
    )
    pipeline = ChatStreamPipeline(
        store,
        create_model_client(config.models),
        registry,
        config,
        ConsoleSink(),
        adapters=DefaultActionAdapters(supabase=supabase),
        problem_checker=SyntaxProblemChecker(),
        telemetry=TelemetryRecorder(args.telemetry) if args.telemetry else None,
    )

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, registry.cancel, chat_id)
    try:
        outcome = await pipeline.stream_chat(chat_id, args.prompt)
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await supabase.aclose()

    if outcome.mutation and outcome.mutation.commit_hash:
        print(f"[tagstream:COMMIT] {outcome.mutation.commit_hash} {outcome.mutation.commit_message}")
    return outcome.kind


def main():
    parser = argparse.ArgumentParser(
        description="Stream one chat turn and apply the result",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("prompt", help="User prompt")
    parser.add_argument("--app-path", "-a", required=True, help="App working tree (a git repository)")
    parser.add_argument("--chat-id", "-c", type=int, help="Existing chat id to continue")
    parser.add_argument("--config", help="Config file (default: ~/.tagstream/config.json)")
    parser.add_argument("--mode", "-m", choices=["build", "ask", "agent"], help="Override chat mode")
    parser.add_argument("--model", help="Model shorthand or id (e.g. sonnet, gpt-4o)")
    parser.add_argument("--supabase-project", help="Supabase project id for new apps")
    parser.add_argument("--telemetry", help="Append telemetry events to this JSONL file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        kind = asyncio.run(run_chat(args))
    except LLMError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(1 if kind == OutcomeKind.FAILED else 0)


if __name__ == "__main__":
    main()
