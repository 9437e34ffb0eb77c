"""
Shared fixtures for tagstream tests.

Provides a scripted model client, a throwaway git repository for the app under
edit and a JSON chat store bound to it.
"""

import subprocess
from pathlib import Path

import pytest

from tagstream.store import JsonChatStore
from tagstream.stream.events import StreamEvent, TextDelta


class ScriptedModelClient:
    """
    ModelClient that replays one scripted turn per stream() call.

    A turn is a list of StreamEvents, a plain string (one TextDelta) or an
    exception to raise mid-stream. Calls beyond the script yield nothing.
    """

    def __init__(self, *turns):
        self.turns = list(turns)
        self.calls: list[dict] = []

    async def stream(self, messages, system=None, tools=None):
        self.calls.append({"messages": list(messages), "system": system, "tools": tools})
        turn = self.turns.pop(0) if self.turns else []
        if isinstance(turn, str):
            turn = [TextDelta(turn)]
        for event in turn:
            if isinstance(event, Exception):
                raise event
            yield event


def events(*items: StreamEvent) -> list[StreamEvent]:
    return list(items)


def git(app_path: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=app_path,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


@pytest.fixture
def app_path(tmp_path: Path) -> Path:
    """A git repository with one committed file."""
    path = tmp_path / "app"
    path.mkdir()
    git(path, "init", "-q")
    (path / "README.md").write_text("# app\n")
    (path / "src").mkdir()
    (path / "src" / "App.tsx").write_text("export default function App() {\n  return null;\n}\n")
    git(path, "add", ".")
    git(path, "commit", "-q", "-m", "init")
    return path


@pytest.fixture
def store(tmp_path: Path) -> JsonChatStore:
    return JsonChatStore(tmp_path / "store")


@pytest.fixture
def chat(store: JsonChatStore, app_path: Path):
    app = store.create_app("app", app_path)
    return store.create_chat(app)


@pytest.fixture
def scripted_client():
    """Factory for ScriptedModelClient."""
    return ScriptedModelClient
