"""End-to-end tests for ChatStreamPipeline with a scripted model and a real git app."""

import asyncio

import pytest

from conftest import ScriptedModelClient, git
from tagstream.config import TagstreamConfig
from tagstream.corrective import UNRESOLVED_SEARCH_REPLACE_MESSAGE
from tagstream.llm import LLMError, ToolSpec
from tagstream.pipeline import (
    AI_STREAMING_ERROR_MESSAGE_PREFIX,
    APPLY_ERROR_MESSAGE_PREFIX,
    CANCELLED_SUFFIX,
    PROCESSING_ERROR_MESSAGE_PREFIX,
    Attachment,
    ChatStreamPipeline,
    ChunkEvent,
    EndEvent,
    ErrorEvent,
    RecordingSink,
    SelectedComponent,
)
from tagstream.session_registry import SessionRegistry
from tagstream.stream import TextDelta
from tagstream.types import OutcomeKind


def make_pipeline(store, client, config=None, sink=None, **kwargs):
    config = config or TagstreamConfig()
    registry = SessionRegistry(sink=store, persist_throttle_ms=0)
    return ChatStreamPipeline(store, client, registry, config, sink or RecordingSink(), **kwargs)


async def stored_messages(store, chat):
    return (await store.get_chat(chat.id)).messages


class TestBuildTurn:
    """A complete build-mode turn."""

    @pytest.mark.asyncio
    async def test_writes_commits_and_ends(self, store, chat, app_path):
        response = (
            "<dyad-chat-summary>Add greeting</dyad-chat-summary>"
            '<dyad-write path="src/Greeting.tsx">export const Greeting = () => "hi";</dyad-write>'
        )
        client = ScriptedModelClient(response)
        pipeline = make_pipeline(store, client)

        outcome = await pipeline.stream_chat(chat.id, "Add a greeting")

        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.mutation.written_paths == ["src/Greeting.tsx"]
        assert (app_path / "src" / "Greeting.tsx").exists()
        assert git(app_path, "status", "--porcelain") == ""

        sink = pipeline.sink
        assert sink.terminal == [EndEvent(chat.id, updated_files=True)]
        assert isinstance(sink.events[0], ChunkEvent)
        assert sink.events[-1] == sink.terminal[0]
        assert not pipeline.registry.is_active(chat.id)

        messages = await stored_messages(store, chat)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content == "Add a greeting"
        assert messages[1].content == response
        assert messages[1].commit_hash == outcome.mutation.commit_hash
        assert (await store.get_chat(chat.id)).title == "Add greeting"

    @pytest.mark.asyncio
    async def test_model_sees_codebase_then_prompt(self, store, chat):
        client = ScriptedModelClient("ok")
        pipeline = make_pipeline(store, client)

        await pipeline.stream_chat(chat.id, "What does App do?")

        sent = client.calls[0]["messages"]
        assert sent[0]["role"] == "user"
        assert "src/App.tsx" in sent[0]["content"]
        assert sent[1]["role"] == "assistant"
        assert sent[-1] == {"role": "user", "content": "What does App do?"}
        assert client.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_existing_title_is_kept(self, store, app_path):
        chat = store.create_chat(store.create_app("app", app_path), title="Mine")
        client = ScriptedModelClient("<dyad-chat-summary>Other</dyad-chat-summary>done")
        pipeline = make_pipeline(store, client)

        await pipeline.stream_chat(chat.id, "hi")

        assert (await store.get_chat(chat.id)).title == "Mine"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, store, chat):
        for turn in range(6):
            await store.add_message(chat.id, "user", f"question {turn}")
            await store.add_message(chat.id, "assistant", f"answer {turn}")
        config = TagstreamConfig()
        config.chat.max_chat_turns_in_context = 2
        client = ScriptedModelClient("ok")
        pipeline = make_pipeline(store, client, config)

        await pipeline.stream_chat(chat.id, "question 6")

        history = [m["content"] for m in client.calls[0]["messages"][2:]]
        assert history == ["question 4", "answer 4", "question 5", "answer 5", "question 6"]

    @pytest.mark.asyncio
    async def test_tools_only_in_agent_mode(self, store, chat):
        tools = [ToolSpec("db__query")]
        client = ScriptedModelClient("ok", "ok")

        await make_pipeline(store, client, tools=tools).stream_chat(chat.id, "build")
        config = TagstreamConfig()
        config.chat.chat_mode = "agent"
        await make_pipeline(store, client, config, tools=tools).stream_chat(chat.id, "agent")

        assert client.calls[0]["tools"] is None
        assert client.calls[1]["tools"] == tools


class TestReadOnlyAndManualApproval:
    @pytest.mark.asyncio
    async def test_ask_mode_never_applies(self, store, chat, app_path):
        config = TagstreamConfig()
        config.chat.chat_mode = "ask"
        client = ScriptedModelClient('<dyad-write path="src/x.ts">x</dyad-write>')
        pipeline = make_pipeline(store, client, config)

        outcome = await pipeline.stream_chat(chat.id, "explain")

        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.mutation is None
        assert not (app_path / "src" / "x.ts").exists()
        assert pipeline.sink.terminal == [EndEvent(chat.id, updated_files=False)]

    @pytest.mark.asyncio
    async def test_without_auto_approve(self, store, chat, app_path):
        config = TagstreamConfig()
        config.chat.auto_approve_changes = False
        client = ScriptedModelClient('<dyad-write path="src/x.ts">x</dyad-write>')
        pipeline = make_pipeline(store, client, config)

        await pipeline.stream_chat(chat.id, "change")

        assert not (app_path / "src" / "x.ts").exists()
        messages = await stored_messages(store, chat)
        assert messages[-1].content == '<dyad-write path="src/x.ts">x</dyad-write>'
        assert messages[-1].approval_state is None


class CancellingSink(RecordingSink):
    """Cancels the chat (twice) once enough streamed chunks have arrived."""

    def __init__(self, after_chunks: int):
        super().__init__()
        self.after_chunks = after_chunks
        self.pipeline = None

    async def send(self, event):
        await super().send(event)
        streamed = [e for e in self.chunks if e.messages and e.messages[-1].content]
        if isinstance(event, ChunkEvent) and len(streamed) == self.after_chunks:
            await self.pipeline.cancel_chat(event.chat_id)
            await self.pipeline.cancel_chat(event.chat_id)


class GatedModelClient(ScriptedModelClient):
    """Streams two chunks, then stalls until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def stream(self, messages, system=None, tools=None):
        self.calls.append({"messages": list(messages), "system": system, "tools": tools})
        yield TextDelta("one ")
        yield TextDelta("two ")
        await self.release.wait()
        yield TextDelta("three")


async def wait_for_streamed_chunks(sink, count):
    while len([e for e in sink.chunks if e.messages and e.messages[-1].content]) < count:
        await asyncio.sleep(0)


class TestCancellation:
    """Cancelling is a normal outcome with exactly one end event."""

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, store, chat, app_path):
        client = ScriptedModelClient([TextDelta("one "), TextDelta("two "), TextDelta("three")])
        sink = CancellingSink(after_chunks=2)
        pipeline = make_pipeline(store, client, sink=sink)
        sink.pipeline = pipeline

        outcome = await pipeline.stream_chat(chat.id, "count")

        assert outcome.kind == OutcomeKind.CANCELLED
        assert sink.errors == []
        assert sink.terminal == [EndEvent(chat.id, updated_files=False)]
        content = (await stored_messages(store, chat))[-1].content
        assert content == "one two " + CANCELLED_SUFFIX
        assert content.count("[Response cancelled by user]") == 1
        assert not pipeline.registry.is_active(chat.id)

    @pytest.mark.asyncio
    async def test_cancel_from_another_task(self, store, chat):
        client = GatedModelClient()
        pipeline = make_pipeline(store, client)
        sink = pipeline.sink

        task = asyncio.create_task(pipeline.stream_chat(chat.id, "count"))
        await asyncio.wait_for(wait_for_streamed_chunks(sink, 2), timeout=5)
        assert await pipeline.cancel_chat(chat.id)
        client.release.set()
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.kind == OutcomeKind.CANCELLED
        assert sink.errors == []
        assert sink.terminal == [EndEvent(chat.id, updated_files=False)]
        content = (await stored_messages(store, chat))[-1].content
        assert content == "one two " + CANCELLED_SUFFIX
        assert not pipeline.registry.is_active(chat.id)

    @pytest.mark.asyncio
    async def test_cancel_stalled_provider(self, store, chat):
        client = GatedModelClient()
        pipeline = make_pipeline(store, client)

        task = asyncio.create_task(pipeline.stream_chat(chat.id, "count"))
        await asyncio.wait_for(wait_for_streamed_chunks(pipeline.sink, 2), timeout=5)
        await pipeline.cancel_chat(chat.id)

        # Never released: the cancel alone must end the turn.
        outcome = await asyncio.wait_for(task, timeout=5)
        assert outcome.kind == OutcomeKind.CANCELLED
        assert (await stored_messages(store, chat))[-1].content == "one two " + CANCELLED_SUFFIX

    @pytest.mark.asyncio
    async def test_cancel_without_stream_still_ends(self, store, chat):
        pipeline = make_pipeline(store, ScriptedModelClient())
        assert await pipeline.cancel_chat(chat.id) is True
        assert pipeline.sink.events == [EndEvent(chat.id, updated_files=False)]


class TestFailures:
    @pytest.mark.asyncio
    async def test_second_stream_fails_fast(self, store, chat):
        pipeline = make_pipeline(store, ScriptedModelClient("never"))
        pipeline.registry.begin(chat.id)

        outcome = await pipeline.stream_chat(chat.id, "again")

        assert outcome.kind == OutcomeKind.FAILED
        assert pipeline.sink.events == [ErrorEvent(chat.id, f"A stream is already active for chat {chat.id}")]
        # The running stream is left alone.
        assert pipeline.registry.is_active(chat.id)
        assert await stored_messages(store, chat) == []

    @pytest.mark.asyncio
    async def test_provider_error(self, store, chat):
        client = ScriptedModelClient([TextDelta("partial"), LLMError("model overloaded")])
        pipeline = make_pipeline(store, client)

        outcome = await pipeline.stream_chat(chat.id, "hi")

        assert outcome.kind == OutcomeKind.FAILED
        assert pipeline.sink.terminal == [ErrorEvent(chat.id, f"{AI_STREAMING_ERROR_MESSAGE_PREFIX}model overloaded")]
        assert not pipeline.registry.is_active(chat.id)

    @pytest.mark.asyncio
    async def test_unexpected_error(self, store, chat):
        client = ScriptedModelClient([RuntimeError("socket closed")])
        pipeline = make_pipeline(store, client)

        await pipeline.stream_chat(chat.id, "hi")

        assert pipeline.sink.terminal == [ErrorEvent(chat.id, f"{PROCESSING_ERROR_MESSAGE_PREFIX}socket closed")]

    @pytest.mark.asyncio
    async def test_missing_chat(self, store):
        pipeline = make_pipeline(store, ScriptedModelClient())
        outcome = await pipeline.stream_chat(404, "hi")
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error.startswith(PROCESSING_ERROR_MESSAGE_PREFIX)

    @pytest.mark.asyncio
    async def test_apply_error(self, store, chat):
        client = ScriptedModelClient('<dyad-write path="../escape.txt">x</dyad-write>')
        pipeline = make_pipeline(store, client)

        outcome = await pipeline.stream_chat(chat.id, "hi")

        assert outcome.kind == OutcomeKind.FAILED
        [error] = pipeline.sink.terminal
        assert isinstance(error, ErrorEvent)
        assert error.error.startswith(APPLY_ERROR_MESSAGE_PREFIX)

    @pytest.mark.asyncio
    async def test_unresolved_search_replace_is_a_warning(self, store, chat, app_path):
        bad_edit = (
            '<dyad-search-replace path="src/App.tsx">\n'
            "<<<<<<< SEARCH\nnothing like this\n=======\nanything\n>>>>>>> REPLACE\n"
            "</dyad-search-replace>"
        )
        config = TagstreamConfig()
        config.correction.enable_turbo_edits_v2 = True
        client = ScriptedModelClient(bad_edit, bad_edit, bad_edit)
        pipeline = make_pipeline(store, client, config)

        outcome = await pipeline.stream_chat(chat.id, "edit")

        assert outcome.kind == OutcomeKind.COMPLETED
        assert len(client.calls) == 3
        assert pipeline.sink.errors == []
        assert pipeline.sink.terminal == [EndEvent(chat.id, updated_files=False)]
        assert UNRESOLVED_SEARCH_REPLACE_MESSAGE in (await stored_messages(store, chat))[-1].content
        assert "return null;" in (app_path / "src" / "App.tsx").read_text()


class TestPromptExtras:
    """Attachments and selected components folded into the user turn."""

    @pytest.mark.asyncio
    async def test_attachments(self, store, chat, app_path):
        client = ScriptedModelClient('<dyad-write path="public/logo.png">DYAD_ATTACHMENT_0</dyad-write>')
        pipeline = make_pipeline(store, client)
        attachments = [
            Attachment("notes.md", b"remember the milk", "text/markdown"),
            Attachment("logo.png", b"\x89PNG", "image/png", attachment_type="upload-to-codebase"),
        ]

        await pipeline.stream_chat(chat.id, "use these", attachments=attachments)

        prompt = (await stored_messages(store, chat))[0].content
        assert prompt.startswith("use these\n\nAttachments:\n")
        assert "- notes.md (text/markdown)" in prompt
        assert '<dyad-text-attachment filename="notes.md" type="text/markdown">\nremember the milk\n' in prompt
        assert "File to upload to codebase: logo.png (file id: DYAD_ATTACHMENT_0)" in prompt
        assert (app_path / "public" / "logo.png").read_bytes() == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_selected_component_snippet(self, store, chat):
        client = ScriptedModelClient("ok")
        pipeline = make_pipeline(store, client)

        await pipeline.stream_chat(
            chat.id, "make it red", selected_components=[SelectedComponent("App", "src/App.tsx", line_number=2)]
        )

        prompt = (await stored_messages(store, chat))[0].content
        assert "Selected component: App (file: src/App.tsx)" in prompt
        assert "  return null; // <-- EDIT HERE" in prompt
        assert "1. Selected component" not in prompt
