"""
Chat stream pipeline.

Ties the pieces together for one user turn:

    begin session -> store prompt + placeholder -> stream -> corrective loops
    -> (auto-approve) apply -> terminal event -> end session

Every invocation emits ChunkEvent snapshots in order and then exactly one
terminal ErrorEvent or EndEvent. Cancellation is a normal outcome, not an error.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol, Union

from .analysis.checker import ProblemChecker
from .analysis.codebase import create_codebase_prompt, extract_codebase
from .analysis.virtual_fs import VirtualFileSystem
from .config import TagstreamConfig
from .corrective import CorrectionContext, CorrectiveLoopController
from .file_uploads import FileUploadsState
from .llm.client import LLMError, ModelClient, ToolSpec
from .mutation.adapters import ActionAdapters, DefaultActionAdapters
from .mutation.apply_engine import MutationApplyEngine, MutationResult
from .prompts import construct_system_prompt
from .session_registry import SessionRegistry
from .store import MessageRecord, MessageStore
from .stream.chunk_processor import process_stream_chunks
from .tag_parser import TagLexer, default_lexer
from .telemetry import TelemetryRecorder
from .types import ChatMode, ChatNotFoundError, ConversationMessage, OutcomeKind, SessionAlreadyActiveError
from .xml_escape import escape_xml_attr, remove_non_essential_tags

logger = logging.getLogger(__name__)

AI_STREAMING_ERROR_MESSAGE_PREFIX = "Sorry, there was an error from the AI: "
PROCESSING_ERROR_MESSAGE_PREFIX = "Sorry, there was an error processing your request: "
APPLY_ERROR_MESSAGE_PREFIX = "Sorry, there was an error applying the AI's changes: "
CANCELLED_SUFFIX = "\n\n[Response cancelled by user]"
CODEBASE_ACKNOWLEDGEMENT = "OK, got it. I'm ready to help"
AI_RULES_FILE = "AI_RULES.md"

TEXT_FILE_EXTENSIONS = (".md", ".txt", ".json", ".csv", ".js", ".ts", ".html", ".css")
ATTACHMENT_DIR = Path(tempfile.gettempdir()) / "tagstream-attachments"


# =============================================================================
# Inputs
# =============================================================================


@dataclass
class Attachment:
    """A file sent along with the prompt."""

    name: str
    data: bytes
    mime_type: str = "application/octet-stream"
    # chat-context: shown to the model; upload-to-codebase: placed by a write tag
    attachment_type: Literal["chat-context", "upload-to-codebase"] = "chat-context"

    @property
    def is_text(self) -> bool:
        return Path(self.name).suffix.lower() in TEXT_FILE_EXTENSIONS


@dataclass
class SelectedComponent:
    """A UI component the user pointed at."""

    name: str
    relative_path: str
    line_number: int | None = None


# =============================================================================
# Events
# =============================================================================


@dataclass
class ChunkEvent:
    chat_id: int
    messages: list[MessageRecord]


@dataclass
class ErrorEvent:
    chat_id: int
    error: str


@dataclass
class EndEvent:
    chat_id: int
    updated_files: bool = False
    extra_files: list[str] | None = None
    extra_files_error: str | None = None


ChatEvent = Union[ChunkEvent, ErrorEvent, EndEvent]


class ChatEventSink(Protocol):
    """Receives the event stream of every chat."""

    async def send(self, event: ChatEvent) -> None: ...


class RecordingSink:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[ChatEvent] = []

    async def send(self, event: ChatEvent) -> None:
        self.events.append(event)

    def for_chat(self, chat_id: int) -> list[ChatEvent]:
        return [e for e in self.events if e.chat_id == chat_id]

    @property
    def chunks(self) -> list[ChunkEvent]:
        return [e for e in self.events if isinstance(e, ChunkEvent)]

    @property
    def errors(self) -> list[ErrorEvent]:
        return [e for e in self.events if isinstance(e, ErrorEvent)]

    @property
    def ends(self) -> list[EndEvent]:
        return [e for e in self.events if isinstance(e, EndEvent)]

    @property
    def terminal(self) -> list[ChatEvent]:
        return [e for e in self.events if isinstance(e, (ErrorEvent, EndEvent))]


@dataclass
class StreamOutcome:
    """How one stream_chat call finished."""

    kind: OutcomeKind
    chat_id: int
    full_response: str = ""
    mutation: MutationResult | None = None
    error: str | None = None


# =============================================================================
# Prompt assembly
# =============================================================================


def build_history(messages: list[MessageRecord], max_turns: int) -> list[ConversationMessage]:
    """
    Prior turns replayed to the model, newest max_turns user/assistant pairs.

    Empty messages are dropped and the result always starts with a user turn.
    """
    history: list[ConversationMessage] = []
    for message in messages:
        if not message.content:
            continue
        content = message.content
        if message.role == "assistant":
            content = remove_non_essential_tags(content)
        history.append({"role": message.role, "content": content})

    history = history[-(max_turns * 2):] if max_turns > 0 else []
    while history and history[0]["role"] != "user":
        history.pop(0)
    return history


def render_selected_components(app_path: Path, components: list[SelectedComponent]) -> str:
    if not components:
        return ""
    text = "\n\nSelected components:\n"
    for index, component in enumerate(components, 1):
        number = f"{index}. " if len(components) > 1 else ""
        text += f"\n{number}Selected component: {component.name} (file: {component.relative_path})\n"
        snippet = _component_snippet(app_path, component)
        if snippet is not None:
            text += f"\nSnippet:\n```\n{snippet}\n```\n"
    return text


def _component_snippet(app_path: Path, component: SelectedComponent) -> str | None:
    if component.line_number is None:
        return None
    try:
        lines = (app_path / component.relative_path).read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Error reading selected component file content: {e}")
        return "[component snippet not available]"

    selected = component.line_number - 1
    start = max(0, selected - 1)
    end = min(len(lines), selected + 4)
    snippet = lines[start:end]
    if 0 <= selected - start < len(snippet):
        snippet[selected - start] += " // <-- EDIT HERE"
    return "\n".join(snippet)


# =============================================================================
# Pipeline
# =============================================================================


class ChatStreamPipeline:
    """
    Runs chat turns end to end.

    Usage:
        pipeline = ChatStreamPipeline(store, model_client, SessionRegistry(sink=store), config, sink)
        outcome = await pipeline.stream_chat(chat_id, "Add a login page")
        ...
        await pipeline.cancel_chat(chat_id)  # from another task
    """

    def __init__(
        self,
        store: MessageStore,
        model_client: ModelClient,
        registry: SessionRegistry,
        config: TagstreamConfig,
        sink: ChatEventSink,
        lexer: TagLexer = default_lexer,
        adapters: ActionAdapters | None = None,
        problem_checker: ProblemChecker | None = None,
        telemetry: TelemetryRecorder | None = None,
        file_uploads: FileUploadsState | None = None,
        tools: list[ToolSpec] | None = None,
    ):
        self.store = store
        self.model_client = model_client
        self.registry = registry
        self.config = config
        self.sink = sink
        self.lexer = lexer
        self.telemetry = telemetry or TelemetryRecorder()
        self.file_uploads = file_uploads or FileUploadsState()
        self.tools = tools
        self.corrector = CorrectiveLoopController(
            model_client,
            config.correction,
            lexer=lexer,
            problem_checker=problem_checker,
            telemetry=self.telemetry,
        )
        self.engine = MutationApplyEngine(
            store,
            adapters or DefaultActionAdapters(),
            config,
            lexer=lexer,
            file_uploads=self.file_uploads,
        )

    async def cancel_chat(self, chat_id: int) -> bool:
        """
        Ask the chat's stream to stop.

        The running stream emits its own end event. With nothing running the
        end event is sent here so the caller always sees one.
        """
        if self.registry.cancel(chat_id):
            logger.info(f"Aborted stream for chat {chat_id}")
        else:
            logger.warning(f"No active stream found for chat {chat_id}")
            await self.sink.send(EndEvent(chat_id, updated_files=False))
        return True

    def _attachment_prompt(self, chat_id: int, attachments: list[Attachment]) -> str:
        if not attachments:
            return ""
        info = "\n\nAttachments:\n"
        for attachment in attachments:
            if attachment.attachment_type == "upload-to-codebase":
                ATTACHMENT_DIR.mkdir(parents=True, exist_ok=True)
                file_path = ATTACHMENT_DIR / f"{uuid.uuid4().hex}{Path(attachment.name).suffix}"
                file_path.write_bytes(attachment.data)
                file_id = self.file_uploads.add(chat_id, file_path, attachment.name)
                info += f"\n\nFile to upload to codebase: {attachment.name} (file id: {file_id})\n"
                continue

            info += f"- {attachment.name} ({attachment.mime_type})\n"
            if attachment.is_text:
                try:
                    content = attachment.data.decode("utf-8")
                except UnicodeDecodeError as e:
                    logger.error(f"Error reading attachment {attachment.name}: {e}")
                    continue
                info += (
                    f'<dyad-text-attachment filename="{escape_xml_attr(attachment.name)}" '
                    f'type="{escape_xml_attr(attachment.mime_type)}">\n{content}\n</dyad-text-attachment>\n\n'
                )
        return info

    def _codebase_history(self, app_path: Path) -> list[ConversationMessage]:
        if not app_path.is_dir():
            return []
        snapshot = extract_codebase(VirtualFileSystem(app_path))
        return [
            {"role": "user", "content": create_codebase_prompt(snapshot.formatted_output)},
            {"role": "assistant", "content": CODEBASE_ACKNOWLEDGEMENT},
        ]

    def _system_prompt(self, app_path: Path) -> str:
        ai_rules = None
        rules_path = app_path / AI_RULES_FILE
        if rules_path.is_file():
            ai_rules = rules_path.read_text(encoding="utf-8")
        return construct_system_prompt(
            self.config.chat.chat_mode,
            ai_rules=ai_rules,
            enable_turbo_edits_v2=self.config.correction.enable_turbo_edits_v2,
        )

    async def _snapshot(self, chat_id: int) -> list[MessageRecord]:
        chat = await self.store.get_chat(chat_id)
        await self.sink.send(ChunkEvent(chat_id, chat.messages))
        return chat.messages

    async def _record_cancellation(self, chat_id: int, message_id: int, full_response: str) -> None:
        """Persist the partial text with the cancellation marker, once per session."""
        if not self.registry.mark_cancel_recorded(chat_id):
            return
        partial = self.registry.partial(chat_id)
        if partial is None:
            partial = full_response
        await self.store.update_message(chat_id, message_id, content=f"{partial}{CANCELLED_SUFFIX}")
        logger.info(f"Updated cancelled response for message {message_id} in chat {chat_id}")

    async def stream_chat(
        self,
        chat_id: int,
        prompt: str,
        attachments: list[Attachment] | None = None,
        selected_components: list[SelectedComponent] | None = None,
    ) -> StreamOutcome:
        """Run one user turn. Never raises for provider, apply or cancellation failures."""
        try:
            token = self.registry.begin(chat_id)
        except SessionAlreadyActiveError as e:
            logger.warning(str(e))
            await self.sink.send(ErrorEvent(chat_id, str(e)))
            return StreamOutcome(OutcomeKind.FAILED, chat_id, error=str(e))

        message_id: int | None = None
        full_response = ""
        try:
            chat = await self.store.get_chat(chat_id)
            app_path = Path(chat.app.path)
            prior_messages = list(chat.messages)

            user_prompt = prompt
            user_prompt += self._attachment_prompt(chat_id, attachments or [])
            user_prompt += render_selected_components(app_path, selected_components or [])

            await self.store.add_message(chat_id, "user", user_prompt)
            placeholder = await self.store.add_message(chat_id, "assistant", "")
            message_id = placeholder.id
            self.registry.attach_message(chat_id, message_id)
            visible = await self._snapshot(chat_id)

            history = build_history(prior_messages, self.config.chat.max_chat_turns_in_context)
            history.append({"role": "user", "content": user_prompt})
            messages = [*self._codebase_history(app_path), *history]
            system = self._system_prompt(app_path)

            async def on_update(text: str) -> None:
                await self.registry.persist(chat_id, text)
                snapshot = [*visible[:-1], visible[-1].model_copy(update={"content": text})]
                await self.sink.send(ChunkEvent(chat_id, snapshot))

            tools = self.tools if self.config.chat.chat_mode == ChatMode.AGENT.value else None
            result = await process_stream_chunks(
                self.model_client.stream(messages, system=system, tools=tools),
                full_response,
                token,
                on_update,
                chat_id=chat_id,
            )
            full_response = result.full_response

            if not result.cancelled:
                correction = await self.corrector.run(
                    CorrectionContext(
                        chat_id=chat_id,
                        app_path=app_path,
                        full_response=full_response,
                        history=messages,
                        token=token,
                        on_update=on_update,
                        system=system,
                        read_only=self.config.read_only,
                    )
                )
                full_response = correction.full_response
                cancelled = correction.cancelled
            else:
                cancelled = True

            if cancelled or token.cancelled:
                await self._record_cancellation(chat_id, message_id, full_response)
                await self.sink.send(EndEvent(chat_id, updated_files=False))
                return StreamOutcome(OutcomeKind.CANCELLED, chat_id, full_response)

            return await self._finalize(chat_id, message_id, full_response, chat.title)

        except Exception as e:
            if token.cancelled and message_id is not None:
                await self._record_cancellation(chat_id, message_id, full_response)
                await self.sink.send(EndEvent(chat_id, updated_files=False))
                return StreamOutcome(OutcomeKind.CANCELLED, chat_id, full_response)

            if isinstance(e, LLMError):
                logger.error(f"AI stream error for chat {chat_id}: {e}")
                error = f"{AI_STREAMING_ERROR_MESSAGE_PREFIX}{e}"
            elif isinstance(e, ChatNotFoundError):
                logger.error(f"Chat not found: {chat_id}")
                error = f"{PROCESSING_ERROR_MESSAGE_PREFIX}{e}"
            else:
                logger.exception(f"Error calling LLM for chat {chat_id}")
                error = f"{PROCESSING_ERROR_MESSAGE_PREFIX}{e}"
            await self.sink.send(ErrorEvent(chat_id, error))
            return StreamOutcome(OutcomeKind.FAILED, chat_id, full_response, error=error)

        finally:
            self.registry.end(chat_id)

    async def _finalize(
        self,
        chat_id: int,
        message_id: int,
        full_response: str,
        current_title: str | None,
    ) -> StreamOutcome:
        chat_summary = self.lexer.chat_summary(full_response)
        if chat_summary and current_title is None:
            await self.store.set_chat_title(chat_id, chat_summary)

        await self.store.update_message(chat_id, message_id, content=full_response)

        if not (self.config.chat.auto_approve_changes and not self.config.read_only):
            await self.sink.send(EndEvent(chat_id, updated_files=False))
            return StreamOutcome(OutcomeKind.COMPLETED, chat_id, full_response)

        mutation = await self.engine.process_full_response_actions(
            full_response, chat_id, message_id, chat_summary=chat_summary
        )
        await self._snapshot(chat_id)

        if mutation.error:
            error = f"{APPLY_ERROR_MESSAGE_PREFIX}{mutation.error}"
            await self.sink.send(ErrorEvent(chat_id, error))
            return StreamOutcome(OutcomeKind.FAILED, chat_id, full_response, mutation=mutation, error=error)

        await self.sink.send(
            EndEvent(
                chat_id,
                updated_files=mutation.updated_files,
                extra_files=mutation.extra_files,
                extra_files_error=mutation.extra_files_error,
            )
        )
        return StreamOutcome(OutcomeKind.COMPLETED, chat_id, full_response, mutation=mutation)


__all__ = [
    "AI_STREAMING_ERROR_MESSAGE_PREFIX",
    "APPLY_ERROR_MESSAGE_PREFIX",
    "Attachment",
    "CANCELLED_SUFFIX",
    "ChatEvent",
    "ChatEventSink",
    "ChatStreamPipeline",
    "ChunkEvent",
    "EndEvent",
    "ErrorEvent",
    "PROCESSING_ERROR_MESSAGE_PREFIX",
    "RecordingSink",
    "SelectedComponent",
    "StreamOutcome",
    "build_history",
    "render_selected_components",
]
