"""
Persisted chat state.

One JSON file per chat under {base_dir}/chat_{id}.json, written atomically.
Apps are stored alongside in apps.json.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from .types import ChatNotFoundError

logger = logging.getLogger(__name__)

ApprovalState = Literal["approved", "rejected"]


class AppRecord(BaseModel):
    """An app the assistant edits."""

    id: int
    name: str
    path: str
    supabase_project_id: str | None = None
    supabase_organization_slug: str | None = None


class MessageRecord(BaseModel):
    """One turn in a chat."""

    id: int
    role: Literal["user", "assistant"]
    content: str = ""
    commit_hash: str | None = None
    approval_state: ApprovalState | None = None
    created_at: float = Field(default_factory=time.time)
    max_tokens_used: int | None = None


class ChatRecord(BaseModel):
    """A chat bound to one app."""

    id: int
    app: AppRecord
    title: str | None = None
    messages: list[MessageRecord] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)

    def get_message(self, message_id: int) -> MessageRecord | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class MessageStore(Protocol):
    """Storage the pipeline and apply engine read and write through."""

    async def get_chat(self, chat_id: int) -> ChatRecord: ...

    async def add_message(self, chat_id: int, role: str, content: str) -> MessageRecord: ...

    async def update_message(self, chat_id: int, message_id: int, **fields: Any) -> MessageRecord: ...

    async def write_partial(self, chat_id: int, message_id: int, text: str) -> None: ...

    async def set_chat_title(self, chat_id: int, title: str) -> None: ...


class JsonChatStore:
    """
    File-backed MessageStore.

    Example:
        store = JsonChatStore(Path("~/.tagstream/chats").expanduser())
        app = store.create_app("todo", "/path/to/todo")
        chat = store.create_chat(app)
    """

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # -- files -----------------------------------------------------------

    def _chat_file(self, chat_id: int) -> Path:
        return self.base_dir / f"chat_{chat_id}.json"

    def _apps_file(self) -> Path:
        return self.base_dir / "apps.json"

    def _atomic_write(self, target_path: Path, payload: str) -> None:
        """Write-to-temp-then-rename so readers never see a torn file."""
        fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=f"{target_path.stem}_", dir=self.base_dir)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(temp_path, target_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _load_chat(self, chat_id: int) -> ChatRecord:
        path = self._chat_file(chat_id)
        if not path.exists():
            raise ChatNotFoundError(f"Chat not found: {chat_id}")
        return ChatRecord.model_validate_json(path.read_text())

    def _save_chat(self, chat: ChatRecord) -> None:
        self._atomic_write(self._chat_file(chat.id), chat.model_dump_json(indent=2))

    def _load_apps(self) -> list[AppRecord]:
        path = self._apps_file()
        if not path.exists():
            return []
        return [AppRecord.model_validate(item) for item in json.loads(path.read_text())]

    # -- apps and chats --------------------------------------------------

    def create_app(
        self,
        name: str,
        path: str | Path,
        supabase_project_id: str | None = None,
        supabase_organization_slug: str | None = None,
    ) -> AppRecord:
        apps = self._load_apps()
        app = AppRecord(
            id=max((a.id for a in apps), default=0) + 1,
            name=name,
            path=str(path),
            supabase_project_id=supabase_project_id,
            supabase_organization_slug=supabase_organization_slug,
        )
        apps.append(app)
        self._atomic_write(self._apps_file(), json.dumps([a.model_dump() for a in apps], indent=2))
        return app

    def create_chat(self, app: AppRecord, chat_id: int | None = None, title: str | None = None) -> ChatRecord:
        if chat_id is None:
            existing = [int(p.stem.split("_", 1)[1]) for p in self.base_dir.glob("chat_*.json")]
            chat_id = max(existing, default=0) + 1
        chat = ChatRecord(id=chat_id, app=app, title=title)
        self._save_chat(chat)
        logger.info(f"Created chat {chat_id} for app {app.name}")
        return chat

    def chat_exists(self, chat_id: int) -> bool:
        return self._chat_file(chat_id).exists()

    # -- MessageStore ----------------------------------------------------

    async def get_chat(self, chat_id: int) -> ChatRecord:
        return self._load_chat(chat_id)

    async def add_message(self, chat_id: int, role: str, content: str) -> MessageRecord:
        chat = self._load_chat(chat_id)
        message = MessageRecord(
            id=max((m.id for m in chat.messages), default=0) + 1,
            role=role,  # type: ignore[arg-type]
            content=content,
        )
        chat.messages.append(message)
        self._save_chat(chat)
        return message

    async def update_message(self, chat_id: int, message_id: int, **fields: Any) -> MessageRecord:
        chat = self._load_chat(chat_id)
        message = chat.get_message(message_id)
        if message is None:
            raise ChatNotFoundError(f"Message {message_id} not found in chat {chat_id}")
        for name, value in fields.items():
            if name not in MessageRecord.model_fields:
                raise ValueError(f"Unknown message field: {name}")
            setattr(message, name, value)
        self._save_chat(chat)
        return message

    async def write_partial(self, chat_id: int, message_id: int, text: str) -> None:
        await self.update_message(chat_id, message_id, content=text)

    async def set_chat_title(self, chat_id: int, title: str) -> None:
        chat = self._load_chat(chat_id)
        chat.title = title
        self._save_chat(chat)


__all__ = [
    "AppRecord",
    "ApprovalState",
    "ChatRecord",
    "JsonChatStore",
    "MessageRecord",
    "MessageStore",
]
