"""
Shared types and exceptions for tagstream.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, TypedDict


class TagstreamError(Exception):
    """Base class for tagstream errors."""

    pass


class SessionAlreadyActiveError(TagstreamError):
    """A stream is already running for this chat."""

    def __init__(self, chat_id: int):
        super().__init__(f"A stream is already active for chat {chat_id}")
        self.chat_id = chat_id


class GitError(TagstreamError):
    """A git command exited with a non-zero status."""

    def __init__(self, message: str, args: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = args or []
        self.stderr = stderr


class AdapterError(TagstreamError):
    """An external action (install, SQL, deploy) failed."""

    pass


class ChatNotFoundError(TagstreamError):
    """No chat (or no app for the chat) exists for the given id."""

    pass


class ChatMode(str, Enum):
    """How the assistant is allowed to act on the codebase."""

    BUILD = "build"
    ASK = "ask"  # read-only
    AGENT = "agent"


class OutcomeKind(str, Enum):
    """Terminal state of one stream_chat invocation."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ConversationMessage(TypedDict):
    """A chat turn in the provider-neutral shape."""

    role: Literal["user", "assistant"]
    content: str


__all__ = [
    "AdapterError",
    "ChatMode",
    "ChatNotFoundError",
    "ConversationMessage",
    "GitError",
    "OutcomeKind",
    "SessionAlreadyActiveError",
    "TagstreamError",
]
