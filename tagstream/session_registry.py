"""
Session registry: one live stream per chat.

Owns the cancellation token and the throttled partial-response cache for every
active chat. Constructed once per process and passed to whoever needs it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .types import SessionAlreadyActiveError

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_THROTTLE_MS = 150


class CancellationToken:
    """Cooperative abort signal shared by every stage of one stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Signal cancellation. Safe to call repeatedly."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class PartialResponseSink(Protocol):
    """Durable storage for in-flight assistant text."""

    async def write_partial(self, chat_id: int, message_id: int, text: str) -> None: ...


@dataclass
class Session:
    """State for one chat's live stream."""

    chat_id: int
    token: CancellationToken
    message_id: int | None = None
    partial_text: str = ""
    last_persisted_text: str | None = None
    last_persist_at: float | None = None
    cancel_recorded: bool = False
    started_at: float = field(default_factory=time.monotonic)


class SessionRegistry:
    """
    Tracks live streams keyed by chat id.

    Usage:
        registry = SessionRegistry(sink=store)
        token = registry.begin(chat_id, message_id)
        try:
            ...
            await registry.persist(chat_id, text)
        finally:
            registry.end(chat_id)
    """

    def __init__(
        self,
        sink: PartialResponseSink | None = None,
        persist_throttle_ms: int = DEFAULT_PERSIST_THROTTLE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sessions: dict[int, Session] = {}
        self._sink = sink
        self._throttle_s = persist_throttle_ms / 1000.0
        self._clock = clock

    def begin(self, chat_id: int, message_id: int | None = None) -> CancellationToken:
        """
        Register a new stream for chat_id.

        Raises:
            SessionAlreadyActiveError: If chat_id already has a live stream.
        """
        if chat_id in self._sessions:
            raise SessionAlreadyActiveError(chat_id)
        token = CancellationToken()
        self._sessions[chat_id] = Session(chat_id=chat_id, token=token, message_id=message_id)
        logger.info(f"Session started for chat {chat_id}")
        return token

    def attach_message(self, chat_id: int, message_id: int) -> None:
        """Bind the assistant placeholder once it has been created."""
        session = self._sessions.get(chat_id)
        if session is not None:
            session.message_id = message_id

    def cancel(self, chat_id: int) -> bool:
        """Signal the chat's token. Returns False when nothing is running."""
        session = self._sessions.get(chat_id)
        if session is None:
            return False
        if not session.token.cancelled:
            logger.info(f"Cancellation requested for chat {chat_id}")
        session.token.cancel()
        return True

    async def persist(self, chat_id: int, text: str) -> bool:
        """
        Record the latest partial text; flush to the sink at most once per window.

        Returns True if a durable write happened.
        """
        session = self._sessions.get(chat_id)
        if session is None:
            return False
        session.partial_text = text

        if self._sink is None or session.message_id is None:
            return False
        if text == session.last_persisted_text:
            return False

        now = self._clock()
        if session.last_persist_at is not None and now - session.last_persist_at < self._throttle_s:
            return False

        session.last_persist_at = now
        session.last_persisted_text = text
        await self._sink.write_partial(chat_id, session.message_id, text)
        return True

    async def flush(self, chat_id: int) -> None:
        """Write the cached partial text regardless of the throttle window."""
        session = self._sessions.get(chat_id)
        if session is None or self._sink is None or session.message_id is None:
            return
        if session.partial_text == session.last_persisted_text:
            return
        session.last_persist_at = self._clock()
        session.last_persisted_text = session.partial_text
        await self._sink.write_partial(chat_id, session.message_id, session.partial_text)

    def partial(self, chat_id: int) -> str | None:
        session = self._sessions.get(chat_id)
        return session.partial_text if session else None

    def mark_cancel_recorded(self, chat_id: int) -> bool:
        """True the first time it is called for a session, False afterwards."""
        session = self._sessions.get(chat_id)
        if session is None or session.cancel_recorded:
            return False
        session.cancel_recorded = True
        return True

    def get(self, chat_id: int) -> Session | None:
        return self._sessions.get(chat_id)

    def is_active(self, chat_id: int) -> bool:
        return chat_id in self._sessions

    def active_chat_ids(self) -> list[int]:
        return list(self._sessions)

    def end(self, chat_id: int) -> None:
        """Drop the session and its partial cache. No-op if absent."""
        session = self._sessions.pop(chat_id, None)
        if session is not None:
            elapsed = time.monotonic() - session.started_at
            logger.info(f"Session ended for chat {chat_id} after {elapsed:.2f}s")


__all__ = [
    "CancellationToken",
    "DEFAULT_PERSIST_THROTTLE_MS",
    "PartialResponseSink",
    "Session",
    "SessionRegistry",
]
