"""
Uploaded files awaiting placement in the codebase.

A prompt references each upload by a placeholder token; when the model writes
a file whose whole content is that token, the apply engine substitutes the
uploaded bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "DYAD_ATTACHMENT_"


@dataclass(frozen=True)
class UploadedFile:
    file_path: Path
    original_name: str


class FileUploadsState:
    """Per-chat map of placeholder token -> uploaded file."""

    def __init__(self) -> None:
        self._uploads: dict[int, dict[str, UploadedFile]] = {}

    def add(self, chat_id: int, file_path: str | Path, original_name: str) -> str:
        """Register an upload and return its placeholder token."""
        uploads = self._uploads.setdefault(chat_id, {})
        token = f"{PLACEHOLDER_PREFIX}{len(uploads)}"
        uploads[token] = UploadedFile(Path(file_path), original_name)
        logger.debug(f"Registered upload {original_name} as {token} for chat {chat_id}")
        return token

    def get_for_chat(self, chat_id: int) -> dict[str, UploadedFile]:
        return dict(self._uploads.get(chat_id, {}))

    def clear(self, chat_id: int) -> None:
        self._uploads.pop(chat_id, None)


__all__ = ["FileUploadsState", "PLACEHOLDER_PREFIX", "UploadedFile"]
