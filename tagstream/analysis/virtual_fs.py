"""
In-memory overlay of proposed file changes on top of an app directory.

Reads fall through to disk unless the path was written, renamed or deleted by
the overlay. Nothing is ever written back to disk.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from ..paths import safe_join
from ..tag_parser import normalize_path
from ..tags import RenameTag, WriteTag

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "dist", "build"})


class VirtualFileSystem:
    """
    Overlay of proposed writes/renames/deletes.

    Example:
        vfs = VirtualFileSystem(app_path)
        vfs.apply_response_changes(deletes, renames, writes)
        vfs.read_file("src/App.tsx")
    """

    def __init__(self, app_path: str | Path):
        self.app_path = Path(app_path)
        self._files: dict[str, str] = {}
        self._deleted: set[str] = set()

    def apply_response_changes(
        self,
        delete_paths: Iterable[str] = (),
        renames: Iterable[RenameTag] = (),
        writes: Iterable[WriteTag] = (),
    ) -> None:
        """Apply changes in the same order the apply engine uses."""
        for path in delete_paths:
            self.delete_file(path)
        for rename in renames:
            self.rename_file(rename.from_path, rename.to_path)
        for write in writes:
            self.write_file(write.path, write.content)

    def write_file(self, path: str, content: str) -> None:
        key = normalize_path(path)
        self._files[key] = content
        self._deleted.discard(key)

    def delete_file(self, path: str) -> None:
        key = normalize_path(path)
        self._files.pop(key, None)
        # Deleting a directory hides everything below it.
        prefix = key.rstrip("/") + "/"
        for existing in [p for p in self._files if p.startswith(prefix)]:
            del self._files[existing]
        self._deleted.add(key)

    def rename_file(self, from_path: str, to_path: str) -> None:
        source = normalize_path(from_path)
        content = self.read_file(source)
        if content is None:
            logger.warning(f"Virtual rename source does not exist: {source}")
            return
        self.delete_file(source)
        self.write_file(to_path, content)

    def _is_deleted(self, key: str) -> bool:
        if key in self._files:
            return False
        parts = key.split("/")
        for i in range(1, len(parts) + 1):
            if "/".join(parts[:i]) in self._deleted:
                return True
        return False

    def _disk_path(self, key: str) -> Path | None:
        try:
            return safe_join(self.app_path, key)
        except ValueError:
            return None

    def file_exists(self, path: str) -> bool:
        key = normalize_path(path)
        if key in self._files:
            return True
        if self._is_deleted(key):
            return False
        disk = self._disk_path(key)
        return disk is not None and disk.is_file()

    def read_file(self, path: str) -> str | None:
        """Return overlay content, disk content, or None if the file is absent."""
        key = normalize_path(path)
        if key in self._files:
            return self._files[key]
        if self._is_deleted(key):
            return None
        disk = self._disk_path(key)
        if disk is None or not disk.is_file():
            return None
        try:
            return disk.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Could not read {key}: {e}")
            return None

    def list_files(self) -> list[str]:
        """All files visible through the overlay, sorted."""
        visible: set[str] = set()
        if self.app_path.is_dir():
            for path in self.app_path.rglob("*"):
                rel = path.relative_to(self.app_path)
                if any(part in IGNORED_DIRS for part in rel.parts):
                    continue
                if path.is_file():
                    key = rel.as_posix()
                    if not self._is_deleted(key):
                        visible.add(key)
        visible.update(self._files)
        return sorted(visible)

    def changed_files(self) -> list[str]:
        """Paths written by the overlay."""
        return sorted(self._files)


__all__ = ["IGNORED_DIRS", "VirtualFileSystem"]
