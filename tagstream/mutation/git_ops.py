"""
Async wrappers around the git CLI.

The commit identity is passed with -c user.name/-c user.email so both author
and committer are set without touching the repository config.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from ..types import GitError

logger = logging.getLogger(__name__)


@dataclass
class GitAuthor:
    name: str = "tagstream"
    email: str = "tagstream@localhost"


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str


class GitRepository:
    """
    A working tree operated on through the git executable.

    Example:
        repo = GitRepository(app_path, GitAuthor("me", "me@example.com"))
        await repo.add("src/App.tsx")
        commit_hash = await repo.commit("update app")
    """

    def __init__(self, path: str | Path, author: GitAuthor | None = None, git_executable: str = "git"):
        self.path = Path(path)
        self.author = author or GitAuthor()
        self.git_executable = git_executable

    async def _exec(self, args: list[str]) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_executable,
                *args,
                cwd=str(self.path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise GitError(f"git executable not found: {self.git_executable}", args) from e
        stdout, stderr = await process.communicate()
        return GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _exec_or_raise(self, args: list[str], error_message: str | None = None) -> GitResult:
        result = await self._exec(args)
        if result.returncode != 0:
            details = result.stderr.strip() or result.stdout.strip()
            message = f"{error_message}: {details}" if error_message else f"Git command failed: {' '.join(args)}. {details}"
            raise GitError(message, args, result.stderr)
        return result

    def _with_author(self, args: list[str]) -> list[str]:
        return [
            "-c",
            f"user.name={self.author.name}",
            "-c",
            f"user.email={self.author.email}",
            *args,
        ]

    async def init(self, branch: str = "main") -> None:
        await self._exec_or_raise(["init", "-b", branch], f"Failed to initialize git repository with branch '{branch}'")

    async def add(self, filepath: str) -> None:
        await self._exec_or_raise(["add", "--", filepath], f"Failed to stage {filepath}")

    async def add_all(self) -> None:
        await self._exec_or_raise(["add", "."], "Failed to stage all changes")

    async def remove(self, filepath: str) -> None:
        await self._exec_or_raise(["rm", "-r", "-f", "--", filepath], f"Failed to remove {filepath}")

    async def commit(self, message: str, amend: bool = False) -> str:
        """Commit the index and return the new HEAD hash."""
        args = ["commit", "-m", message]
        if amend:
            args.append("--amend")
        await self._exec_or_raise(self._with_author(args), "Failed to create commit")
        return await self.current_commit_hash()

    async def current_commit_hash(self) -> str:
        result = await self._exec_or_raise(["rev-parse", "HEAD"], "Failed to get commit hash")
        return result.stdout.strip()

    async def uncommitted_files(self) -> list[str]:
        """Paths reported by `git status --porcelain`."""
        result = await self._exec_or_raise(["status", "--porcelain"], "Failed to get uncommitted files")
        files = []
        for line in result.stdout.split("\n"):
            if not line.strip():
                continue
            entry = line[3:].strip()
            # Renames are reported as "old -> new".
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            files.append(entry.strip('"'))
        return files

    async def has_staged_changes(self) -> bool:
        result = await self._exec(["diff", "--cached", "--quiet"])
        if result.returncode not in (0, 1):
            raise GitError(f"Failed to inspect index: {result.stderr.strip()}", ["diff", "--cached"], result.stderr)
        return result.returncode == 1


__all__ = ["GitAuthor", "GitRepository", "GitResult"]
