"""
Mutation apply engine.

Applies a finalized response to the app's working tree in a fixed order:

    SQL -> dependencies -> deletes -> renames -> search-replace -> writes

then deploys touched edge functions, commits once, and folds any files edited
outside the pipeline into that commit with a single amend.

Adapter failures become <dyad-output> warnings/errors appended to the message;
only an unexpected exception aborts the pass and is reported in
MutationResult.error.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..config import TagstreamConfig
from ..file_uploads import FileUploadsState
from ..paths import safe_join
from ..search_replace import apply_search_replace
from ..store import ChatRecord, MessageStore
from ..tag_parser import TagLexer, default_lexer, set_add_dependency_output
from ..types import AdapterError, ChatNotFoundError, GitError
from ..xml_escape import render_output_block
from .adapters import ActionAdapters
from .git_ops import GitAuthor, GitRepository
from .supabase_paths import extract_function_name_from_path, is_server_function, is_shared_server_module

logger = logging.getLogger(__name__)

LOCK_FILES = ("pnpm-lock.yaml", "package-lock.json")


@dataclass
class OutputNotice:
    """A warning or error shown to the user after the apply pass."""

    message: str
    error: str

    def render(self, kind: str) -> str:
        return render_output_block(kind, self.message, self.error)


@dataclass
class DeployIntent:
    function_name: str
    source_path: str


@dataclass
class DeployPlan:
    """
    Deploys collected during the walk, resolved once afterwards.

    A touched shared module replaces every per-function deploy with one bulk
    redeploy.
    """

    intents: list[DeployIntent] = field(default_factory=list)
    shared_modules_changed: bool = False

    def touch(self, path: str) -> None:
        if is_shared_server_module(path):
            self.shared_modules_changed = True

    def add(self, path: str) -> None:
        """Raises ValueError for paths outside a deployable function directory."""
        self.intents.append(DeployIntent(extract_function_name_from_path(path), path))

    def function_names(self) -> list[str]:
        names: list[str] = []
        for intent in self.intents:
            if intent.function_name not in names:
                names.append(intent.function_name)
        return names

    @property
    def bulk(self) -> bool:
        return self.shared_modules_changed


@dataclass
class MutationResult:
    """Outcome of one apply pass."""

    written_paths: list[str] = field(default_factory=list)
    renamed_paths: list[str] = field(default_factory=list)
    deleted_paths: list[str] = field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    uncommitted_paths: list[str] = field(default_factory=list)
    warnings: list[OutputNotice] = field(default_factory=list)
    errors: list[OutputNotice] = field(default_factory=list)
    updated_files: bool = False
    extra_files_error: str | None = None
    error: str | None = None

    def add_written(self, path: str) -> None:
        if path not in self.written_paths:
            self.written_paths.append(path)

    @property
    def extra_files(self) -> list[str] | None:
        return self.uncommitted_paths or None


def build_commit_message(
    prefix: str,
    chat_summary: str | None,
    written: int,
    renamed: int,
    deleted: int,
    packages: list[str],
    sql_queries: int,
) -> str:
    changes = []
    if written:
        changes.append(f"wrote {written} file(s)")
    if renamed:
        changes.append(f"renamed {renamed} file(s)")
    if deleted:
        changes.append(f"deleted {deleted} file(s)")
    if packages:
        changes.append(f"added {', '.join(packages)} package(s)")
    if sql_queries:
        changes.append(f"executed {sql_queries} SQL queries")
    summary = ", ".join(changes)
    if chat_summary:
        return f"[{prefix}] {chat_summary} - {summary}"
    return f"[{prefix}] {summary}"


class MutationApplyEngine:
    """
    Applies response tags to an app and commits the result.

    Usage:
        engine = MutationApplyEngine(store, adapters, config)
        result = await engine.process_full_response_actions(text, chat_id, message_id)
    """

    def __init__(
        self,
        store: MessageStore,
        adapters: ActionAdapters,
        config: TagstreamConfig,
        lexer: TagLexer = default_lexer,
        file_uploads: FileUploadsState | None = None,
        repo_factory: Callable[[Path], GitRepository] | None = None,
    ):
        self.store = store
        self.adapters = adapters
        self.config = config
        self.lexer = lexer
        self.file_uploads = file_uploads or FileUploadsState()
        self.repo_factory = repo_factory or self._default_repo

    def _default_repo(self, app_path: Path) -> GitRepository:
        return GitRepository(app_path, GitAuthor(self.config.git.author_name, self.config.git.author_email))

    async def process_full_response_actions(
        self,
        full_response: str,
        chat_id: int,
        message_id: int,
        chat_summary: str | None = None,
    ) -> MutationResult:
        uploads = self.file_uploads.get_for_chat(chat_id)
        self.file_uploads.clear(chat_id)
        logger.info(f"Processing response actions for chat {chat_id}")

        result = MutationResult()
        try:
            chat = await self.store.get_chat(chat_id)
        except ChatNotFoundError as e:
            logger.error(f"No app found for chat ID: {chat_id}")
            result.error = str(e)
            return result

        message = chat.get_message(message_id)
        if message is None or message.role != "assistant":
            logger.error(f"No assistant message found for ID: {message_id}")
            result.error = f"No assistant message found for ID: {message_id}"
            return result

        content = full_response
        try:
            content = await self._apply(chat, full_response, message_id, chat_summary, uploads, result)
        except Exception as e:
            logger.exception(f"Error processing files for chat {chat_id}")
            result.error = str(e)
        finally:
            await self._append_notices(chat_id, message_id, content, full_response, result)
        return result

    async def _append_notices(
        self,
        chat_id: int,
        message_id: int,
        content: str,
        full_response: str,
        result: MutationResult,
    ) -> None:
        blocks = [w.render("warning") for w in result.warnings] + [e.render("error") for e in result.errors]
        if blocks:
            content = content + "\n\n" + "\n".join(blocks)
        if blocks or content != full_response:
            await self.store.update_message(chat_id, message_id, content=content)

    async def _apply(
        self,
        chat: ChatRecord,
        full_response: str,
        message_id: int,
        chat_summary: str | None,
        uploads: dict,
        result: MutationResult,
    ) -> str:
        app = chat.app
        app_path = Path(app.path)
        repo = self.repo_factory(app_path)
        project_id = app.supabase_project_id
        org_slug = app.supabase_organization_slug
        content = full_response

        write_tags = self.lexer.write_tags(full_response)
        rename_tags = self.lexer.rename_tags(full_response)
        delete_paths = [tag.path for tag in self.lexer.delete_tags(full_response)]
        packages = self.lexer.dependency_packages(full_response)
        sql_tags = self.lexer.execute_sql_tags(full_response) if project_id else []

        # SQL
        for query in sql_tags:
            try:
                await self.adapters.execute_sql(project_id, query.content, org_slug)
            except (AdapterError, OSError) as e:
                result.errors.append(OutputNotice(f"Failed to execute SQL query: {query.content}", str(e)))
                continue
            if self.config.supabase.enable_write_sql_migration:
                try:
                    migration = await self.adapters.write_migration_file(app_path, query.content, query.description)
                    result.add_written(migration)
                except OSError as e:
                    result.errors.append(
                        OutputNotice(f"Failed to write SQL migration file for: {query.description}", str(e))
                    )
        if sql_tags:
            logger.info(f"Executed {len(sql_tags)} SQL queries")

        # Dependencies
        if packages:
            try:
                output = await self.adapters.install_dependencies(packages, app_path)
                content = set_add_dependency_output(content, output)
            except (AdapterError, OSError) as e:
                result.errors.append(OutputNotice(f"Failed to add dependencies: {', '.join(packages)}", str(e)))
            result.add_written("package.json")
            for lock_file in LOCK_FILES:
                if (app_path / lock_file).exists():
                    result.add_written(lock_file)

        plan = DeployPlan()
        deleted_functions: set[str] = set()

        async def delete_function_once(path: str, notices: list[OutputNotice], message: str) -> None:
            if not project_id:
                return
            try:
                name = extract_function_name_from_path(path)
                if name in deleted_functions:
                    return
                deleted_functions.add(name)
                await self.adapters.delete_function(project_id, name, org_slug)
            except (AdapterError, ValueError) as e:
                notices.append(OutputNotice(message, str(e)))

        def plan_deploy(path: str) -> None:
            if not project_id:
                return
            try:
                plan.add(path)
            except ValueError as e:
                result.errors.append(OutputNotice(f"Failed to deploy Supabase function: {path}", str(e)))

        # Deletes
        for file_path in delete_paths:
            full_path = safe_join(app_path, file_path)
            plan.touch(file_path)
            if full_path.exists():
                if full_path.is_dir():
                    shutil.rmtree(full_path)
                else:
                    full_path.unlink()
                logger.info(f"Successfully deleted file: {full_path}")
                result.deleted_paths.append(file_path)
                try:
                    await repo.remove(file_path)
                except GitError as e:
                    logger.warning(f"Failed to git remove deleted file {file_path}: {e}")
            else:
                logger.warning(f"File to delete does not exist: {full_path}")
            if is_server_function(file_path):
                await delete_function_once(
                    file_path, result.errors, f"Failed to delete Supabase function: {file_path}"
                )

        # Renames
        for tag in rename_tags:
            from_path = safe_join(app_path, tag.from_path)
            to_path = safe_join(app_path, tag.to_path)
            plan.touch(tag.from_path)
            plan.touch(tag.to_path)
            to_path.parent.mkdir(parents=True, exist_ok=True)
            if from_path.exists():
                from_path.rename(to_path)
                logger.info(f"Successfully renamed file: {from_path} -> {to_path}")
                result.renamed_paths.append(tag.to_path)
                await repo.add(tag.to_path)
                try:
                    await repo.remove(tag.from_path)
                except GitError as e:
                    logger.warning(f"Failed to git remove old file {tag.from_path}: {e}")
            else:
                logger.warning(f"Source file for rename does not exist: {from_path}")
            if is_server_function(tag.from_path):
                await delete_function_once(
                    tag.from_path,
                    result.warnings,
                    f"Failed to delete Supabase function: {tag.from_path} as part of renaming "
                    f"{tag.from_path} to {tag.to_path}",
                )
            if is_server_function(tag.to_path):
                plan_deploy(tag.to_path)

        # Search-replace
        for tag in self.lexer.search_replace_tags(full_response):
            full_path = safe_join(app_path, tag.path)
            plan.touch(tag.path)
            if not full_path.exists():
                # Already reported to the model by the repair loop.
                logger.warning(f"Search-replace target file does not exist: {tag.path}")
                continue
            try:
                original = full_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                result.errors.append(OutputNotice(f"Error applying search-replace to {tag.path}", str(e)))
                continue
            applied = apply_search_replace(original, tag.content)
            if not applied.success or applied.content is None:
                logger.warning(f"Failed to apply search-replace to {tag.path}: {applied.error or 'unknown'}")
                continue
            full_path.write_text(applied.content, encoding="utf-8")
            result.add_written(tag.path)
            if is_server_function(tag.path):
                plan_deploy(tag.path)

        # Writes
        for tag in write_tags:
            full_path = safe_join(app_path, tag.path)
            plan.touch(tag.path)
            data: str | bytes = tag.content

            upload = uploads.get(tag.content.strip()) if uploads else None
            if upload is not None:
                try:
                    data = upload.file_path.read_bytes()
                    logger.info(f"Replaced file ID {tag.content.strip()} with content from {upload.original_name}")
                except OSError as e:
                    logger.error(f"Failed to read uploaded file {upload.original_name}: {e}")
                    result.errors.append(OutputNotice(f"Failed to read uploaded file: {upload.original_name}", str(e)))

            full_path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(data, bytes):
                full_path.write_bytes(data)
            else:
                full_path.write_text(data, encoding="utf-8")
            logger.info(f"Successfully wrote file: {full_path}")
            result.add_written(tag.path)
            if is_server_function(tag.path) and isinstance(data, str):
                plan_deploy(tag.path)

        await self._run_deploys(plan, project_id, org_slug, app_path, result)

        result.updated_files = bool(
            result.written_paths or result.renamed_paths or result.deleted_paths or packages
        )
        if result.updated_files:
            await self._commit(repo, app_path, chat.id, message_id, chat_summary, packages, len(sql_tags), result)

        logger.info(f"Marking message {message_id} as approved (updated files: {result.updated_files})")
        await self.store.update_message(chat.id, message_id, approval_state="approved")
        return content

    async def _run_deploys(
        self,
        plan: DeployPlan,
        project_id: str | None,
        org_slug: str | None,
        app_path: Path,
        result: MutationResult,
    ) -> None:
        if not project_id:
            return
        if plan.bulk:
            logger.info("Shared modules changed, redeploying all Supabase functions")
            try:
                for err in await self.adapters.deploy_all_functions(project_id, app_path, org_slug):
                    result.errors.append(
                        OutputNotice("Failed to deploy Supabase function after shared module change", err)
                    )
            except AdapterError as e:
                result.errors.append(
                    OutputNotice("Failed to redeploy all Supabase functions after shared module change", str(e))
                )
            return

        for name in plan.function_names():
            try:
                await self.adapters.deploy_function(project_id, name, app_path, org_slug)
            except AdapterError as e:
                result.errors.append(OutputNotice(f"Failed to deploy Supabase function: {name}", str(e)))

    async def _commit(
        self,
        repo: GitRepository,
        app_path: Path,
        chat_id: int,
        message_id: int,
        chat_summary: str | None,
        packages: list[str],
        sql_queries: int,
        result: MutationResult,
    ) -> None:
        for file_path in result.written_paths:
            if (app_path / file_path).exists():
                await repo.add(file_path)

        if not await repo.has_staged_changes():
            logger.info(f"No staged changes to commit for chat {chat_id}")
            return

        message = build_commit_message(
            self.config.git.commit_prefix,
            chat_summary,
            len(result.written_paths),
            len(result.renamed_paths),
            len(result.deleted_paths),
            packages,
            sql_queries,
        )
        commit_hash = await repo.commit(message)
        logger.info(f"Successfully committed changes: {message}")

        result.uncommitted_paths = await repo.uncommitted_files()
        if result.uncommitted_paths:
            await repo.add_all()
            amended = f"{message} + extra files edited outside of {self.config.git.commit_prefix}"
            try:
                commit_hash = await repo.commit(amended, amend=True)
                message = amended
                logger.info(f"Amended commit with outside changes: {', '.join(result.uncommitted_paths)}")
            except GitError as e:
                logger.error(f"Failed to commit changes outside of the pipeline: {', '.join(result.uncommitted_paths)}")
                result.extra_files_error = str(e)

        result.commit_hash = commit_hash
        result.commit_message = message
        await self.store.update_message(chat_id, message_id, commit_hash=commit_hash)


__all__ = [
    "DeployIntent",
    "DeployPlan",
    "MutationApplyEngine",
    "MutationResult",
    "OutputNotice",
    "build_commit_message",
]
