"""
External actions invoked by the apply engine.

- PackageManagerInstaller: `pnpm add`, falling back to `npm install --legacy-peer-deps`
- SupabaseManagementClient: SQL, edge-function deploy/delete over the Management API v1
- write_migration_file: numbered SQL migrations under supabase/migrations/

Every adapter raises AdapterError on failure; the apply engine turns those into
warnings/errors on the message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import os
import re
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict

from ..types import AdapterError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path("supabase") / "migrations"
FUNCTIONS_DIR = Path("supabase") / "functions"
SHARED_DIR_NAME = "_shared"
DEFAULT_API_BASE = "https://api.supabase.com"


class DeployedFunctionInfo(BaseModel):
    """Function record returned by the Management API."""

    model_config = ConfigDict(extra="allow")

    id: str
    slug: str
    name: str
    status: str = "ACTIVE"
    version: int = 0
    entrypoint_path: str | None = None
    import_map_path: str | None = None
    verify_jwt: bool | None = None


class ActionAdapters(Protocol):
    """Side-effecting actions outside the working tree."""

    async def install_dependencies(self, packages: list[str], app_path: Path) -> str: ...

    async def execute_sql(self, project_id: str, query: str, organization_slug: str | None = None) -> str: ...

    async def deploy_function(
        self, project_id: str, name: str, app_path: Path, organization_slug: str | None = None
    ) -> DeployedFunctionInfo: ...

    async def deploy_all_functions(
        self, project_id: str, app_path: Path, organization_slug: str | None = None
    ) -> list[str]: ...

    async def delete_function(self, project_id: str, name: str, organization_slug: str | None = None) -> None: ...

    async def write_migration_file(self, app_path: Path, sql: str, description: str | None) -> str: ...


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


class PackageManagerInstaller:
    """Installs npm packages with pnpm, falling back to npm."""

    async def _run(self, args: list[str], cwd: Path) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            return 127, f"{args[0]}: command not found"
        stdout, _ = await process.communicate()
        return process.returncode or 0, stdout.decode("utf-8", errors="replace")

    async def install(self, packages: list[str], app_path: Path) -> str:
        """Install packages and return the installer's output."""
        if not packages:
            return ""
        logger.info(f"Installing packages in {app_path}: {' '.join(packages)}")

        code, output = await self._run(["pnpm", "add", *packages], app_path)
        if code == 0:
            return output

        logger.warning(f"pnpm add failed ({code}), falling back to npm")
        code, npm_output = await self._run(["npm", "install", "--legacy-peer-deps", *packages], app_path)
        if code == 0:
            return npm_output
        raise AdapterError(f"Failed to install packages {', '.join(packages)}:\n{output}\n{npm_output}".strip())


# ---------------------------------------------------------------------------
# SQL migrations
# ---------------------------------------------------------------------------

_MIGRATION_NUMBER = re.compile(r"^(\d+)_")


def _slugify(text: str | None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", (text or "").lower()).strip("_")
    return slug[:50].rstrip("_") or "migration"


def write_migration_file(app_path: Path, sql: str, description: str | None) -> str:
    """
    Write sql as the next numbered migration and return its app-relative path.

    Files are named NNNN_{slug}.sql, numbered one past the highest existing
    migration.
    """
    migrations_dir = Path(app_path) / MIGRATIONS_DIR
    migrations_dir.mkdir(parents=True, exist_ok=True)

    highest = -1
    for entry in migrations_dir.iterdir():
        match = _MIGRATION_NUMBER.match(entry.name)
        if entry.is_file() and entry.suffix == ".sql" and match:
            highest = max(highest, int(match.group(1)))

    filename = f"{highest + 1:04d}_{_slugify(description)}.sql"
    (migrations_dir / filename).write_text(sql, encoding="utf-8")
    relative = (MIGRATIONS_DIR / filename).as_posix()
    logger.info(f"Wrote migration file {relative}")
    return relative


# ---------------------------------------------------------------------------
# Supabase Management API
# ---------------------------------------------------------------------------


def _collect_files(directory: Path, prefix: str) -> list[tuple[str, bytes]]:
    files = []
    for path in sorted(directory.rglob("*")):
        if path.is_file():
            relative = f"{prefix}/{path.relative_to(directory).as_posix()}"
            files.append((relative, path.read_bytes()))
    return files


class SupabaseManagementClient:
    """
    Minimal async client for the Supabase Management API v1.

    Usage:
        async with SupabaseManagementClient(access_token) as client:
            await client.execute_sql("project-ref", "select 1")
    """

    MAX_RETRIES = 3

    def __init__(
        self,
        access_token: str | None = None,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delay: float = 1.0,
    ):
        self.access_token = access_token or os.environ.get("SUPABASE_ACCESS_TOKEN")
        self.api_base = api_base.rstrip("/")
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(base_url=self.api_base, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "SupabaseManagementClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.access_token:
            raise AdapterError("Supabase access token required. Set SUPABASE_ACCESS_TOKEN environment variable.")
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying on 429 with exponential backoff."""
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
            except httpx.HTTPError as e:
                raise AdapterError(f"Failed to {action}: {e}") from e
            if response.status_code != 429 or attempt == self.MAX_RETRIES:
                return response
            delay = self.retry_delay * (2**attempt)
            logger.warning(f"Rate limited during '{action}', retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
        return response

    @staticmethod
    def _raise_for(response: httpx.Response, action: str, expected: tuple[int, ...]) -> None:
        if response.status_code not in expected:
            raise AdapterError(
                f"Failed to {action}: {response.reason_phrase} ({response.status_code}) - {response.text}"
            )

    async def execute_sql(self, project_id: str, query: str) -> str:
        response = await self._request(
            "POST",
            f"/v1/projects/{project_id}/database/query",
            "execute SQL",
            json={"query": query},
        )
        self._raise_for(response, "execute SQL", (200, 201))
        return json.dumps(response.json())

    async def list_functions(self, project_id: str) -> list[DeployedFunctionInfo]:
        response = await self._request("GET", f"/v1/projects/{project_id}/functions", "list functions")
        self._raise_for(response, "list functions", (200,))
        return [DeployedFunctionInfo.model_validate(item) for item in response.json()]

    async def delete_function(self, project_id: str, name: str) -> None:
        logger.info(f"Deleting Supabase function: {name} from project: {project_id}")
        response = await self._request("DELETE", f"/v1/projects/{project_id}/functions/{name}", "delete function")
        self._raise_for(response, "delete function", (200, 204))

    async def deploy_function(
        self, project_id: str, name: str, app_path: Path, bundle_only: bool = False
    ) -> DeployedFunctionInfo:
        """Upload supabase/functions/{name} together with the shared modules."""
        functions_dir = Path(app_path) / FUNCTIONS_DIR
        function_dir = functions_dir / name
        if not function_dir.is_dir():
            raise AdapterError(f"Unable to locate directory for Supabase function {name}")
        if not (function_dir / "index.ts").is_file():
            raise AdapterError(f"Supabase function {name} is missing an index.ts entrypoint")

        files = _collect_files(function_dir, name)
        shared_dir = functions_dir / SHARED_DIR_NAME
        if shared_dir.is_dir():
            files.extend(_collect_files(shared_dir, SHARED_DIR_NAME))

        entrypoint = f"{name}/index.ts"
        import_map = f"{name}/import_map.json"
        files.append((import_map, json.dumps({"imports": {}}, indent=2).encode("utf-8")))

        metadata = {
            "entrypoint_path": entrypoint,
            "name": name,
            "verify_jwt": False,
            "import_map_path": import_map,
        }
        multipart = [
            ("file", (relative, content, mimetypes.guess_type(relative)[0] or "application/typescript"))
            for relative, content in files
        ]
        params = {"slug": name}
        if bundle_only:
            params["bundleOnly"] = "true"

        response = await self._request(
            "POST",
            f"/v1/projects/{project_id}/functions/deploy",
            "create function",
            params=params,
            data={"metadata": json.dumps(metadata)},
            files=multipart,
        )
        self._raise_for(response, "create function", (201,))
        logger.info(
            f"Deployed Supabase function: {name} to project: {project_id}{' (bundle only)' if bundle_only else ''}"
        )
        return DeployedFunctionInfo.model_validate(response.json())

    async def bulk_update_functions(self, project_id: str, functions: list[DeployedFunctionInfo]) -> None:
        response = await self._request(
            "PUT",
            f"/v1/projects/{project_id}/functions",
            "bulk update functions",
            json=[f.model_dump(exclude_none=True) for f in functions],
        )
        self._raise_for(response, "bulk update functions", (200,))

    async def deploy_all_functions(self, project_id: str, app_path: Path, prune: bool = True) -> list[str]:
        """
        Bundle every function, activate them in one bulk update, then prune
        deployed functions that no longer exist locally.

        Returns error messages; never raises for individual function failures.
        """
        functions_dir = Path(app_path) / FUNCTIONS_DIR
        if not functions_dir.is_dir():
            logger.info(f"No supabase/functions directory found at {functions_dir}")
            return []

        names = []
        for entry in sorted(functions_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("_"):
                continue
            if (entry / "index.ts").is_file():
                names.append(entry.name)
            else:
                logger.warning(f"Skipping {entry.name}: index.ts not found")

        errors: list[str] = []
        results = await asyncio.gather(
            *(self.deploy_function(project_id, name, app_path, bundle_only=True) for name in names),
            return_exceptions=True,
        )
        bundled: list[DeployedFunctionInfo] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                message = f"Failed to bundle {name}: {result}"
                logger.error(message)
                errors.append(message)
            else:
                bundled.append(result)

        if bundled:
            try:
                await self.bulk_update_functions(project_id, bundled)
            except AdapterError as e:
                errors.append(f"Failed to bulk update functions: {e}")

        if prune:
            try:
                local = set(names)
                for deployed in await self.list_functions(project_id):
                    if deployed.slug not in local:
                        try:
                            await self.delete_function(project_id, deployed.slug)
                            logger.info(f"Pruned dangling edge function: {deployed.slug}")
                        except AdapterError as e:
                            errors.append(f"Failed to prune edge function {deployed.slug}: {e}")
            except AdapterError as e:
                errors.append(f"Failed to check for dangling edge functions: {e}")

        return errors


class DefaultActionAdapters:
    """ActionAdapters backed by the local package manager and the Management API."""

    def __init__(
        self,
        installer: PackageManagerInstaller | None = None,
        supabase: SupabaseManagementClient | None = None,
    ):
        self.installer = installer or PackageManagerInstaller()
        self._supabase = supabase

    @property
    def supabase(self) -> SupabaseManagementClient:
        if self._supabase is None:
            self._supabase = SupabaseManagementClient()
        return self._supabase

    async def install_dependencies(self, packages: list[str], app_path: Path) -> str:
        return await self.installer.install(packages, app_path)

    async def execute_sql(self, project_id: str, query: str, organization_slug: str | None = None) -> str:
        return await self.supabase.execute_sql(project_id, query)

    async def deploy_function(
        self, project_id: str, name: str, app_path: Path, organization_slug: str | None = None
    ) -> DeployedFunctionInfo:
        return await self.supabase.deploy_function(project_id, name, app_path)

    async def deploy_all_functions(
        self, project_id: str, app_path: Path, organization_slug: str | None = None
    ) -> list[str]:
        return await self.supabase.deploy_all_functions(project_id, app_path)

    async def delete_function(self, project_id: str, name: str, organization_slug: str | None = None) -> None:
        await self.supabase.delete_function(project_id, name)

    async def write_migration_file(self, app_path: Path, sql: str, description: str | None) -> str:
        return write_migration_file(app_path, sql, description)


__all__ = [
    "ActionAdapters",
    "DefaultActionAdapters",
    "DeployedFunctionInfo",
    "PackageManagerInstaller",
    "SupabaseManagementClient",
    "write_migration_file",
]
