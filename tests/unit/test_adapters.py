"""Tests for external action adapters (Management API via httpx.MockTransport)."""

import json
from pathlib import Path

import httpx
import pytest

from tagstream.mutation import PackageManagerInstaller, SupabaseManagementClient, write_migration_file
from tagstream.types import AdapterError


def function_record(slug: str) -> dict:
    return {"id": f"id-{slug}", "slug": slug, "name": slug, "status": "ACTIVE", "version": 1}


def make_client(handler) -> SupabaseManagementClient:
    return SupabaseManagementClient(
        access_token="token",
        transport=httpx.MockTransport(handler),
        retry_delay=0,
    )


@pytest.fixture
def functions_app(tmp_path: Path) -> Path:
    functions = tmp_path / "supabase" / "functions"
    (functions / "hello").mkdir(parents=True)
    (functions / "hello" / "index.ts").write_text("Deno.serve(() => new Response('hi'))")
    (functions / "bye").mkdir()
    (functions / "bye" / "index.ts").write_text("Deno.serve(() => new Response('bye'))")
    (functions / "_shared").mkdir()
    (functions / "_shared" / "cors.ts").write_text("export const cors = {}")
    return tmp_path


class TestSupabaseManagementClient:
    """Requests sent to the Management API."""

    @pytest.mark.asyncio
    async def test_execute_sql(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json=[{"id": 1}])

        async with make_client(handler) as client:
            result = await client.execute_sql("proj", "select 1")

        assert json.loads(result) == [{"id": 1}]
        assert seen[0].url.path == "/v1/projects/proj/database/query"
        assert seen[0].headers["Authorization"] == "Bearer token"
        assert json.loads(seen[0].content) == {"query": "select 1"}

    @pytest.mark.asyncio
    async def test_error_status_raises_adapter_error(self):
        async with make_client(lambda request: httpx.Response(400, text="syntax error")) as client:
            with pytest.raises(AdapterError, match="syntax error"):
                await client.execute_sql("proj", "selec 1")

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429)
            return httpx.Response(204)

        async with make_client(handler) as client:
            await client.delete_function("proj", "hello")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_ACCESS_TOKEN", raising=False)
        client = SupabaseManagementClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(AdapterError, match="access token"):
            await client.list_functions("proj")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_deploy_function_uploads_shared_modules(self, functions_app):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json=function_record("hello"))

        async with make_client(handler) as client:
            info = await client.deploy_function("proj", "hello", functions_app)

        assert info.slug == "hello"
        request = seen[0]
        assert request.url.path == "/v1/projects/proj/functions/deploy"
        assert request.url.params["slug"] == "hello"
        body = request.content.decode("utf-8", errors="replace")
        assert 'filename="hello/index.ts"' in body
        assert 'filename="_shared/cors.ts"' in body
        assert 'filename="hello/import_map.json"' in body
        assert '"entrypoint_path": "hello/index.ts"' in body

    @pytest.mark.asyncio
    async def test_deploy_function_without_directory(self, tmp_path):
        async with make_client(lambda r: httpx.Response(201)) as client:
            with pytest.raises(AdapterError, match="Unable to locate directory"):
                await client.deploy_function("proj", "nope", tmp_path)

    @pytest.mark.asyncio
    async def test_deploy_all_bundles_updates_and_prunes(self, functions_app):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            if request.url.path.endswith("/functions/deploy"):
                assert request.url.params["bundleOnly"] == "true"
                return httpx.Response(201, json=function_record(request.url.params["slug"]))
            if request.method == "PUT":
                return httpx.Response(200, json=[])
            if request.method == "GET":
                return httpx.Response(200, json=[function_record("hello"), function_record("stale")])
            return httpx.Response(200)

        async with make_client(handler) as client:
            errors = await client.deploy_all_functions("proj", functions_app)

        assert errors == []
        deploys = [path for method, path in seen if path.endswith("/functions/deploy")]
        assert len(deploys) == 2
        assert ("PUT", "/v1/projects/proj/functions") in seen
        assert ("DELETE", "/v1/projects/proj/functions/stale") in seen
        assert ("DELETE", "/v1/projects/proj/functions/hello") not in seen

    @pytest.mark.asyncio
    async def test_deploy_all_collects_bundle_errors(self, functions_app):
        def handler(request):
            if request.url.path.endswith("/functions/deploy"):
                if request.url.params["slug"] == "bye":
                    return httpx.Response(500, text="boom")
                return httpx.Response(201, json=function_record("hello"))
            if request.method == "GET":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[])

        async with make_client(handler) as client:
            errors = await client.deploy_all_functions("proj", functions_app)

        assert len(errors) == 1
        assert errors[0].startswith("Failed to bundle bye")


class TestMigrations:
    def test_numbered_migration_files(self, tmp_path):
        first = write_migration_file(tmp_path, "create table a (id int);", "Create table A")
        second = write_migration_file(tmp_path, "create table b (id int);", None)
        assert first == "supabase/migrations/0000_create_table_a.sql"
        assert second == "supabase/migrations/0001_migration.sql"
        assert (tmp_path / first).read_text() == "create table a (id int);"


class FakeInstaller(PackageManagerInstaller):
    def __init__(self, results):
        self.results = list(results)
        self.commands = []

    async def _run(self, args, cwd):
        self.commands.append(args)
        return self.results.pop(0)


class TestPackageManagerInstaller:
    @pytest.mark.asyncio
    async def test_pnpm_success(self, tmp_path):
        installer = FakeInstaller([(0, "added zod")])
        assert await installer.install(["zod"], tmp_path) == "added zod"
        assert installer.commands == [["pnpm", "add", "zod"]]

    @pytest.mark.asyncio
    async def test_falls_back_to_npm(self, tmp_path):
        installer = FakeInstaller([(1, "pnpm broke"), (0, "npm ok")])
        assert await installer.install(["zod"], tmp_path) == "npm ok"
        assert installer.commands[1] == ["npm", "install", "--legacy-peer-deps", "zod"]

    @pytest.mark.asyncio
    async def test_both_fail(self, tmp_path):
        installer = FakeInstaller([(1, "pnpm broke"), (1, "npm broke")])
        with pytest.raises(AdapterError, match="zod"):
            await installer.install(["zod"], tmp_path)
