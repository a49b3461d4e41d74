"""Tests for the HTTP gateway client against a local aiohttp backend."""

import asyncio

import pytest
from aiohttp import web, test_utils

from docsync.api_clients import (
    BackendGatewayClient,
    UploadRequestFile,
    UploadGrant,
    FailedUpload,
    AuthenticationError,
    RateLimitError,
    APIConnectionError,
    UploadTransferError,
)


INTEGRATION = "int-9"
PREFIX = f"/api/integrations/local/{INTEGRATION}"


def build_backend_app(state):
    """Minimal backend recording every request body."""

    async def record(request):
        body = await request.json() if request.can_read_body else None
        state["requests"].append((request.method, request.path, body))
        state["auth"].append(request.headers.get("Authorization"))
        return body

    async def me(request):
        await record(request)
        return web.json_response({
            "integration_id": INTEGRATION,
            "company_id": "c-1",
            "company_name": "Acme",
            "display_name": "Workstation"
        })

    async def create_run(request):
        await record(request)
        return web.json_response({"id": "run-1"})

    async def check_hash(request):
        body = await record(request)
        return web.json_response({"results": [
            {"file_hash": h, "exists": h == "known", "document_id": "doc-1" if h == "known" else None}
            for h in body["file_hashes"]
        ]})

    async def request_batch_upload(request):
        body = await record(request)
        uploads = []
        skipped = []
        for f in body["files"]:
            if f["file_hash"] == "known":
                skipped.append({"file_hash": "known", "document_id": "doc-1", "reason": "duplicate"})
            else:
                uploads.append({
                    "file_hash": f["file_hash"],
                    "upload_url": f"{request.url.origin()}/storage/{f['file_hash']}",
                    "s3_key": f"uploads/{f['file_hash']}"
                })
        return web.json_response({
            "sync_run_id": body["sync_run_id"],
            "uploads": uploads,
            "skipped": skipped,
            "total_size_bytes": sum(f["file_size"] for f in body["files"]),
            "requires_confirmation": True
        })

    async def storage_put(request):
        key = request.match_info["key"]
        content = await request.read()
        if key == "broken":
            return web.Response(status=403, text="SignatureDoesNotMatch")
        if key == "slow":
            await asyncio.sleep(2)
        state["stored"][key] = content
        state["storage_headers"][key] = request.headers.copy()
        return web.Response(status=200)

    async def confirm_uploads(request):
        await record(request)
        return web.json_response({"status": "processing", "messages_queued": 2, "files_processing": 2})

    async def run_status(request):
        await record(request)
        return web.json_response({
            "sync_run_id": request.match_info["run_id"],
            "status": "completed",
            "files_completed": 3,
            "files_failed": 1,
            "files_uploaded_to_s3": 4,
            "progress_percent": 100,
            "is_complete": True,
            "errors": [
                {"fileName": "bad.pdf", "error": "Unsupported document"},
                {"fileName": "report.pdf", "error": "Corrupt PDF", "fileHash": "h-7", "filePath": "/docs/b/report.pdf"}
            ]
        })

    async def delete_documents(request):
        body = await record(request)
        return web.json_response({"deleted_count": len(body["file_hashes"]), "errors": []})

    async def complete_run(request):
        await record(request)
        return web.Response(status=204)

    async def groups(request):
        await record(request)
        return web.json_response({"groups": [
            {"id": "g-1", "name": "Engineering", "is_system": False},
            {"id": "g-all", "name": "Everyone", "is_system": True}
        ]})

    async def incomplete(request):
        await record(request)
        return web.json_response({"incomplete_syncs": [{
            "id": "run-old",
            "status": "uploading",
            "files_pending_upload": 3,
            "files_uploaded_to_s3": 1,
            "files_completed": 6,
            "created_at": "2024-05-01T12:00:00Z"
        }]})

    async def unauthorized(request):
        return web.json_response({"error": "invalid token"}, status=401)

    async def rate_limited(request):
        return web.json_response({"error": "slow down"}, status=429, headers={"Retry-After": "7"})

    async def server_error(request):
        return web.Response(status=500, text="boom")

    async def slow(request):
        await asyncio.sleep(2)
        return web.json_response({"groups": []})

    app = web.Application()
    app.router.add_get("/api/integrations/local/me", me)
    app.router.add_post(f"{PREFIX}/sync-runs", create_run)
    app.router.add_post(f"{PREFIX}/check-hash", check_hash)
    app.router.add_post(f"{PREFIX}/request-batch-upload", request_batch_upload)
    app.router.add_post(f"{PREFIX}/confirm-uploads", confirm_uploads)
    app.router.add_get(f"{PREFIX}/sync-runs/{{run_id}}/status", run_status)
    app.router.add_post(f"{PREFIX}/sync-runs/{{run_id}}/complete", complete_run)
    app.router.add_delete(f"{PREFIX}/documents", delete_documents)
    app.router.add_get(f"{PREFIX}/groups", groups)
    app.router.add_get(f"{PREFIX}/incomplete-syncs", incomplete)
    app.router.add_put("/storage/{key}", storage_put)
    app.router.add_get("/api/integrations/local/unauthorized/groups", unauthorized)
    app.router.add_get("/api/integrations/local/limited/groups", rate_limited)
    app.router.add_get("/api/integrations/local/broken/groups", server_error)
    app.router.add_get("/api/integrations/local/slow/groups", slow)
    return app


@pytest.fixture
def state():
    return {"requests": [], "auth": [], "stored": {}, "storage_headers": {}}


@pytest.fixture
async def backend(state):
    server = test_utils.TestServer(build_backend_app(state))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def client(backend):
    gateway = BackendGatewayClient(
        base_url=str(backend.make_url("/api/")),
        api_token="secret-token",
        integration_id=INTEGRATION
    )
    yield gateway
    await gateway.close()


class TestBackendGatewayClient:
    """Request shapes and response parsing."""

    @pytest.mark.asyncio
    async def test_get_integration(self, backend, state):
        async with BackendGatewayClient(base_url=str(backend.make_url("/api")), api_token="secret-token") as gateway:
            integration = await gateway.get_integration()

            assert integration.integration_id == INTEGRATION
            assert integration.company_name == "Acme"
            assert gateway.integration_id == INTEGRATION

        assert state["auth"] == ["Bearer secret-token"]

    @pytest.mark.asyncio
    async def test_integration_required_for_scoped_calls(self, backend):
        gateway = BackendGatewayClient(base_url=str(backend.make_url("/api")), api_token="secret-token")

        with pytest.raises(AuthenticationError):
            await gateway.create_run("manual")

        await gateway.close()

    @pytest.mark.asyncio
    async def test_create_run_and_check_hashes(self, client, state):
        run_id = await client.create_run("scheduled")
        results = await client.check_hashes(["known", "fresh"])

        assert run_id == "run-1"
        assert state["requests"][0] == ("POST", f"{PREFIX}/sync-runs", {"triggered_by": "scheduled"})
        assert results["known"].exists
        assert results["known"].document_id == "doc-1"
        assert not results["fresh"].exists

    @pytest.mark.asyncio
    async def test_check_hashes_empty_makes_no_request(self, client, state):
        assert await client.check_hashes([]) == {}
        assert state["requests"] == []

    @pytest.mark.asyncio
    async def test_grants_upload_and_confirm(self, client, state, tmp_path):
        path = tmp_path / "report.pdf"
        path.write_bytes(b"%PDF-1.4 report")

        batch = await client.request_upload_grants(
            [
                UploadRequestFile("fresh", "report.pdf", 15, ["g-1"], 1, str(path)),
                UploadRequestFile("known", "old.pdf", 20, [], 1, "/docs/old.pdf"),
            ],
            machine_id="workstation-7",
            os_name="linux",
            run_id="run-1"
        )

        _, _, body = state["requests"][0]
        assert body["machine_id"] == "workstation-7"
        assert body["os"] == "linux"
        assert body["sync_run_id"] == "run-1"
        assert body["files"][0] == {
            "file_hash": "fresh",
            "file_name": "report.pdf",
            "file_size": 15,
            "folder_config_id": 1,
            "group_ids": ["g-1"],
            "local_path": str(path),
        }

        assert batch.run_id == "run-1"
        assert batch.total_bytes == 35
        assert batch.requires_confirmation
        assert [k.content_hash for k in batch.already_known] == ["known"]
        assert [g.content_hash for g in batch.grants] == ["fresh"]
        assert batch.grants[0].storage_key == "uploads/fresh"

        await client.upload_content(batch.grants[0], str(path))

        assert state["stored"]["fresh"] == b"%PDF-1.4 report"
        assert state["storage_headers"]["fresh"]["Content-Length"] == "15"
        assert state["storage_headers"]["fresh"]["Content-Type"] == "application/octet-stream"

        confirmation = await client.confirm_uploads("run-1", ["fresh"], [FailedUpload("bad", "Upload failed")])

        assert confirmation.status == "processing"
        assert confirmation.queued_count == 2
        _, _, body = state["requests"][-1]
        assert body == {
            "sync_run_id": "run-1",
            "uploaded_files": ["fresh"],
            "failed_files": [{"file_hash": "bad", "error": "Upload failed"}],
        }

    @pytest.mark.asyncio
    async def test_upload_rejected_by_storage(self, client, backend, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_bytes(b"x")
        grant = UploadGrant("broken", str(backend.make_url("/storage/broken")), "uploads/broken")

        with pytest.raises(UploadTransferError, match="403"):
            await client.upload_content(grant, str(path))

    @pytest.mark.asyncio
    async def test_poll_status(self, client):
        status = await client.poll_status("run-1")

        assert status.run_id == "run-1"
        assert status.is_complete
        assert status.files_completed == 3
        assert status.files_failed == 1
        assert status.files_uploaded == 4
        assert [(e.file_name, e.error) for e in status.errors] == [
            ("bad.pdf", "Unsupported document"),
            ("report.pdf", "Corrupt PDF")
        ]
        assert status.errors[0].file_hash is None
        assert (status.errors[1].file_hash, status.errors[1].file_path) == ("h-7", "/docs/b/report.pdf")

    @pytest.mark.asyncio
    async def test_delete_and_complete(self, client, state):
        result = await client.delete_by_hashes(["h1", "h2"])
        await client.complete_run(
            "run-1",
            "partial",
            {"files_scanned": 4, "files_failed": 1},
            error_details=[{"file_name": "bad.pdf", "error": "Upload failed"}]
        )

        assert result.deleted_count == 2
        assert state["requests"][0] == ("DELETE", f"{PREFIX}/documents", {"file_hashes": ["h1", "h2"]})

        method, path, body = state["requests"][1]
        assert (method, path) == ("POST", f"{PREFIX}/sync-runs/run-1/complete")
        assert body["status"] == "partial"
        assert body["files_scanned"] == 4
        assert body["files_failed"] == 1
        assert body["files_new"] == 0
        assert body["error_details"] == {"failed_files": [{"file_name": "bad.pdf", "error": "Upload failed"}]}

    @pytest.mark.asyncio
    async def test_list_groups_and_incomplete_runs(self, client):
        groups = await client.list_groups()
        runs = await client.list_incomplete_runs()

        assert [(g.id, g.is_system) for g in groups] == [("g-1", False), ("g-all", True)]
        assert runs[0].id == "run-old"
        assert runs[0].files_pending == 4
        assert runs[0].created_at == "2024-05-01T12:00:00Z"


class TestErrorMapping:
    """HTTP status codes map onto the gateway error taxonomy."""

    @pytest.mark.asyncio
    async def test_unauthorized(self, backend):
        async with BackendGatewayClient(str(backend.make_url("/api")), "bad", integration_id="unauthorized") as gateway:
            with pytest.raises(AuthenticationError):
                await gateway.list_groups()

    @pytest.mark.asyncio
    async def test_rate_limited(self, backend):
        async with BackendGatewayClient(str(backend.make_url("/api")), "token", integration_id="limited") as gateway:
            with pytest.raises(RateLimitError) as exc_info:
                await gateway.list_groups()

        assert exc_info.value.retry_after == 7

    @pytest.mark.asyncio
    async def test_server_error(self, backend):
        async with BackendGatewayClient(str(backend.make_url("/api")), "token", integration_id="broken") as gateway:
            with pytest.raises(APIConnectionError, match="500 - boom"):
                await gateway.list_groups()

    @pytest.mark.asyncio
    async def test_connection_refused(self, unused_tcp_port):
        async with BackendGatewayClient(f"http://127.0.0.1:{unused_tcp_port}/api", "token", integration_id="x") as gateway:
            with pytest.raises(APIConnectionError, match="Network error"):
                await gateway.list_groups()

    @pytest.mark.asyncio
    async def test_request_timeout(self, backend):
        gateway = BackendGatewayClient(
            str(backend.make_url("/api")), "token", integration_id="slow", request_timeout_seconds=0.2
        )
        async with gateway:
            with pytest.raises(APIConnectionError, match="timed out"):
                await gateway.list_groups()

    @pytest.mark.asyncio
    async def test_upload_timeout(self, backend, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_bytes(b"x")
        grant = UploadGrant("slow", str(backend.make_url("/storage/slow")), "uploads/slow")

        async with BackendGatewayClient(str(backend.make_url("/api")), "token", request_timeout_seconds=0.2) as gateway:
            with pytest.raises(UploadTransferError, match="timed out"):
                await gateway.upload_content(grant, str(path))
