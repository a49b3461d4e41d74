"""Tests for the upload orchestrator."""

import pytest

from docsync.api_clients.base import GatewayError, IncompleteRun
from docsync.core.exceptions import UploadCancelledError
from docsync.core.scanner import ScannedFile
from docsync.core.uploader import UploadOrchestrator, UploadCandidate


def make_candidates(root, count):
    candidates = []
    for i in range(count):
        path = root / f"file{i}.txt"
        path.write_bytes(f"content {i}".encode())
        candidates.append(UploadCandidate(file=ScannedFile(
            path=str(path),
            content_hash=f"{i:064x}",
            size=path.stat().st_size,
            last_modified=0,
            folder_config_id=1,
            group_ids=["g-1"]
        )))
    return candidates


class TestUploadOrchestrator:
    """Tests for UploadOrchestrator."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, gateway, sync_root):
        gateway.upload_delay = 0.01
        orchestrator = UploadOrchestrator(gateway, upload_concurrency=2)
        progress = []

        result = await orchestrator.upload_batch(
            make_candidates(sync_root, 6),
            "machine",
            "linux",
            run_id="run-1",
            on_progress=lambda done, total: progress.append((done, total))
        )

        assert len(result.uploaded) == 6
        assert result.failed == []
        assert gateway.peak_in_flight == 2
        assert progress[-1] == (6, 6)
        assert len(gateway.calls["confirm_uploads"]) == 1

    @pytest.mark.asyncio
    async def test_single_failure_does_not_abort_batch(self, gateway, sync_root):
        gateway.fail_uploads = {"file1.txt"}
        orchestrator = UploadOrchestrator(gateway, upload_concurrency=3)
        candidates = make_candidates(sync_root, 3)

        result = await orchestrator.upload_batch(candidates, "machine", "linux", run_id="run-1")

        assert sorted(result.uploaded) == sorted([candidates[0].content_hash, candidates[2].content_hash])
        assert [f.content_hash for f in result.failed] == [candidates[1].content_hash]
        assert "500" in result.failed[0].error

        run_id, succeeded, failed = gateway.calls["confirm_uploads"][0]
        assert run_id == "run-1"
        assert sorted(succeeded) == sorted(result.uploaded)
        assert [f.content_hash for f in failed] == [candidates[1].content_hash]

    @pytest.mark.asyncio
    async def test_known_files_are_not_transferred(self, gateway, sync_root):
        candidates = make_candidates(sync_root, 2)
        gateway.known[candidates[0].content_hash] = "doc-existing"
        orchestrator = UploadOrchestrator(gateway)

        result = await orchestrator.upload_batch(candidates, "machine", "linux", run_id="run-1")

        assert result.uploaded == [candidates[1].content_hash]
        assert [(k.content_hash, k.document_id) for k in result.skipped] == [
            (candidates[0].content_hash, "doc-existing")
        ]
        assert gateway.calls["upload_content"] == [candidates[1].path]

    @pytest.mark.asyncio
    async def test_all_known_skips_confirmation(self, gateway, sync_root):
        candidates = make_candidates(sync_root, 2)
        for candidate in candidates:
            gateway.known[candidate.content_hash] = "doc"
        orchestrator = UploadOrchestrator(gateway)

        result = await orchestrator.upload_batch(candidates, "machine", "linux", run_id="run-1")

        assert len(result.skipped) == 2
        assert "upload_content" not in gateway.calls
        assert "confirm_uploads" not in gateway.calls

    @pytest.mark.asyncio
    async def test_duplicate_hashes_requested_once(self, gateway, sync_root):
        candidates = make_candidates(sync_root, 2)
        candidates[1].file.content_hash = candidates[0].content_hash
        orchestrator = UploadOrchestrator(gateway)

        result = await orchestrator.upload_batch(candidates, "machine", "linux", run_id="run-1")

        assert gateway.calls["request_upload_grants"] == [[candidates[0].content_hash]]
        assert result.uploaded == [candidates[0].content_hash]

    @pytest.mark.asyncio
    async def test_large_batch_declined(self, gateway, sync_root):
        gateway.requires_confirmation = True
        orchestrator = UploadOrchestrator(gateway)
        asked = []

        async def decline(count, total_bytes):
            asked.append((count, total_bytes))
            return False

        with pytest.raises(UploadCancelledError, match="Upload cancelled by user"):
            await orchestrator.upload_batch(
                make_candidates(sync_root, 2),
                "machine",
                "linux",
                run_id="run-1",
                confirm_large_upload=decline
            )

        assert asked[0][0] == 2
        assert "upload_content" not in gateway.calls

    @pytest.mark.asyncio
    async def test_large_batch_proceeds_without_callback(self, gateway, sync_root):
        gateway.requires_confirmation = True
        orchestrator = UploadOrchestrator(gateway)

        result = await orchestrator.upload_batch(make_candidates(sync_root, 2), "machine", "linux", run_id="run-1")

        assert len(result.uploaded) == 2

    @pytest.mark.asyncio
    async def test_large_batch_accepted_by_sync_callback(self, gateway, sync_root):
        gateway.requires_confirmation = True
        orchestrator = UploadOrchestrator(gateway)

        result = await orchestrator.upload_batch(
            make_candidates(sync_root, 1),
            "machine",
            "linux",
            run_id="run-1",
            confirm_large_upload=lambda count, total_bytes: True
        )

        assert len(result.uploaded) == 1

    @pytest.mark.asyncio
    async def test_poll_tolerates_errors(self, gateway):
        gateway.poll_failures = 2
        gateway.polls_until_complete = 2
        orchestrator = UploadOrchestrator(gateway)
        updates = []

        status = await orchestrator.poll_until_complete("run-1", on_update=updates.append, interval=0)

        assert status.is_complete
        assert len(gateway.calls["poll_status"]) == 4
        assert [u.is_complete for u in updates] == [False, True]

    @pytest.mark.asyncio
    async def test_find_resumable_run(self, gateway):
        gateway.incomplete_runs = [
            IncompleteRun(id="run-old", status="uploading", files_pending_upload=3, files_uploaded=2)
        ]
        orchestrator = UploadOrchestrator(gateway)

        run = await orchestrator.find_resumable_run()

        assert run.id == "run-old"
        assert run.files_pending == 5

    @pytest.mark.asyncio
    async def test_find_resumable_run_on_error(self, gateway):
        gateway.incomplete_error = GatewayError("boom")
        orchestrator = UploadOrchestrator(gateway)

        assert await orchestrator.find_resumable_run() is None
