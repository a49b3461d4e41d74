"""Shared fixtures: temporary tracking store, an in-memory remote gateway and a sync root."""

import asyncio
import os
from collections import defaultdict
from typing import Dict, List, Optional

import pytest

from docsync.api_clients.base import (
    RemoteGateway,
    Integration,
    HashCheckResult,
    UploadGrant,
    KnownFile,
    UploadGrantBatch,
    ConfirmResult,
    RemoteFileError,
    RemoteSyncStatus,
    DeleteResult,
    Group,
    IncompleteRun,
    APIConnectionError,
    UploadTransferError,
)
from docsync.config.settings import AppSettings, BackendSettings, SyncSettings, SchedulingSettings
from docsync.core.sync_engine import SyncEngine
from docsync.database import DatabaseManager, DatabaseService, FolderConfigCreate


class FakeGateway(RemoteGateway):
    """Remote knowledge base held in memory.

    Uploaded content becomes known immediately, so a second run sees it
    through check_hashes the way the real backend would after processing.
    """

    def __init__(self):
        super().__init__()
        self.known: Dict[str, str] = {}
        self.file_names: Dict[str, str] = {}
        self.fail_uploads = set()
        self.processing_errors: Dict[str, str] = {}
        self.processing_errors_by_hash: Dict[str, str] = {}
        self.requires_confirmation = False
        self.grant_error: Optional[Exception] = None
        self.incomplete_runs: List[IncompleteRun] = []
        self.incomplete_error: Optional[Exception] = None
        self.check_hash_failures = 0
        self.check_hash_error: Optional[Exception] = None
        self.poll_failures = 0
        self.polls_until_complete = 1
        self.delete_error: Optional[Exception] = None
        self.upload_delay = 0.0

        self.calls = defaultdict(list)
        self.uploaded: List[str] = []
        self.confirmed: Dict[str, List[str]] = defaultdict(list)
        self.completed: List[dict] = []
        self.poll_counts: Dict[str, int] = defaultdict(int)
        self.in_flight = 0
        self.peak_in_flight = 0
        self.run_counter = 0
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def get_integration(self) -> Integration:
        self.calls["get_integration"].append(())
        return Integration(integration_id="int-from-token", company_name="Acme")

    async def create_run(self, triggered_by: str) -> str:
        self.calls["create_run"].append(triggered_by)
        self.run_counter += 1
        return f"run-{self.run_counter}"

    async def check_hashes(self, content_hashes):
        self.calls["check_hashes"].append(list(content_hashes))
        if self.check_hash_failures:
            self.check_hash_failures -= 1
            raise self.check_hash_error or APIConnectionError("API request failed: 502 - bad gateway")
        return {
            h: HashCheckResult(exists=h in self.known, document_id=self.known.get(h))
            for h in content_hashes
        }

    async def request_upload_grants(self, files, machine_id, os_name, run_id=None) -> UploadGrantBatch:
        self.calls["request_upload_grants"].append([f.content_hash for f in files])
        if self.grant_error:
            raise self.grant_error
        grants = []
        already_known = []
        for f in files:
            self.file_names[f.content_hash] = f.file_name
            if f.content_hash in self.known:
                already_known.append(KnownFile(f.content_hash, self.known[f.content_hash], "duplicate"))
            else:
                grants.append(UploadGrant(
                    content_hash=f.content_hash,
                    upload_url=f"https://storage.test/{f.content_hash}",
                    storage_key=f"uploads/{f.content_hash}"
                ))
        return UploadGrantBatch(
            run_id=run_id or "run-granted",
            grants=grants,
            already_known=already_known,
            total_bytes=sum(f.file_size for f in files),
            requires_confirmation=self.requires_confirmation
        )

    async def upload_content(self, grant: UploadGrant, file_path: str) -> None:
        self.calls["upload_content"].append(file_path)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.upload_delay)
        finally:
            self.in_flight -= 1

        if os.path.basename(file_path) in self.fail_uploads:
            raise UploadTransferError("Upload failed: 500 - storage unavailable")
        self.uploaded.append(grant.content_hash)

    async def confirm_uploads(self, run_id, succeeded_hashes, failed=None) -> ConfirmResult:
        self.calls["confirm_uploads"].append((run_id, list(succeeded_hashes), list(failed or [])))
        self.confirmed[run_id].extend(succeeded_hashes)
        for content_hash in succeeded_hashes:
            self.known[content_hash] = f"doc-{content_hash[:8]}"
        return ConfirmResult(status="processing", queued_count=len(succeeded_hashes))

    async def poll_status(self, run_id: str) -> RemoteSyncStatus:
        self.calls["poll_status"].append(run_id)
        if self.poll_failures:
            self.poll_failures -= 1
            raise APIConnectionError("Network error: connection reset")

        self.poll_counts[run_id] += 1
        is_complete = self.poll_counts[run_id] >= self.polls_until_complete

        names = [self.file_names.get(h, h) for h in self.confirmed[run_id]]
        errors = [
            RemoteFileError(file_name=name, error=self.processing_errors[name])
            for name in names if name in self.processing_errors
        ]
        errors.extend(
            RemoteFileError(file_name=self.file_names.get(h, h), error=self.processing_errors_by_hash[h], file_hash=h)
            for h in self.confirmed[run_id] if h in self.processing_errors_by_hash
        )
        return RemoteSyncStatus(
            run_id=run_id,
            status="completed" if is_complete else "processing",
            files_completed=len(names) - len(errors) if is_complete else 0,
            files_failed=len(errors) if is_complete else 0,
            progress_percent=100.0 if is_complete else 50.0,
            is_complete=is_complete,
            errors=errors if is_complete else []
        )

    async def delete_by_hashes(self, content_hashes) -> DeleteResult:
        self.calls["delete_by_hashes"].append(list(content_hashes))
        if self.delete_error:
            raise self.delete_error
        for content_hash in content_hashes:
            self.known.pop(content_hash, None)
        return DeleteResult(deleted_count=len(content_hashes))

    async def complete_run(self, run_id, status, stats, error_message=None, error_details=None) -> None:
        self.completed.append({
            "run_id": run_id,
            "status": status,
            "stats": dict(stats),
            "error_message": error_message,
            "error_details": error_details,
        })

    async def list_groups(self):
        return [Group(id="g-1", name="Engineering"), Group(id="g-all", name="Everyone", is_system=True)]

    async def list_incomplete_runs(self):
        if self.incomplete_error:
            raise self.incomplete_error
        return list(self.incomplete_runs)


@pytest.fixture
def settings():
    """Settings tuned for fast tests."""
    return AppSettings(
        backend=BackendSettings(api_token="test-token", integration_id="int-1"),
        sync=SyncSettings(
            upload_concurrency=2,
            grant_batch_size=100,
            poll_interval_seconds=0.01,
            retry_delay_seconds=0,
            machine_id="test-machine"
        ),
        scheduling=SchedulingSettings(enabled=False)
    )


@pytest.fixture
def db_service(tmp_path):
    """Tracking store backed by a temporary SQLite file."""
    manager = DatabaseManager(f"sqlite:///{tmp_path}/docsync.db")
    manager.create_tables()
    yield DatabaseService(manager)
    manager.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sync_root(tmp_path):
    root = tmp_path / "documents"
    root.mkdir()
    return root


@pytest.fixture
def folder_config(db_service, sync_root):
    return db_service.create_folder_config(FolderConfigCreate(
        local_path=str(sync_root),
        group_ids=["g-1"]
    ))


@pytest.fixture
def make_engine(db_service, settings, gateway):
    """Build an engine wired to the fake gateway."""
    def factory(**kwargs):
        kwargs.setdefault("gateway_factory", lambda api_token, integration_id: gateway)
        return SyncEngine(database_service=db_service, settings=settings, **kwargs)

    return factory
