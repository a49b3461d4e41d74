"""Core sync engine reconciling local folders against the remote knowledge base."""

import asyncio
import inspect
import os
import socket
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .exceptions import SyncAlreadyRunningError, SyncConfigurationError, UploadCancelledError
from .scanner import FolderScanner, ScannedFile
from .status import StatusBroadcaster, SyncStatus
from .uploader import UploadBatchResult, UploadCandidate, UploadOrchestrator, ConfirmLargeUploadCallback
from ..api_clients.backend import BackendGatewayClient
from ..api_clients.base import (
    RemoteGateway,
    RemoteSyncStatus,
    IncompleteRun,
    RateLimitError,
    APIConnectionError,
    REMOTE_FAILURES,
    describe_error,
)
from ..config.settings import AppSettings, get_settings
from ..database import DatabaseService, FileRecordUpsert, FileStatus, SyncRunStatus
from ..utils.logging import bind_sync_context, clear_sync_context, get_logger, timed


API_TOKEN_KEY = "api_token"
INTEGRATION_ID_KEY = "integration_id"
MACHINE_ID_KEY = "machine_id"
LAST_SYNC_AT_KEY = "last_sync_at"

GatewayFactory = Callable[[str, Optional[str]], RemoteGateway]
ConfirmResumeCallback = Callable[[IncompleteRun], Union[bool, Awaitable[bool]]]


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    error: Optional[str] = None
    sync_run_id: Optional[str] = None
    status: Optional[SyncRunStatus] = None
    stats: Dict[str, int] = field(default_factory=dict)


@dataclass
class _RunContext:
    """Bookkeeping owned by one run."""

    triggered_by: str
    run_id: Optional[str] = None
    history_id: Optional[int] = None
    integration_id: Optional[str] = None
    uploaded_paths: List[str] = field(default_factory=list)
    error_details: List[Dict[str, str]] = field(default_factory=list)
    transfer_failures: int = 0
    finalized: bool = False

    def add_error(self, path: str, error: str) -> None:
        self.error_details.append({
            "file_name": os.path.basename(path),
            "file_path": path,
            "error": error,
        })


def _now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class SyncEngine:
    """Runs one end-to-end reconciliation at a time.

    A run walks through initialize, scan, reconcile, upload, poll, delete
    and finalize. Each phase fully resolves before the next starts. Status
    snapshots go to the broadcaster at every checkpoint and on every
    remote poll tick.
    """

    def __init__(
        self,
        database_service: DatabaseService,
        settings: Optional[AppSettings] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
        scanner: Optional[FolderScanner] = None,
        confirm_resume: Optional[ConfirmResumeCallback] = None,
        confirm_large_upload: Optional[ConfirmLargeUploadCallback] = None
    ):
        """Initialize sync engine.

        Args:
            database_service: Tracking store
            settings: Application settings (defaults to the global settings)
            gateway_factory: Builds a gateway from (api_token, integration_id)
            broadcaster: Receives status snapshots
            scanner: Folder scanner (built from settings when omitted)
            confirm_resume: Asked whether to resume an incomplete remote run
            confirm_large_upload: Asked before transferring a batch the remote flags as large
        """
        self.db_service = database_service
        self.settings = settings or get_settings()
        self.gateway_factory = gateway_factory or self._default_gateway_factory
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.scanner = scanner or FolderScanner(
            hash_concurrency=self.settings.sync.hash_concurrency,
            chunk_size=self.settings.sync.hash_chunk_size
        )
        self.confirm_resume = confirm_resume
        self.confirm_large_upload = confirm_large_upload

        self.logger = get_logger(self.__class__.__name__)

        self._run_guard = threading.Lock()
        self._status = SyncStatus(last_sync_at=self._load_last_sync_at())

    # Invocation surface

    async def start_sync(self, triggered_by: str = "manual") -> SyncResult:
        """Run a sync and report the outcome instead of raising."""
        try:
            return await self.perform_sync(triggered_by)
        except Exception as e:
            return SyncResult(success=False, error=describe_error(e))

    def get_status(self) -> SyncStatus:
        return self._status.snapshot()

    def is_running(self) -> bool:
        return self._run_guard.locked()

    @timed
    async def perform_sync(self, triggered_by: str = "manual") -> SyncResult:
        """Run a sync.

        Raises:
            SyncAlreadyRunningError: If another run is active
            SyncConfigurationError: If credentials or enabled folders are missing
            Exception: Any phase-fatal error, after the run is marked failed
        """
        if not self._run_guard.acquire(blocking=False):
            raise SyncAlreadyRunningError()

        ctx = _RunContext(triggered_by=triggered_by)
        gateway: Optional[RemoteGateway] = None

        self._status = SyncStatus(
            is_running=True,
            phase="initializing",
            last_sync_at=self._status.last_sync_at
        )
        self._publish()

        bind_sync_context(triggered_by=triggered_by)
        self.logger.info("Starting sync")

        try:
            gateway = self._open_gateway(ctx)
            return await self._run(gateway, ctx)

        except Exception as e:
            self.logger.error(
                "Sync failed",
                sync_run_id=ctx.run_id,
                error=describe_error(e),
                error_type=type(e).__name__
            )
            await self._mark_failed(gateway, ctx, e)
            raise

        finally:
            if gateway is not None:
                try:
                    await gateway.close()
                except Exception as e:
                    self.logger.warning("Failed to close gateway", error=str(e))

            self._status.is_running = False
            self._status.current_sync_run_id = None
            self._status.phase = "idle"
            self._run_guard.release()
            clear_sync_context()
            self._publish()

    # Phases

    async def _run(self, gateway: RemoteGateway, ctx: _RunContext) -> SyncResult:
        folders = self.db_service.get_folder_configs(enabled_only=True)
        if not folders:
            raise SyncConfigurationError("No folder configurations found")

        await self._resolve_integration(gateway, ctx)

        orchestrator = UploadOrchestrator(
            gateway,
            upload_concurrency=self.settings.sync.upload_concurrency,
            poll_interval_seconds=self.settings.sync.poll_interval_seconds
        )

        ctx.run_id = await self._open_run(gateway, orchestrator, ctx)
        ctx.history_id = self.db_service.start_sync_run(ctx.run_id, ctx.triggered_by)
        bind_sync_context(sync_run_id=ctx.run_id)
        self._status.current_sync_run_id = ctx.run_id
        self._publish()

        # Scan
        self._enter_phase("scanning")
        inventory = await self.scanner.scan_folders(folders)
        scanned: Dict[str, ScannedFile] = {f.path: f for f in inventory}
        self._status.files_scanned = len(scanned)
        self._checkpoint(10)

        # Reconcile
        self._enter_phase("reconciling")
        hashes = sorted({f.content_hash for f in scanned.values()})
        hash_results = await self._with_retries(gateway.check_hashes, hashes) if hashes else {}
        candidates = self._reconcile(scanned, hash_results)
        self._checkpoint(30)

        self.logger.info(
            "Reconciliation finished",
            sync_run_id=ctx.run_id,
            files_new=self._status.files_new,
            files_updated=self._status.files_updated,
            files_skipped=self._status.files_skipped,
            to_upload=len(candidates)
        )

        # Upload
        if candidates:
            self._enter_phase("uploading")
            await self._upload(orchestrator, candidates, ctx)
        self._checkpoint(80)

        # Poll remote processing
        if ctx.uploaded_paths:
            self._enter_phase("processing")
            remote_status = await orchestrator.poll_until_complete(
                ctx.run_id,
                on_update=self._on_remote_status
            )
            self._finalize_uploaded(remote_status, ctx)
        self._checkpoint(90)

        # Deletions
        self._enter_phase("deleting")
        await self._reconcile_deletions(gateway, scanned)
        self._checkpoint(95)

        # Finalize
        final_status = SyncRunStatus.PARTIAL if self._status.files_failed > 0 else SyncRunStatus.COMPLETED
        counters = self._status.counters()

        await gateway.complete_run(
            ctx.run_id,
            final_status.value,
            counters,
            error_details=ctx.error_details or None
        )
        ctx.finalized = True
        self.db_service.complete_sync_run(
            ctx.history_id,
            final_status,
            counters,
            error_details=ctx.error_details or None
        )

        finished_at = datetime.now()
        self.db_service.set_config(LAST_SYNC_AT_KEY, str(int(finished_at.timestamp() * 1000)))
        self._status.last_sync_at = finished_at
        self._status.phase = final_status.value
        self._checkpoint(100)

        self.logger.info(
            "Sync completed",
            sync_run_id=ctx.run_id,
            status=final_status.value,
            **counters
        )

        return SyncResult(
            success=True,
            sync_run_id=ctx.run_id,
            status=final_status,
            stats=counters
        )

    def _open_gateway(self, ctx: _RunContext) -> RemoteGateway:
        """Resolve credentials from the store first, then from settings."""
        api_token = self.db_service.get_config(API_TOKEN_KEY) or self.settings.backend.api_token
        if not api_token:
            raise SyncConfigurationError("API not configured. Please configure API settings first.")

        ctx.integration_id = (
            self.db_service.get_config(INTEGRATION_ID_KEY)
            or self.settings.backend.integration_id
            or None
        )
        return self.gateway_factory(api_token, ctx.integration_id)

    async def _resolve_integration(self, gateway: RemoteGateway, ctx: _RunContext) -> None:
        if ctx.integration_id:
            return

        integration = await self._with_retries(gateway.get_integration)
        ctx.integration_id = integration.integration_id
        self.db_service.set_config(INTEGRATION_ID_KEY, integration.integration_id)
        self.logger.info("Integration resolved from token", integration_id=integration.integration_id)

    async def _open_run(self, gateway: RemoteGateway, orchestrator: UploadOrchestrator, ctx: _RunContext) -> str:
        """Resume an incomplete remote run when the operator agrees, else create one."""
        if self.confirm_resume is not None:
            incomplete = await orchestrator.find_resumable_run()
            if incomplete is not None and await _resolve(self.confirm_resume(incomplete)):
                self.logger.info(
                    "Resuming incomplete sync run",
                    sync_run_id=incomplete.id,
                    files_completed=incomplete.files_completed,
                    files_pending=incomplete.files_pending
                )
                return incomplete.id

        return await gateway.create_run(ctx.triggered_by)

    def _reconcile(self, scanned: Dict[str, ScannedFile], hash_results: Dict[str, Any]) -> List[UploadCandidate]:
        """Classify every scanned file and queue the ones the remote does not know."""
        candidates: List[UploadCandidate] = []
        now = _now_ms()

        for path, scanned_file in scanned.items():
            record = self.db_service.get_file_by_path(path)
            hash_result = hash_results.get(scanned_file.content_hash)

            if hash_result is None or not hash_result.exists:
                is_new = record is None
                if is_new:
                    self._status.files_new += 1
                else:
                    self._status.files_updated += 1
                candidates.append(UploadCandidate(file=scanned_file, is_new=is_new))
                self._upsert(scanned_file, FileStatus.PENDING)

            elif record is None or record.content_hash != scanned_file.content_hash:
                # Content already stored remotely; point at it instead of re-uploading.
                self._status.files_updated += 1
                self._upsert(scanned_file, FileStatus.SYNCED, hash_result.document_id, now)

            else:
                self._status.files_skipped += 1
                self._upsert(
                    scanned_file,
                    FileStatus.SYNCED,
                    hash_result.document_id or record.remote_document_id,
                    now
                )

        return candidates

    async def _upload(self, orchestrator: UploadOrchestrator, candidates: List[UploadCandidate], ctx: _RunContext) -> None:
        batch_size = self.settings.sync.grant_batch_size
        total = len(candidates)
        machine_id = self._machine_id()

        for offset in range(0, total, batch_size):
            batch = candidates[offset:offset + batch_size]

            def on_progress(done: int, batch_total: int, offset: int = offset, size: int = len(batch)):
                finished = offset + (done / batch_total) * size if batch_total else offset + size
                self._status.advance(30 + 50 * finished / total)
                self._publish()

            try:
                result = await orchestrator.upload_batch(
                    batch,
                    machine_id,
                    sys.platform,
                    run_id=ctx.run_id,
                    on_progress=on_progress,
                    confirm_large_upload=self.confirm_large_upload
                )
            except UploadCancelledError:
                raise
            except REMOTE_FAILURES as e:
                message = describe_error(e)
                self.logger.error("Upload batch failed", sync_run_id=ctx.run_id, files=len(batch), error=message)
                for candidate in batch:
                    self._record_failure(candidate, message, ctx)
                continue

            self._apply_batch_result(batch, result, ctx)
            self._status.advance(30 + 50 * (offset + len(batch)) / total)
            self._publish()

    def _apply_batch_result(self, batch: List[UploadCandidate], result: UploadBatchResult, ctx: _RunContext) -> None:
        uploaded = set(result.uploaded)
        failed = {f.content_hash: f.error for f in result.failed}
        known = {k.content_hash: k for k in result.skipped}
        now = _now_ms()

        for candidate in batch:
            content_hash = candidate.content_hash

            if content_hash in uploaded:
                # Remote processing is asynchronous; the record stays pending until polled.
                self._status.bytes_processed += candidate.size
                ctx.uploaded_paths.append(candidate.path)
            elif content_hash in failed:
                self._record_failure(candidate, failed[content_hash], ctx)
            elif content_hash in known:
                self._upsert(candidate.file, FileStatus.SYNCED, known[content_hash].document_id, now)
            else:
                self._record_failure(candidate, "No upload grant issued", ctx)

    def _record_failure(self, candidate: UploadCandidate, error: str, ctx: _RunContext) -> None:
        self._status.files_failed += 1
        ctx.transfer_failures += 1
        ctx.add_error(candidate.path, error)
        self.db_service.update_file_status(candidate.path, FileStatus.FAILED, error)

    def _on_remote_status(self, remote: RemoteSyncStatus) -> None:
        self._status.files_completed = remote.files_completed
        self._status.files_failed = max(self._status.files_failed, remote.files_failed)
        self._status.advance(80 + 10 * (remote.progress_percent or 0) / 100)
        self._publish()

    def _finalize_uploaded(self, remote: RemoteSyncStatus, ctx: _RunContext) -> None:
        """Settle records uploaded in this run once remote processing completes."""
        by_hash = {e.file_hash: e.error for e in remote.errors if e.file_hash}
        by_path = {e.file_path: e.error for e in remote.errors if e.file_path}
        # Name-only errors match every uploaded file with that basename
        by_name = {e.file_name: e.error for e in remote.errors if not (e.file_hash or e.file_path)}
        now = _now_ms()
        processing_failures = 0

        for path in ctx.uploaded_paths:
            record = self.db_service.get_file_by_path(path)

            if record is not None and record.content_hash in by_hash:
                error = by_hash[record.content_hash]
            elif path in by_path:
                error = by_path[path]
            else:
                error = by_name.get(os.path.basename(path))

            if error is not None:
                processing_failures += 1
                self.db_service.update_file_status(path, FileStatus.FAILED, error)
                ctx.add_error(path, error)
            elif record is not None:
                self.db_service.upsert_file(FileRecordUpsert(
                    path=record.path,
                    content_hash=record.content_hash,
                    size=record.size,
                    last_modified=record.last_modified,
                    folder_config_id=record.folder_config_id,
                    remote_document_id=record.remote_document_id,
                    last_synced_at=now,
                    status=FileStatus.SYNCED
                ))

        self._status.files_completed = remote.files_completed
        self._status.files_failed = max(
            ctx.transfer_failures + processing_failures,
            remote.files_failed
        )

    async def _reconcile_deletions(self, gateway: RemoteGateway, scanned: Dict[str, ScannedFile]) -> None:
        """Delete remotely what vanished locally; never a hash still present in this scan."""
        scanned_hashes = {f.content_hash for f in scanned.values()}
        hashes_to_delete = set()
        paths_to_delete: List[str] = []
        moved_paths: List[str] = []

        for record in self.db_service.get_files_by_status(FileStatus.SYNCED):
            if record.path in scanned or self.scanner.file_exists(record.path):
                continue
            if record.content_hash in scanned_hashes:
                moved_paths.append(record.path)
            else:
                hashes_to_delete.add(record.content_hash)
                paths_to_delete.append(record.path)

        if moved_paths:
            self.db_service.delete_files_by_paths(moved_paths)
            self.logger.info("Dropped records for moved files", count=len(moved_paths))

        if not hashes_to_delete:
            return

        try:
            result = await gateway.delete_by_hashes(sorted(hashes_to_delete))
        except REMOTE_FAILURES as e:
            self.logger.warning("Remote deletion failed", files=len(paths_to_delete), error=describe_error(e))
            return

        if result.errors:
            self.logger.warning("Remote deletion reported errors", errors=result.errors)

        self.db_service.delete_files_by_paths(paths_to_delete)
        self._status.files_deleted += len(paths_to_delete)

        self.logger.info("Deleted files removed locally", deleted=len(paths_to_delete), remote_deleted=result.deleted_count)

    async def _mark_failed(self, gateway: Optional[RemoteGateway], ctx: _RunContext, error: Exception) -> None:
        """Best-effort failure report that never masks the original error."""
        counters = self._status.counters()
        error_details = ctx.error_details or None

        if gateway is not None and ctx.run_id and not ctx.finalized:
            try:
                await gateway.complete_run(
                    ctx.run_id,
                    SyncRunStatus.FAILED.value,
                    counters,
                    error_message=describe_error(error),
                    error_details=error_details
                )
            except Exception as e:
                self.logger.warning("Failed to mark sync run as failed", sync_run_id=ctx.run_id, error=str(e))

        if ctx.history_id is not None:
            try:
                self.db_service.complete_sync_run(
                    ctx.history_id,
                    SyncRunStatus.FAILED,
                    counters,
                    error_message=describe_error(error),
                    error_details=error_details
                )
            except Exception as e:
                self.logger.warning("Failed to record sync failure locally", sync_run_id=ctx.run_id, error=str(e))

        self._status.phase = SyncRunStatus.FAILED.value

    # Helpers

    async def _with_retries(self, operation: Callable[..., Awaitable[Any]], *args) -> Any:
        """Retry idempotent gateway reads on rate limits and connection errors."""
        max_retries = self.settings.sync.max_retries
        retry_delay = self.settings.sync.retry_delay_seconds

        for attempt in range(max_retries + 1):
            try:
                return await operation(*args)
            except RateLimitError as e:
                if attempt >= max_retries:
                    raise
                backoff = e.retry_after if e.retry_after is not None else retry_delay
                self.logger.warning("Rate limit exceeded, retrying after backoff", attempt=attempt + 1, backoff_seconds=backoff)
                await asyncio.sleep(backoff)
            except (APIConnectionError, asyncio.TimeoutError) as e:
                if attempt >= max_retries:
                    raise
                self.logger.warning("API error, retrying after delay", attempt=attempt + 1, error=describe_error(e))
                await asyncio.sleep(retry_delay)

    def _upsert(
        self,
        scanned_file: ScannedFile,
        status: FileStatus,
        remote_document_id: Optional[str] = None,
        last_synced_at: Optional[int] = None
    ) -> None:
        self.db_service.upsert_file(FileRecordUpsert(
            path=scanned_file.path,
            content_hash=scanned_file.content_hash,
            size=scanned_file.size,
            last_modified=scanned_file.last_modified,
            folder_config_id=scanned_file.folder_config_id,
            remote_document_id=remote_document_id,
            last_synced_at=last_synced_at,
            status=status
        ))

    def _machine_id(self) -> str:
        return (
            self.settings.sync.machine_id
            or self.db_service.get_config(MACHINE_ID_KEY)
            or socket.gethostname()
        )

    def _load_last_sync_at(self) -> Optional[datetime]:
        try:
            raw = self.db_service.get_config(LAST_SYNC_AT_KEY)
        except Exception as e:
            self.logger.warning("Failed to read last sync time", error=str(e))
            return None
        return datetime.fromtimestamp(int(raw) / 1000) if raw else None

    def _enter_phase(self, phase: str) -> None:
        self._status.phase = phase
        self.logger.info("Sync phase started", phase=phase, sync_run_id=self._status.current_sync_run_id)
        self._publish()

    def _checkpoint(self, progress: float) -> None:
        self._status.advance(progress)
        self._publish()

    def _publish(self) -> None:
        self.broadcaster.publish(self._status)

    def _default_gateway_factory(self, api_token: str, integration_id: Optional[str]) -> RemoteGateway:
        backend = self.settings.backend
        return BackendGatewayClient(
            base_url=backend.base_url,
            api_token=api_token,
            integration_id=integration_id,
            request_timeout_seconds=backend.request_timeout_seconds
        )
