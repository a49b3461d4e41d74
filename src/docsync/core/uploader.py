"""Upload orchestration: grants, bounded transfers, confirmation and status polling."""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .exceptions import UploadCancelledError
from .scanner import ScannedFile
from ..api_clients.base import (
    RemoteGateway,
    UploadRequestFile,
    UploadGrant,
    KnownFile,
    FailedUpload,
    RemoteSyncStatus,
    IncompleteRun,
    GatewayError,
    REMOTE_FAILURES,
    describe_error,
)
from ..utils.logging import get_logger, timed


ProgressCallback = Callable[[int, int], None]
ConfirmLargeUploadCallback = Callable[[int, int], Union[bool, Awaitable[bool]]]
StatusUpdateCallback = Callable[[RemoteSyncStatus], None]


@dataclass
class UploadCandidate:
    """A scanned file queued for transfer."""

    file: ScannedFile
    is_new: bool = True

    @property
    def content_hash(self) -> str:
        return self.file.content_hash

    @property
    def path(self) -> str:
        return self.file.path

    @property
    def size(self) -> int:
        return self.file.size

    def to_request(self) -> UploadRequestFile:
        return UploadRequestFile(
            content_hash=self.file.content_hash,
            file_name=self.file.file_name,
            file_size=self.file.size,
            group_ids=list(self.file.group_ids),
            folder_config_id=self.file.folder_config_id,
            local_path=self.file.path
        )


@dataclass
class UploadBatchResult:
    """Outcome of one grant-transfer-confirm cycle."""

    run_id: str
    uploaded: List[str] = field(default_factory=list)
    failed: List[FailedUpload] = field(default_factory=list)
    skipped: List[KnownFile] = field(default_factory=list)


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class UploadOrchestrator:
    """Pushes file bytes to object storage with at most ``upload_concurrency`` transfers in flight."""

    def __init__(
        self,
        gateway: RemoteGateway,
        upload_concurrency: int = 5,
        poll_interval_seconds: float = 5.0
    ):
        self.gateway = gateway
        self.upload_concurrency = upload_concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = get_logger(self.__class__.__name__)

    @timed
    async def upload_batch(
        self,
        candidates: List[UploadCandidate],
        machine_id: str,
        os_name: str,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        confirm_large_upload: Optional[ConfirmLargeUploadCallback] = None
    ) -> UploadBatchResult:
        """Request grants for the batch, transfer granted files and confirm the outcome.

        Files the remote already holds come back as skipped without a transfer.
        A single transfer failure is captured per file and never aborts the batch.

        Raises:
            UploadCancelledError: If the large-batch guard declines the upload
        """
        by_hash: Dict[str, UploadCandidate] = {}
        for candidate in candidates:
            by_hash.setdefault(candidate.content_hash, candidate)

        self.logger.info("Requesting upload grants", files=len(by_hash), sync_run_id=run_id)

        grant_batch = await self.gateway.request_upload_grants(
            [candidate.to_request() for candidate in by_hash.values()],
            machine_id,
            os_name,
            run_id
        )

        if grant_batch.requires_confirmation and confirm_large_upload is not None:
            confirmed = await _resolve(confirm_large_upload(len(by_hash), grant_batch.total_bytes))
            if not confirmed:
                raise UploadCancelledError()

        result = UploadBatchResult(run_id=grant_batch.run_id, skipped=list(grant_batch.already_known))

        if not grant_batch.grants:
            self.logger.info("No files to transfer, all already known", skipped=len(result.skipped))
            return result

        result.uploaded, result.failed = await self._transfer_all(grant_batch.grants, by_hash, on_progress)

        self.logger.info(
            "Transfers finished",
            sync_run_id=result.run_id,
            uploaded=len(result.uploaded),
            failed=len(result.failed),
            skipped=len(result.skipped)
        )

        if result.uploaded or result.failed:
            confirmation = await self.gateway.confirm_uploads(result.run_id, result.uploaded, result.failed)
            self.logger.info(
                "Uploads confirmed",
                sync_run_id=result.run_id,
                status=confirmation.status,
                queued=confirmation.queued_count
            )

        return result

    async def _transfer_all(
        self,
        grants: List[UploadGrant],
        by_hash: Dict[str, UploadCandidate],
        on_progress: Optional[ProgressCallback]
    ) -> Tuple[List[str], List[FailedUpload]]:
        """Drain the grant queue with a fixed pool of workers."""
        queue: asyncio.Queue = asyncio.Queue()
        for grant in grants:
            queue.put_nowait(grant)

        uploaded: List[str] = []
        failed: List[FailedUpload] = []
        total = len(grants)

        async def worker():
            while True:
                try:
                    grant = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                candidate = by_hash.get(grant.content_hash)
                try:
                    if candidate is None:
                        raise GatewayError(f"File not found for hash: {grant.content_hash}")
                    await self.gateway.upload_content(grant, candidate.path)
                    uploaded.append(grant.content_hash)
                    self.logger.debug("File transferred", file_path=candidate.path, file_hash=grant.content_hash)
                except REMOTE_FAILURES as e:
                    failed.append(FailedUpload(content_hash=grant.content_hash, error=describe_error(e)))
                    self.logger.warning("File transfer failed", file_hash=grant.content_hash, error=describe_error(e))

                if on_progress:
                    on_progress(len(uploaded) + len(failed), total)

        workers = min(self.upload_concurrency, total)
        await asyncio.gather(*(worker() for _ in range(workers)))

        return uploaded, failed

    async def poll_until_complete(
        self,
        run_id: str,
        on_update: Optional[StatusUpdateCallback] = None,
        interval: Optional[float] = None
    ) -> RemoteSyncStatus:
        """Poll remote status until it reports completion.

        Poll errors are logged and retried at the same interval. There is no
        internal timeout; callers cancel the task to stop waiting.
        """
        interval = self.poll_interval_seconds if interval is None else interval

        while True:
            try:
                status = await self.gateway.poll_status(run_id)
            except Exception as e:
                self.logger.warning("Status poll failed, retrying", sync_run_id=run_id, error=str(e))
                await asyncio.sleep(interval)
                continue

            if on_update:
                on_update(status)

            if status.is_complete:
                self.logger.info(
                    "Remote processing complete",
                    sync_run_id=run_id,
                    files_completed=status.files_completed,
                    files_failed=status.files_failed
                )
                return status

            await asyncio.sleep(interval)

    async def find_resumable_run(self) -> Optional[IncompleteRun]:
        """Newest run left incomplete by a previous process, if any."""
        try:
            runs = await self.gateway.list_incomplete_runs()
        except REMOTE_FAILURES as e:
            self.logger.warning("Failed to check for incomplete runs", error=describe_error(e))
            return None

        return runs[0] if runs else None
