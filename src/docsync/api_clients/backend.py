"""Knowledge-base backend gateway over HTTP+JSON."""

import asyncio
import os
from typing import List, Dict, Any, Optional

import aiohttp

from .base import (
    RemoteGateway,
    Integration,
    HashCheckResult,
    UploadRequestFile,
    UploadGrant,
    KnownFile,
    UploadGrantBatch,
    FailedUpload,
    ConfirmResult,
    RemoteFileError,
    RemoteSyncStatus,
    DeleteResult,
    Group,
    IncompleteRun,
    AuthenticationError,
    RateLimitError,
    APIConnectionError,
    UploadTransferError,
)
from ..utils.logging import timed


class BackendGatewayClient(RemoteGateway):
    """Remote gateway talking to the backend's local-integration REST API.

    All calls carry a bearer token. Integration-scoped calls live under
    ``{base_url}/integrations/local/{integration_id}/``. File bytes go
    straight to object storage through presigned upload URLs.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        integration_id: Optional[str] = None,
        request_timeout_seconds: int = 300,
        session: Optional[aiohttp.ClientSession] = None,
        **kwargs
    ):
        super().__init__(**kwargs)

        self.base_url = base_url.rstrip('/')
        self.api_token = api_token
        self.integration_id = integration_id
        self.timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)

        self.session = session
        self._owns_session = session is None

        self.logger.info(
            "Backend gateway client initialized",
            base_url=self.base_url,
            integration_id=self.integration_id
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def close(self) -> None:
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    def _integration_url(self, path: str) -> str:
        if not self.integration_id:
            raise AuthenticationError("Integration ID is not configured")
        return f"{self.base_url}/integrations/local/{self.integration_id}/{path}"

    async def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Make an authenticated JSON request and map failures to gateway errors."""
        session = self._ensure_session()

        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Accept": "application/json"
        }

        try:
            async with session.request(method, url, json=json_body, params=params, headers=headers) as response:
                if response.status in (401, 403):
                    raise AuthenticationError(f"Backend rejected credentials: {response.status}")
                elif response.status == 429:
                    retry_after = int(response.headers.get("Retry-After", 60))
                    raise RateLimitError("Rate limit exceeded", retry_after)
                elif response.status >= 300:
                    error_text = await response.text()
                    raise APIConnectionError(f"API request failed: {response.status} - {error_text}")

                if response.status == 204:
                    return {}
                return await response.json(content_type=None) or {}

        except aiohttp.ClientError as e:
            raise APIConnectionError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise APIConnectionError(f"Request timed out: {method} {url}") from e

    async def get_integration(self) -> Integration:
        data = await self._request("GET", f"{self.base_url}/integrations/local/me")
        integration = Integration(
            integration_id=data["integration_id"],
            company_id=data.get("company_id"),
            company_name=data.get("company_name"),
            display_name=data.get("display_name")
        )
        self.integration_id = integration.integration_id
        return integration

    async def create_run(self, triggered_by: str) -> str:
        data = await self._request("POST", self._integration_url("sync-runs"), {"triggered_by": triggered_by})
        self.logger.info("Remote sync run created", sync_run_id=data["id"], triggered_by=triggered_by)
        return data["id"]

    async def check_hashes(self, content_hashes: List[str]) -> Dict[str, HashCheckResult]:
        if not content_hashes:
            return {}

        data = await self._request("POST", self._integration_url("check-hash"), {"file_hashes": content_hashes})
        return {
            result["file_hash"]: HashCheckResult(
                exists=bool(result.get("exists")),
                document_id=result.get("document_id")
            )
            for result in data.get("results", [])
        }

    @timed
    async def request_upload_grants(
        self,
        files: List[UploadRequestFile],
        machine_id: str,
        os_name: str,
        run_id: Optional[str] = None
    ) -> UploadGrantBatch:
        payload = {
            "files": [f.to_dict() for f in files],
            "machine_id": machine_id,
            "os": os_name,
            "sync_run_id": run_id,
        }
        data = await self._request("POST", self._integration_url("request-batch-upload"), payload)

        return UploadGrantBatch(
            run_id=data.get("sync_run_id") or run_id,
            grants=[
                UploadGrant(
                    content_hash=u["file_hash"],
                    upload_url=u["upload_url"],
                    storage_key=u.get("s3_key", "")
                )
                for u in data.get("uploads", [])
            ],
            already_known=[
                KnownFile(
                    content_hash=s["file_hash"],
                    document_id=s.get("document_id"),
                    reason=s.get("reason")
                )
                for s in data.get("skipped", [])
            ],
            total_bytes=data.get("total_size_bytes", 0),
            requires_confirmation=bool(data.get("requires_confirmation", False))
        )

    async def upload_content(self, grant: UploadGrant, file_path: str) -> None:
        """PUT the file to its presigned URL. The URL carries its own auth."""
        session = self._ensure_session()
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(os.path.getsize(file_path)),
        }

        try:
            with open(file_path, "rb") as f:
                async with session.put(grant.upload_url, data=f, headers=headers) as response:
                    if response.status >= 300:
                        error_text = await response.text()
                        raise UploadTransferError(
                            f"Upload failed: {response.status} - {error_text[:200]}"
                        )
        except aiohttp.ClientError as e:
            raise UploadTransferError(f"Upload network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise UploadTransferError(f"Upload timed out: {os.path.basename(file_path)}") from e

    async def confirm_uploads(
        self,
        run_id: str,
        succeeded_hashes: List[str],
        failed: Optional[List[FailedUpload]] = None
    ) -> ConfirmResult:
        payload = {
            "sync_run_id": run_id,
            "uploaded_files": succeeded_hashes,
            "failed_files": [{"file_hash": f.content_hash, "error": f.error} for f in failed or []],
        }
        data = await self._request("POST", self._integration_url("confirm-uploads"), payload)

        return ConfirmResult(
            status=data.get("status", ""),
            queued_count=data.get("messages_queued", 0),
            processing_count=data.get("files_processing", 0)
        )

    async def poll_status(self, run_id: str) -> RemoteSyncStatus:
        data = await self._request("GET", self._integration_url(f"sync-runs/{run_id}/status"))

        errors = [
            RemoteFileError(
                file_name=e.get("file_name") or e.get("fileName", ""),
                error=e.get("error", ""),
                file_hash=e.get("file_hash") or e.get("fileHash"),
                file_path=e.get("file_path") or e.get("filePath")
            )
            for e in data.get("errors") or []
        ]

        return RemoteSyncStatus(
            run_id=data.get("sync_run_id", run_id),
            status=data.get("status", ""),
            files_completed=data.get("files_completed", 0),
            files_failed=data.get("files_failed", 0),
            files_skipped=data.get("files_skipped", 0),
            files_processing=data.get("files_processing", 0),
            files_pending_upload=data.get("files_pending_upload", 0),
            files_uploaded=data.get("files_uploaded_to_s3", 0),
            progress_percent=data.get("progress_percent", 0.0),
            is_complete=bool(data.get("is_complete", False)),
            is_resumable=bool(data.get("is_resumable", False)),
            errors=errors
        )

    async def delete_by_hashes(self, content_hashes: List[str]) -> DeleteResult:
        data = await self._request("DELETE", self._integration_url("documents"), {"file_hashes": content_hashes})
        return DeleteResult(
            deleted_count=data.get("deleted_count", 0),
            errors=data.get("errors") or []
        )

    async def complete_run(
        self,
        run_id: str,
        status: str,
        stats: Dict[str, int],
        error_message: Optional[str] = None,
        error_details: Optional[List[Dict[str, str]]] = None
    ) -> None:
        payload = {
            "status": status,
            "error_message": error_message,
            "files_scanned": stats.get("files_scanned", 0),
            "files_new": stats.get("files_new", 0),
            "files_updated": stats.get("files_updated", 0),
            "files_deleted": stats.get("files_deleted", 0),
            "files_failed": stats.get("files_failed", 0),
            "files_skipped": stats.get("files_skipped", 0),
            "bytes_processed": stats.get("bytes_processed", 0),
        }
        if error_details:
            payload["error_details"] = {"failed_files": error_details}

        await self._request("POST", self._integration_url(f"sync-runs/{run_id}/complete"), payload)
        self.logger.info("Remote sync run completed", sync_run_id=run_id, status=status)

    async def list_groups(self) -> List[Group]:
        data = await self._request("GET", self._integration_url("groups"))
        return [
            Group(id=g["id"], name=g.get("name", ""), is_system=bool(g.get("is_system", False)))
            for g in data.get("groups", [])
        ]

    async def list_incomplete_runs(self) -> List[IncompleteRun]:
        data = await self._request("GET", self._integration_url("incomplete-syncs"))
        return [
            IncompleteRun(
                id=s["id"],
                status=s.get("status", ""),
                files_pending_upload=s.get("files_pending_upload", 0),
                files_uploaded=s.get("files_uploaded_to_s3", 0),
                files_completed=s.get("files_completed", 0),
                created_at=s.get("created_at"),
                last_activity_at=s.get("last_activity_at")
            )
            for s in data.get("incomplete_syncs", [])
        ]
