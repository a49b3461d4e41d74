"""Remote gateway interface, transfer records and error taxonomy."""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field

from ..utils.logging import get_logger


@dataclass
class Integration:
    """Integration bound to the configured API token."""

    integration_id: str
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class HashCheckResult:
    """Whether a content hash is already known remotely."""

    exists: bool
    document_id: Optional[str] = None


@dataclass
class UploadRequestFile:
    """Metadata sent when asking for an upload grant."""

    content_hash: str
    file_name: str
    file_size: int
    group_ids: List[str] = field(default_factory=list)
    folder_config_id: Optional[int] = None
    local_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the backend wire format."""
        return {
            "file_hash": self.content_hash,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "folder_config_id": self.folder_config_id,
            "group_ids": self.group_ids,
            "local_path": self.local_path,
        }


@dataclass
class UploadGrant:
    """Short-lived permission to write one file's bytes to object storage."""

    content_hash: str
    upload_url: str
    storage_key: str


@dataclass
class KnownFile:
    """A file the remote already holds; no transfer needed."""

    content_hash: str
    document_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class UploadGrantBatch:
    """Response to a grant request."""

    run_id: str
    grants: List[UploadGrant] = field(default_factory=list)
    already_known: List[KnownFile] = field(default_factory=list)
    total_bytes: int = 0
    requires_confirmation: bool = False


@dataclass
class FailedUpload:
    """A transfer that did not succeed."""

    content_hash: str
    error: str


@dataclass
class ConfirmResult:
    """Response to an upload confirmation."""

    status: str
    queued_count: int = 0
    processing_count: int = 0


@dataclass
class RemoteFileError:
    """Per-file processing error reported by the remote.

    ``file_hash`` and ``file_path`` are only set when the remote reports them;
    the bare name is ambiguous when two folders hold files with the same name.
    """

    file_name: str
    error: str
    file_hash: Optional[str] = None
    file_path: Optional[str] = None


@dataclass
class RemoteSyncStatus:
    """Remote processing status of a run."""

    run_id: str
    status: str
    files_completed: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    files_processing: int = 0
    files_pending_upload: int = 0
    files_uploaded: int = 0
    progress_percent: float = 0.0
    is_complete: bool = False
    is_resumable: bool = False
    errors: List[RemoteFileError] = field(default_factory=list)


@dataclass
class DeleteResult:
    """Response to a delete-by-hash call."""

    deleted_count: int
    errors: List[str] = field(default_factory=list)


@dataclass
class Group:
    """Access-control group."""

    id: str
    name: str
    is_system: bool = False


@dataclass
class IncompleteRun:
    """A run left unfinished by a previous process."""

    id: str
    status: str
    files_pending_upload: int = 0
    files_uploaded: int = 0
    files_completed: int = 0
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None

    @property
    def files_pending(self) -> int:
        """Files not yet processed remotely."""
        return self.files_pending_upload + self.files_uploaded


class RemoteGateway(ABC):
    """Contract over the knowledge-base backend; the engine's only network dependency."""

    def __init__(self, **kwargs):
        self.logger = get_logger(self.__class__.__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def get_integration(self) -> Integration:
        """Resolve the integration bound to the API token."""

    @abstractmethod
    async def create_run(self, triggered_by: str) -> str:
        """Open a new run. Returns its remote ID."""

    @abstractmethod
    async def check_hashes(self, content_hashes: List[str]) -> Dict[str, HashCheckResult]:
        """Ask which hashes are already known remotely."""

    @abstractmethod
    async def request_upload_grants(
        self,
        files: List[UploadRequestFile],
        machine_id: str,
        os_name: str,
        run_id: Optional[str] = None
    ) -> UploadGrantBatch:
        """Request upload grants for a batch of files."""

    @abstractmethod
    async def upload_content(self, grant: UploadGrant, file_path: str) -> None:
        """Write a file's bytes to the grant's storage endpoint."""

    @abstractmethod
    async def confirm_uploads(
        self,
        run_id: str,
        succeeded_hashes: List[str],
        failed: Optional[List[FailedUpload]] = None
    ) -> ConfirmResult:
        """Report which transfers succeeded and which failed."""

    @abstractmethod
    async def poll_status(self, run_id: str) -> RemoteSyncStatus:
        """Fetch remote processing status of a run."""

    @abstractmethod
    async def delete_by_hashes(self, content_hashes: List[str]) -> DeleteResult:
        """Delete remote documents by content hash."""

    @abstractmethod
    async def complete_run(
        self,
        run_id: str,
        status: str,
        stats: Dict[str, int],
        error_message: Optional[str] = None,
        error_details: Optional[List[Dict[str, str]]] = None
    ) -> None:
        """Finalize a run with its counters and error detail."""

    @abstractmethod
    async def list_groups(self) -> List[Group]:
        """List access-control groups."""

    @abstractmethod
    async def list_incomplete_runs(self) -> List[IncompleteRun]:
        """List runs left in a resumable, incomplete state."""


class GatewayError(Exception):
    """Base class for remote gateway errors."""
    pass


class RateLimitError(GatewayError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationError(GatewayError):
    """Raised when API authentication fails."""
    pass


class APIConnectionError(GatewayError):
    """Raised when API connection fails or returns an unexpected status."""
    pass


class UploadTransferError(GatewayError):
    """Raised when writing bytes to object storage fails."""
    pass


# Failures a gateway call can surface when the remote is slow or unreachable.
# asyncio.TimeoutError is not an OSError before Python 3.11.
REMOTE_FAILURES = (GatewayError, OSError, asyncio.TimeoutError)


def describe_error(error: BaseException) -> str:
    """Message for logs and run records; some exceptions stringify to ''."""
    return str(error) or type(error).__name__
