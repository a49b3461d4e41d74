"""Core sync logic package."""

from .exceptions import (
    SyncEngineError,
    SyncAlreadyRunningError,
    SyncConfigurationError,
    UploadCancelledError
)
from .fingerprint import compute_file_hash, compute_file_hash_async
from .scanner import FolderScanner, ScannedFile
from .status import SyncStatus, StatusBroadcaster
from .uploader import UploadOrchestrator, UploadCandidate, UploadBatchResult
from .sync_engine import SyncEngine, SyncResult

__all__ = [
    "SyncEngineError",
    "SyncAlreadyRunningError",
    "SyncConfigurationError",
    "UploadCancelledError",
    "compute_file_hash",
    "compute_file_hash_async",
    "FolderScanner",
    "ScannedFile",
    "SyncStatus",
    "StatusBroadcaster",
    "UploadOrchestrator",
    "UploadCandidate",
    "UploadBatchResult",
    "SyncEngine",
    "SyncResult"
]
