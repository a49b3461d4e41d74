"""Remote gateway package."""

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
    GatewayError,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    UploadTransferError,
    REMOTE_FAILURES,
    describe_error
)
from .backend import BackendGatewayClient

__all__ = [
    "RemoteGateway",
    "Integration",
    "HashCheckResult",
    "UploadRequestFile",
    "UploadGrant",
    "KnownFile",
    "UploadGrantBatch",
    "FailedUpload",
    "ConfirmResult",
    "RemoteFileError",
    "RemoteSyncStatus",
    "DeleteResult",
    "Group",
    "IncompleteRun",
    "GatewayError",
    "RateLimitError",
    "AuthenticationError",
    "APIConnectionError",
    "UploadTransferError",
    "REMOTE_FAILURES",
    "describe_error",
    "BackendGatewayClient"
]
