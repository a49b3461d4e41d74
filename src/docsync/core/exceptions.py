"""Sync engine exception hierarchy."""


class SyncEngineError(Exception):
    """Base exception for sync engine errors."""
    pass


class SyncAlreadyRunningError(SyncEngineError):
    """Raised when a run is requested while another is active."""

    def __init__(self, message: str = "Sync already running"):
        super().__init__(message)


class SyncConfigurationError(SyncEngineError):
    """Raised when credentials or folder configurations are missing."""
    pass


class UploadCancelledError(SyncEngineError):
    """Raised when a large upload batch is declined."""

    def __init__(self, message: str = "Upload cancelled by user"):
        super().__init__(message)
