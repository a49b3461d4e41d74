"""Local tracking store package."""

from .database import (
    DatabaseManager,
    TrackingStoreError,
    get_db_manager,
    init_database,
    close_database
)

from .models import (
    ConfigEntryModel,
    FolderConfigModel,
    FileRecordModel,
    SyncRunModel,
    FolderConfigCreate,
    FolderConfigUpdate,
    FolderConfigResponse,
    FileRecordUpsert,
    FileRecordResponse,
    SyncRunCreate,
    SyncRunUpdate,
    SyncRunResponse,
    FileStatus,
    SyncRunStatus
)

from .operations import (
    ConfigRepository,
    FolderConfigRepository,
    FileRecordRepository,
    SyncRunRepository
)

from .service import DatabaseService

__all__ = [
    # Database management
    "DatabaseManager",
    "TrackingStoreError",
    "get_db_manager",
    "init_database",
    "close_database",

    # Models
    "ConfigEntryModel",
    "FolderConfigModel",
    "FileRecordModel",
    "SyncRunModel",
    "FolderConfigCreate",
    "FolderConfigUpdate",
    "FolderConfigResponse",
    "FileRecordUpsert",
    "FileRecordResponse",
    "SyncRunCreate",
    "SyncRunUpdate",
    "SyncRunResponse",
    "FileStatus",
    "SyncRunStatus",

    # Repositories
    "ConfigRepository",
    "FolderConfigRepository",
    "FileRecordRepository",
    "SyncRunRepository",

    # Service
    "DatabaseService",
]
