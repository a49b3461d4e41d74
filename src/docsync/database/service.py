"""High-level tracking store service layer."""

from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable
from contextlib import contextmanager

from .database import DatabaseManager, get_db_manager
from .operations import (
    ConfigRepository,
    FolderConfigRepository,
    FileRecordRepository,
    SyncRunRepository,
)
from .models import (
    FolderConfigCreate, FolderConfigUpdate, FolderConfigResponse,
    FileRecordUpsert, FileRecordResponse, FileStatus,
    SyncRunCreate, SyncRunUpdate, SyncRunResponse, SyncRunStatus,
)
from ..utils.logging import get_logger


logger = get_logger("database.service")


class DatabaseService:
    """Local tracking store: config, folder configurations, file records and run history."""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self.db_manager.session_scope() as session:
            yield session

    # Config operations

    def get_config(self, key: str) -> Optional[str]:
        with self.transaction() as session:
            return ConfigRepository(session).get(key)

    def set_config(self, key: str, value: str) -> None:
        with self.transaction() as session:
            ConfigRepository(session).set(key, value)

    def delete_config(self, key: str) -> bool:
        with self.transaction() as session:
            return ConfigRepository(session).delete(key)

    # Folder configuration operations

    def create_folder_config(self, folder_data: FolderConfigCreate) -> FolderConfigResponse:
        """Create a new folder configuration."""
        with self.transaction() as session:
            folder = FolderConfigRepository(session).create(folder_data)
            return FolderConfigResponse.model_validate(folder)

    def get_folder_config(self, folder_config_id: int) -> Optional[FolderConfigResponse]:
        with self.transaction() as session:
            folder = FolderConfigRepository(session).get_by_id(folder_config_id)
            return FolderConfigResponse.model_validate(folder) if folder else None

    def get_folder_config_by_path(self, local_path: str) -> Optional[FolderConfigResponse]:
        with self.transaction() as session:
            folder = FolderConfigRepository(session).get_by_path(local_path)
            return FolderConfigResponse.model_validate(folder) if folder else None

    def get_folder_configs(self, enabled_only: bool = False) -> List[FolderConfigResponse]:
        """Get folder configurations, optionally only the enabled ones."""
        with self.transaction() as session:
            folders = FolderConfigRepository(session).get_all(enabled_only=enabled_only)
            return [FolderConfigResponse.model_validate(f) for f in folders]

    def update_folder_config(
        self,
        folder_config_id: int,
        update_data: FolderConfigUpdate
    ) -> Optional[FolderConfigResponse]:
        with self.transaction() as session:
            folder = FolderConfigRepository(session).update(folder_config_id, update_data)
            return FolderConfigResponse.model_validate(folder) if folder else None

    def delete_folder_config(self, folder_config_id: int) -> bool:
        """Delete a folder configuration and all its tracked files."""
        with self.transaction() as session:
            return FolderConfigRepository(session).delete(folder_config_id)

    # File record operations

    def get_file_by_path(self, path: str) -> Optional[FileRecordResponse]:
        with self.transaction() as session:
            record = FileRecordRepository(session).get_by_path(path)
            return FileRecordResponse.model_validate(record) if record else None

    def get_files_by_status(self, status: FileStatus) -> List[FileRecordResponse]:
        with self.transaction() as session:
            records = FileRecordRepository(session).get_by_status(status)
            return [FileRecordResponse.model_validate(r) for r in records]

    def get_files_by_folder_config(self, folder_config_id: int) -> List[FileRecordResponse]:
        with self.transaction() as session:
            records = FileRecordRepository(session).get_by_folder_config(folder_config_id)
            return [FileRecordResponse.model_validate(r) for r in records]

    def get_files_by_hashes(self, content_hashes: Iterable[str]) -> List[FileRecordResponse]:
        with self.transaction() as session:
            records = FileRecordRepository(session).get_by_hashes(content_hashes)
            return [FileRecordResponse.model_validate(r) for r in records]

    def upsert_file(self, file_data: FileRecordUpsert) -> FileRecordResponse:
        """Insert or update a file record keyed by path."""
        with self.transaction() as session:
            record = FileRecordRepository(session).upsert(file_data)
            return FileRecordResponse.model_validate(record)

    def update_file_status(self, path: str, status: FileStatus, error_message: Optional[str] = None) -> bool:
        with self.transaction() as session:
            return FileRecordRepository(session).update_status(path, status, error_message)

    def delete_files_by_paths(self, paths: Iterable[str]) -> int:
        """Remove file records entirely."""
        with self.transaction() as session:
            return FileRecordRepository(session).delete_by_paths(paths)

    def get_file_stats(self) -> Dict[str, int]:
        """Count tracked files per status."""
        with self.transaction() as session:
            return FileRecordRepository(session).count_by_status()

    # Run history operations

    def start_sync_run(self, remote_run_id: str, triggered_by: str) -> int:
        """Record a started run. Returns the local history ID."""
        with self.transaction() as session:
            sync_run = SyncRunRepository(session).create(
                SyncRunCreate(remote_run_id=remote_run_id, triggered_by=triggered_by)
            )
            return sync_run.id

    def complete_sync_run(
        self,
        sync_run_id: int,
        status: SyncRunStatus,
        stats: Dict[str, int],
        error_message: Optional[str] = None,
        error_details: Optional[List[Dict[str, Any]]] = None
    ) -> bool:
        """Finalize a recorded run with its counters."""
        with self.transaction() as session:
            update_data = SyncRunUpdate(
                status=status,
                completed_at=datetime.utcnow(),
                files_scanned=stats.get("files_scanned", 0),
                files_new=stats.get("files_new", 0),
                files_updated=stats.get("files_updated", 0),
                files_deleted=stats.get("files_deleted", 0),
                files_failed=stats.get("files_failed", 0),
                files_skipped=stats.get("files_skipped", 0),
                files_completed=stats.get("files_completed", 0),
                bytes_processed=stats.get("bytes_processed", 0),
                error_message=error_message,
                error_details=error_details
            )

            sync_run = SyncRunRepository(session).update(sync_run_id, update_data)
            if not sync_run:
                return False

        logger.info(
            "Sync run finalized locally",
            sync_run_id=sync_run_id,
            status=status.value,
            stats=stats
        )
        return True

    def get_sync_history(self, limit: int = 20) -> List[SyncRunResponse]:
        """Get recorded runs, newest first."""
        with self.transaction() as session:
            runs = SyncRunRepository(session).get_recent(limit)
            return [SyncRunResponse.model_validate(r) for r in runs]

