"""Database operations and repository classes."""

from datetime import datetime
from typing import List, Optional, Iterable
from sqlalchemy.orm import Session
from sqlalchemy import desc

from .models import (
    ConfigEntryModel, FolderConfigModel, FileRecordModel, SyncRunModel,
    FolderConfigCreate, FolderConfigUpdate,
    FileRecordUpsert, FileStatus,
    SyncRunCreate, SyncRunUpdate,
)
from ..utils.logging import get_logger, timed


logger = get_logger("database.operations")


class ConfigRepository:
    """Repository for key/value configuration."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        entry = self.session.get(ConfigEntryModel, key)
        return entry.value if entry else None

    def set(self, key: str, value: str) -> None:
        entry = self.session.get(ConfigEntryModel, key)
        if entry:
            entry.value = value
        else:
            self.session.add(ConfigEntryModel(key=key, value=value))
        self.session.flush()

    def delete(self, key: str) -> bool:
        entry = self.session.get(ConfigEntryModel, key)
        if not entry:
            return False
        self.session.delete(entry)
        return True


class FolderConfigRepository:
    """Repository for folder configuration operations."""

    def __init__(self, session: Session):
        self.session = session

    @timed
    def create(self, folder_data: FolderConfigCreate) -> FolderConfigModel:
        """Create a new folder configuration."""
        folder = FolderConfigModel(**folder_data.model_dump())

        self.session.add(folder)
        self.session.flush()  # Get the ID without committing

        logger.info(
            "Folder configuration created",
            folder_config_id=folder.id,
            local_path=folder.local_path
        )

        return folder

    def get_by_id(self, folder_config_id: int) -> Optional[FolderConfigModel]:
        """Get folder configuration by ID."""
        return self.session.get(FolderConfigModel, folder_config_id)

    def get_by_path(self, local_path: str) -> Optional[FolderConfigModel]:
        """Get folder configuration by its local path."""
        return self.session.query(FolderConfigModel).filter(
            FolderConfigModel.local_path == local_path
        ).first()

    def get_all(self, enabled_only: bool = False) -> List[FolderConfigModel]:
        """Get all folder configurations."""
        query = self.session.query(FolderConfigModel)
        if enabled_only:
            query = query.filter(FolderConfigModel.enabled == True)  # noqa: E712
        return query.order_by(FolderConfigModel.id).all()

    @timed
    def update(self, folder_config_id: int, update_data: FolderConfigUpdate) -> Optional[FolderConfigModel]:
        """Update a folder configuration."""
        folder = self.get_by_id(folder_config_id)
        if not folder:
            return None

        update_dict = update_data.model_dump(exclude_unset=True)
        for field, value in update_dict.items():
            setattr(folder, field, value)

        logger.info(
            "Folder configuration updated",
            folder_config_id=folder_config_id,
            updated_fields=list(update_dict.keys())
        )

        return folder

    @timed
    def delete(self, folder_config_id: int) -> bool:
        """Delete a folder configuration and its tracked files."""
        folder = self.get_by_id(folder_config_id)
        if not folder:
            return False

        self.session.delete(folder)
        logger.info("Folder configuration deleted", folder_config_id=folder_config_id)

        return True


class FileRecordRepository:
    """Repository for tracked file operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_path(self, path: str) -> Optional[FileRecordModel]:
        """Get file record by path."""
        return self.session.query(FileRecordModel).filter(FileRecordModel.path == path).first()

    def get_by_status(self, status: FileStatus) -> List[FileRecordModel]:
        """Get file records with the given status."""
        return self.session.query(FileRecordModel).filter(
            FileRecordModel.status == status.value
        ).order_by(FileRecordModel.path).all()

    def get_by_folder_config(self, folder_config_id: int) -> List[FileRecordModel]:
        """Get file records owned by a folder configuration."""
        return self.session.query(FileRecordModel).filter(
            FileRecordModel.folder_config_id == folder_config_id
        ).order_by(FileRecordModel.path).all()

    def get_by_hashes(self, content_hashes: Iterable[str]) -> List[FileRecordModel]:
        """Get file records whose content hash is in the given set."""
        hashes = list(content_hashes)
        if not hashes:
            return []
        return self.session.query(FileRecordModel).filter(
            FileRecordModel.content_hash.in_(hashes)
        ).all()

    def upsert(self, file_data: FileRecordUpsert) -> FileRecordModel:
        """Insert a file record or update the existing one with the same path."""
        values = file_data.model_dump()
        values["status"] = file_data.status.value

        record = self.get_by_path(file_data.path)
        if record:
            for field, value in values.items():
                setattr(record, field, value)
        else:
            record = FileRecordModel(**values)
            self.session.add(record)

        self.session.flush()
        return record

    def update_status(self, path: str, status: FileStatus, error_message: Optional[str] = None) -> bool:
        """Update the status of a single record."""
        record = self.get_by_path(path)
        if not record:
            return False

        record.status = status.value
        record.error_message = error_message
        return True

    @timed
    def delete_by_paths(self, paths: Iterable[str]) -> int:
        """Delete records by path. Returns count of deleted records."""
        paths = list(paths)
        if not paths:
            return 0

        count = self.session.query(FileRecordModel).filter(
            FileRecordModel.path.in_(paths)
        ).delete(synchronize_session=False)

        logger.info("File records deleted", count=count)
        return count

    def count_by_status(self) -> dict:
        """Count records per status."""
        counts = {status.value: 0 for status in FileStatus}
        for record_status, in self.session.query(FileRecordModel.status).all():
            counts[record_status] = counts.get(record_status, 0) + 1
        return counts


class SyncRunRepository:
    """Repository for local run history."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, run_data: SyncRunCreate) -> SyncRunModel:
        """Record a started run."""
        sync_run = SyncRunModel(
            remote_run_id=run_data.remote_run_id,
            triggered_by=run_data.triggered_by,
            started_at=run_data.started_at or datetime.utcnow()
        )

        self.session.add(sync_run)
        self.session.flush()

        logger.info("Sync run recorded", sync_run_id=sync_run.id, remote_run_id=sync_run.remote_run_id)

        return sync_run

    def get_by_id(self, sync_run_id: int) -> Optional[SyncRunModel]:
        return self.session.get(SyncRunModel, sync_run_id)

    def update(self, sync_run_id: int, update_data: SyncRunUpdate) -> Optional[SyncRunModel]:
        """Update a recorded run."""
        sync_run = self.get_by_id(sync_run_id)
        if not sync_run:
            return None

        update_dict = update_data.model_dump(exclude_unset=True)
        if "status" in update_dict and update_dict["status"] is not None:
            update_dict["status"] = update_data.status.value
        for field, value in update_dict.items():
            setattr(sync_run, field, value)

        return sync_run

    def get_recent(self, limit: int = 20) -> List[SyncRunModel]:
        """Get most recent runs first."""
        return self.session.query(SyncRunModel).order_by(
            desc(SyncRunModel.started_at), desc(SyncRunModel.id)
        ).limit(limit).all()
