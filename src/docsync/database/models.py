"""Database models for the local tracking store."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Boolean, Text, ForeignKey
from sqlalchemy.orm import declarative_base, relationship
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.paths import normalize_extension_filter


Base = declarative_base()


class FileStatus(str, Enum):
    """Sync status of a locally tracked file."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    DELETED = "deleted"


class SyncRunStatus(str, Enum):
    """Status of a reconciliation run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


# SQLAlchemy Models (Database Tables)

class ConfigEntryModel(Base):
    """Key/value configuration entry."""

    __tablename__ = "config_entries"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class FolderConfigModel(Base):
    """A sync root and its scan policy."""

    __tablename__ = "folder_configs"

    id = Column(Integer, primary_key=True, index=True)
    local_path = Column(Text, nullable=False)
    include_subfolders = Column(Boolean, default=True, nullable=False)
    file_extension_filter = Column(JSON, nullable=True)  # None = all files
    max_file_size_mb = Column(Integer, nullable=True)  # None = no limit
    group_ids = Column(JSON, default=list, nullable=False)
    ignore_hidden = Column(Boolean, default=True, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    files = relationship("FileRecordModel", back_populates="folder_config", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<FolderConfigModel(id={self.id}, path='{self.local_path}', enabled={self.enabled})>"


class FileRecordModel(Base):
    """One row per locally tracked file."""

    __tablename__ = "file_records"

    id = Column(Integer, primary_key=True, index=True)
    path = Column(Text, nullable=False, unique=True, index=True)
    content_hash = Column(String(64), nullable=False, index=True)
    size = Column(BigInteger, nullable=False)
    last_modified = Column(BigInteger, nullable=False)  # epoch ms
    remote_document_id = Column(String(255), nullable=True)
    folder_config_id = Column(Integer, ForeignKey("folder_configs.id"), nullable=False, index=True)
    last_synced_at = Column(BigInteger, nullable=True)  # epoch ms
    status = Column(String(20), default=FileStatus.PENDING.value, nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    folder_config = relationship("FolderConfigModel", back_populates="files")

    def __repr__(self):
        return f"<FileRecordModel(path='{self.path}', status='{self.status}')>"


class SyncRunModel(Base):
    """Local history of reconciliation runs."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    remote_run_id = Column(String(100), nullable=False, index=True)
    triggered_by = Column(String(50), nullable=False)
    status = Column(String(20), default=SyncRunStatus.RUNNING.value, nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    files_scanned = Column(Integer, default=0, nullable=False)
    files_new = Column(Integer, default=0, nullable=False)
    files_updated = Column(Integer, default=0, nullable=False)
    files_deleted = Column(Integer, default=0, nullable=False)
    files_failed = Column(Integer, default=0, nullable=False)
    files_skipped = Column(Integer, default=0, nullable=False)
    files_completed = Column(Integer, default=0, nullable=False)
    bytes_processed = Column(BigInteger, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<SyncRunModel(id={self.id}, remote_run_id='{self.remote_run_id}', status='{self.status}')>"


# Pydantic Models (Transfer Objects)

class FolderConfigCreate(BaseModel):
    """Pydantic model for creating a folder configuration."""
    local_path: str
    include_subfolders: bool = True
    file_extension_filter: Optional[List[str]] = None
    max_file_size_mb: Optional[int] = Field(default=None, gt=0)
    group_ids: List[str] = Field(default_factory=list)
    ignore_hidden: bool = True
    enabled: bool = True

    @field_validator("file_extension_filter")
    @classmethod
    def normalize_extensions(cls, v):
        return normalize_extension_filter(v)


class FolderConfigUpdate(BaseModel):
    """Pydantic model for updating a folder configuration."""
    local_path: Optional[str] = None
    include_subfolders: Optional[bool] = None
    file_extension_filter: Optional[List[str]] = None
    max_file_size_mb: Optional[int] = None
    group_ids: Optional[List[str]] = None
    ignore_hidden: Optional[bool] = None
    enabled: Optional[bool] = None

    @field_validator("file_extension_filter")
    @classmethod
    def normalize_extensions(cls, v):
        return normalize_extension_filter(v)


class FolderConfigResponse(BaseModel):
    """Pydantic model for a stored folder configuration."""
    id: int
    local_path: str
    include_subfolders: bool
    file_extension_filter: Optional[List[str]] = None
    max_file_size_mb: Optional[int] = None
    group_ids: List[str] = Field(default_factory=list)
    ignore_hidden: bool
    enabled: bool

    model_config = ConfigDict(from_attributes=True)


class FileRecordUpsert(BaseModel):
    """Pydantic model for inserting or updating a file record by path."""
    path: str
    content_hash: str
    size: int
    last_modified: int
    folder_config_id: int
    remote_document_id: Optional[str] = None
    last_synced_at: Optional[int] = None
    status: FileStatus = FileStatus.PENDING
    error_message: Optional[str] = None


class FileRecordResponse(BaseModel):
    """Pydantic model for a stored file record."""
    id: int
    path: str
    content_hash: str
    size: int
    last_modified: int
    remote_document_id: Optional[str] = None
    folder_config_id: int
    last_synced_at: Optional[int] = None
    status: FileStatus
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SyncRunCreate(BaseModel):
    """Pydantic model for recording a started run."""
    remote_run_id: str
    triggered_by: str
    started_at: Optional[datetime] = None


class SyncRunUpdate(BaseModel):
    """Pydantic model for finalizing a run."""
    status: Optional[SyncRunStatus] = None
    completed_at: Optional[datetime] = None
    files_scanned: Optional[int] = None
    files_new: Optional[int] = None
    files_updated: Optional[int] = None
    files_deleted: Optional[int] = None
    files_failed: Optional[int] = None
    files_skipped: Optional[int] = None
    files_completed: Optional[int] = None
    bytes_processed: Optional[int] = None
    error_message: Optional[str] = None
    error_details: Optional[List[Dict[str, Any]]] = None


class SyncRunResponse(BaseModel):
    """Pydantic model for a stored run."""
    id: int
    remote_run_id: str
    triggered_by: str
    status: SyncRunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    files_scanned: int
    files_new: int
    files_updated: int
    files_deleted: int
    files_failed: int
    files_skipped: int
    files_completed: int
    bytes_processed: int
    error_message: Optional[str] = None
    error_details: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(from_attributes=True)
