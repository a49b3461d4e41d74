"""Configuration schema definitions for sync folders and schedules."""

import re
from typing import List, Optional, Union
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator

from ..utils.paths import normalize_extension_filter


_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

DAYS_OF_WEEK = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


class ScheduleFrequency(str, Enum):
    """How often scheduled syncs fire."""
    MANUAL = "manual"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class ScheduleConfig(BaseModel):
    """Configuration for the sync trigger."""

    frequency: ScheduleFrequency = Field(default=ScheduleFrequency.DAILY, description="Trigger frequency")
    time: str = Field(default="09:00", description="Time of day (HH:MM) for daily and weekly runs")
    day_of_week: str = Field(default="mon", description="Day for weekly runs")
    cron_expression: Optional[str] = Field(None, description="Five-field cron expression for custom schedules")

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        if not _TIME_PATTERN.match(v):
            raise ValueError("Time must use HH:MM format")
        return v

    @field_validator("day_of_week", mode="before")
    @classmethod
    def validate_day_of_week(cls, v):
        # 0 = Monday
        if isinstance(v, int):
            if not 0 <= v <= 6:
                raise ValueError("Day of week must be between 0 and 6")
            return DAYS_OF_WEEK[v]
        v = str(v).strip().lower()[:3]
        if v not in DAYS_OF_WEEK:
            raise ValueError(f"Day of week must be one of: {DAYS_OF_WEEK}")
        return v

    @model_validator(mode="after")
    def validate_custom_schedule(self):
        if self.frequency == ScheduleFrequency.CUSTOM:
            if not self.cron_expression or len(self.cron_expression.split()) != 5:
                raise ValueError("Custom schedule requires a five-field cron_expression")
        return self

    def to_cron_expression(self) -> Optional[str]:
        """Cron expression for this schedule, or None when manual."""
        if self.frequency == ScheduleFrequency.MANUAL:
            return None
        if self.frequency == ScheduleFrequency.CUSTOM:
            return self.cron_expression

        hour, minute = (int(part) for part in self.time.split(":"))
        if self.frequency == ScheduleFrequency.HOURLY:
            return "0 * * * *"
        if self.frequency == ScheduleFrequency.DAILY:
            return f"{minute} {hour} * * *"
        return f"{minute} {hour} * * {self.day_of_week}"


class FolderEntry(BaseModel):
    """A sync root as written in the agent config file."""

    local_path: str = Field(..., description="Absolute path of the folder to sync")
    include_subfolders: bool = Field(default=True)
    file_extension_filter: Optional[List[str]] = Field(None, description="Extensions to sync (None = all)")
    max_file_size_mb: Optional[int] = Field(None, gt=0, description="Skip files larger than this")
    group_ids: List[str] = Field(default_factory=list, description="Access-control groups forwarded to the backend")
    ignore_hidden: bool = Field(default=True)
    enabled: bool = Field(default=True)

    @field_validator("local_path")
    @classmethod
    def validate_local_path(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("local_path must not be empty")
        return v

    @field_validator("file_extension_filter", mode="before")
    @classmethod
    def normalize_extensions(cls, v: Union[str, List[str], None]):
        if isinstance(v, str):
            v = v.split(",")
        return normalize_extension_filter(v)


class AgentConfig(BaseModel):
    """Root configuration for the sync agent."""

    version: str = Field(default="1.0.0", description="Configuration version")
    updated_at: datetime = Field(default_factory=datetime.now, description="When config was last updated")
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    folders: List[FolderEntry] = Field(default_factory=list, description="Folders to sync")
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig, description="Sync trigger")

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_envs = ['development', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of: {valid_envs}")
        return v.lower()

    def get_enabled_folders(self) -> List[FolderEntry]:
        """Get folders that take part in syncs."""
        return [folder for folder in self.folders if folder.enabled]

    def get_folder(self, local_path: str) -> Optional[FolderEntry]:
        for folder in self.folders:
            if folder.local_path == local_path:
                return folder
        return None
