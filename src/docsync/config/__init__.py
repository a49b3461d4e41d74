"""Configuration package for the sync agent."""

from .settings import (
    DatabaseSettings,
    BackendSettings,
    SyncSettings,
    SchedulingSettings,
    ServerSettings,
    LoggingSettings,
    AppSettings,
    get_settings
)

from .schema import (
    AgentConfig,
    FolderEntry,
    ScheduleConfig,
    ScheduleFrequency
)

# loader and manager depend on the database package; import them directly.
__all__ = [
    "DatabaseSettings",
    "BackendSettings",
    "SyncSettings",
    "SchedulingSettings",
    "ServerSettings",
    "LoggingSettings",
    "AppSettings",
    "get_settings",

    "AgentConfig",
    "FolderEntry",
    "ScheduleConfig",
    "ScheduleFrequency"
]
