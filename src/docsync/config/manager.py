"""Configuration manager that mirrors the agent config file into the tracking store."""

import json
from typing import Dict, Optional
from datetime import datetime

from .schema import AgentConfig, FolderEntry, ScheduleConfig
from .loader import ConfigLoader, ConfigurationError, find_config_file
from ..database.service import DatabaseService
from ..database.models import FolderConfigCreate, FolderConfigUpdate, FolderConfigResponse
from ..utils.logging import get_logger, timed


SCHEDULE_CONFIG_KEY = "schedule"


class ConfigManager:
    """Manages configuration loading, validation, and synchronization with the tracking store."""

    def __init__(self, database_service: DatabaseService, config_file: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            database_service: Tracking store service for persistence
            config_file: Optional configuration file path
        """
        self.db_service = database_service
        self.config_file = config_file
        self.loader = ConfigLoader()
        self.logger = get_logger(self.__class__.__name__)

        self._config: Optional[AgentConfig] = None
        self.config_source: Optional[str] = None
        self._config_loaded_at: Optional[datetime] = None

    @timed
    def load_config(self, force_reload: bool = False) -> AgentConfig:
        """Load configuration from file, or from the default search path."""
        if self._config and not force_reload:
            return self._config

        try:
            self.config_source = self.config_file or find_config_file()
            if self.config_source:
                self._config = self.loader.load_from_file(self.config_source)
            else:
                self._config = self.loader.create_default_config()

            self._config_loaded_at = datetime.now()
            self.loader.validate_config(self._config)

            self.logger.info(
                "Configuration loaded successfully",
                folders_count=len(self._config.folders),
                environment=self._config.environment,
                config_file=self.config_source
            )

            return self._config

        except ConfigurationError:
            raise
        except Exception as e:
            self.logger.error("Failed to load configuration", error=str(e))
            raise ConfigurationError(f"Failed to load configuration: {e}")

    @timed
    def sync_to_database(self) -> Dict[str, int]:
        """Mirror configured folders and the schedule into the tracking store.

        Folders are matched by local path. Stored folders missing from the
        configuration are disabled, never deleted, so their file records survive.

        Returns:
            Dictionary with sync statistics
        """
        config = self.load_config()

        stats = {
            "folders_added": 0,
            "folders_updated": 0,
            "folders_skipped": 0,
            "folders_disabled": 0
        }

        try:
            existing = {
                folder.local_path: folder
                for folder in self.db_service.get_folder_configs()
            }

            for entry in config.folders:
                stored = existing.get(entry.local_path)

                if stored is None:
                    created = self.db_service.create_folder_config(
                        FolderConfigCreate(**entry.model_dump())
                    )
                    stats["folders_added"] += 1
                    self.logger.info(
                        "Created folder configuration from config file",
                        folder_config_id=created.id,
                        local_path=entry.local_path
                    )
                elif self._folder_needs_update(stored, entry):
                    self.db_service.update_folder_config(
                        stored.id,
                        FolderConfigUpdate(**entry.model_dump())
                    )
                    stats["folders_updated"] += 1
                else:
                    stats["folders_skipped"] += 1

            configured_paths = {entry.local_path for entry in config.folders}
            for local_path, stored in existing.items():
                if local_path not in configured_paths and stored.enabled:
                    self.db_service.update_folder_config(stored.id, FolderConfigUpdate(enabled=False))
                    stats["folders_disabled"] += 1
                    self.logger.info("Disabled folder not in configuration", folder_config_id=stored.id)

            self.set_schedule(config.schedule)

            self.logger.info("Configuration sync completed", stats=stats)
            return stats

        except Exception as e:
            self.logger.error("Failed to sync configuration to database", error=str(e))
            raise ConfigurationError(f"Failed to sync to database: {e}")

    def export_from_database(self) -> AgentConfig:
        """Export the tracking store's folders and schedule as configuration."""
        folders = [
            FolderEntry(
                local_path=folder.local_path,
                include_subfolders=folder.include_subfolders,
                file_extension_filter=folder.file_extension_filter,
                max_file_size_mb=folder.max_file_size_mb,
                group_ids=folder.group_ids,
                ignore_hidden=folder.ignore_hidden,
                enabled=folder.enabled
            )
            for folder in self.db_service.get_folder_configs()
        ]

        config = AgentConfig(folders=folders, schedule=self.get_schedule())

        self.logger.info("Exported configuration from database", folders_count=len(folders))
        return config

    def save_config(self, config: AgentConfig, file_path: Optional[str] = None, format: str = 'yaml'):
        """Save configuration to file (defaults to the current config file)."""
        output_path = file_path or self.config_file or f"docsync.{format}"
        self.loader.save_to_file(config, output_path, format)

    def add_folder(self, entry: FolderEntry, sync_to_db: bool = True) -> Optional[FolderConfigResponse]:
        """Add a folder to the configuration and optionally to the tracking store."""
        if self._config:
            self._config.folders.append(entry)

        if not sync_to_db:
            return None

        folder = self.db_service.create_folder_config(FolderConfigCreate(**entry.model_dump()))
        self.logger.info("Added folder", folder_config_id=folder.id, local_path=entry.local_path)
        return folder

    def remove_folder(self, local_path: str, sync_to_db: bool = True) -> bool:
        """Remove a folder from the configuration and disable it in the tracking store."""
        removed = False
        if self._config:
            before = len(self._config.folders)
            self._config.folders = [f for f in self._config.folders if f.local_path != local_path]
            removed = len(self._config.folders) != before

        if sync_to_db:
            stored = self.db_service.get_folder_config_by_path(local_path)
            if stored:
                self.db_service.update_folder_config(stored.id, FolderConfigUpdate(enabled=False))
                removed = True

        if removed:
            self.logger.info("Removed folder", local_path=local_path)
        return removed

    def get_schedule(self) -> ScheduleConfig:
        """Stored schedule, falling back to the loaded configuration."""
        raw = self.db_service.get_config(SCHEDULE_CONFIG_KEY)
        if raw:
            return ScheduleConfig.model_validate(json.loads(raw))
        return self.load_config().schedule

    def set_schedule(self, schedule: ScheduleConfig) -> None:
        self.db_service.set_config(SCHEDULE_CONFIG_KEY, schedule.model_dump_json())
        if self._config:
            self._config.schedule = schedule
        self.logger.info("Schedule stored", frequency=schedule.frequency.value)

    def reload_config(self) -> AgentConfig:
        return self.load_config(force_reload=True)

    def get_config(self) -> AgentConfig:
        return self.load_config()

    def _folder_needs_update(self, stored: FolderConfigResponse, entry: FolderEntry) -> bool:
        """Check if a stored folder differs from its config file entry."""
        return any(
            getattr(stored, field) != value
            for field, value in entry.model_dump().items()
        )
