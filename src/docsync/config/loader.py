"""Reading and writing the agent config file (YAML or JSON)."""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .schema import AgentConfig, ScheduleFrequency
from ..utils.logging import get_logger


CONFIG_FILE_ENV = "DOCSYNC_CONFIG_FILE"

CONFIG_FILE_CANDIDATES = (
    Path("config") / "docsync.yaml",
    Path("config") / "docsync.yml",
    Path("config") / "docsync.json",
    Path("docsync.yaml"),
    Path("docsync.yml"),
    Path("docsync.json"),
)

PARSERS: Dict[str, Callable[[Any], Any]] = {
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
    ".json": json.load,
}

# Environment variable -> (section, key); section None means top level
ENV_OVERRIDES = {
    "DOCSYNC_LOG_LEVEL": (None, "log_level"),
    "DOCSYNC_ENVIRONMENT": (None, "environment"),
    "DOCSYNC_SCHEDULE_FREQUENCY": ("schedule", "frequency"),
    "DOCSYNC_SCHEDULE_TIME": ("schedule", "time"),
    "DOCSYNC_SCHEDULE_CRON": ("schedule", "cron_expression"),
}


class ConfigurationError(Exception):
    """Raised when the agent config file cannot be read, parsed or validated."""
    pass


class ConfigLoader:
    """Turns config files and plain dicts into validated ``AgentConfig`` objects."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> AgentConfig:
        """Parse and validate a config file.

        The parser is picked by file suffix. ``DOCSYNC_*`` environment
        overrides are applied on top of the file contents.

        Raises:
            ConfigurationError: If the file is missing, has an unknown
                suffix, does not parse, or fails validation
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        parser = PARSERS.get(file_path.suffix.lower())
        if parser is None:
            raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = parser(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot parse {file_path.name}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read {file_path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"{file_path.name} must contain a mapping at the top level")

        config = self.load_from_dict(data or {})
        self.logger.info(
            "Agent config loaded",
            file_path=str(file_path),
            folders=len(config.folders),
            frequency=config.schedule.frequency.value
        )
        return config

    def load_from_dict(self, data: Dict[str, Any]) -> AgentConfig:
        try:
            return AgentConfig(**self._apply_env_overrides(data))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid agent config: {problems}") from e

    def save_to_file(self, config: AgentConfig, file_path: Union[str, Path], format: str = "yaml"):
        """Write ``config`` as YAML or JSON, stamping ``updated_at``."""
        format = format.lower()
        if format not in ("yaml", "json"):
            raise ConfigurationError(f"Unsupported format: {format}")

        file_path = Path(file_path)
        data = config.model_dump(mode="json")
        data["updated_at"] = datetime.now().isoformat()

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "w", encoding="utf-8") as f:
                if format == "yaml":
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
                else:
                    json.dump(data, f, indent=2)
        except OSError as e:
            raise ConfigurationError(f"Cannot write {file_path}: {e}") from e

        self.logger.info("Agent config saved", file_path=str(file_path), format=format)

    def create_default_config(self) -> AgentConfig:
        """No folders and a manual schedule: nothing runs until configured."""
        return AgentConfig(schedule={"frequency": ScheduleFrequency.MANUAL})

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        applied = []

        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if not value:
                continue
            if section is None:
                data[key] = value
            else:
                data[section] = {**(data.get(section) or {}), key: value}
            applied.append(env_name)

        if applied:
            self.logger.info("Applied environment overrides", variables=applied)
        return data

    def validate_config(self, config: AgentConfig) -> List[str]:
        """Return human-readable warnings for a config that loads but looks wrong."""
        warnings = []
        enabled = config.get_enabled_folders()

        paths = [folder.local_path for folder in config.folders]
        if len(paths) != len(set(paths)):
            warnings.append("Duplicate folder paths found")

        if not enabled:
            warnings.append("No enabled folders configured")

        resolved = []
        for folder in enabled:
            if not os.path.isdir(folder.local_path):
                warnings.append(f"Folder does not exist: {folder.local_path}")
            resolved.append((folder.local_path, Path(folder.local_path).expanduser().resolve()))

        # Nested folders get scanned once per entry
        for path, root in resolved:
            for other_path, other_root in resolved:
                if path != other_path and root != other_root and root in other_root.parents:
                    warnings.append(f"Folder {other_path} is inside {path}")

        if config.environment == "production" and config.schedule.frequency == ScheduleFrequency.MANUAL:
            warnings.append("Manual schedule in production")

        if warnings:
            self.logger.warning("Agent config warnings", warnings=warnings)
        return warnings


def find_config_file() -> Optional[str]:
    """Locate the agent config file.

    ``DOCSYNC_CONFIG_FILE`` wins when it points at an existing file;
    otherwise the first of ``CONFIG_FILE_CANDIDATES`` that exists in the
    working directory is used.
    """
    logger = get_logger("find_config_file")

    explicit = os.getenv(CONFIG_FILE_ENV)
    if explicit:
        if os.path.isfile(explicit):
            return explicit
        logger.warning("Configured agent config file not found", file=explicit)

    for candidate in CONFIG_FILE_CANDIDATES:
        if candidate.is_file():
            logger.info("Found agent config file", file=str(candidate))
            return str(candidate)

    return None
