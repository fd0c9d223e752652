"""
Manages loading, saving, and validating the engine configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError


FileCollisionPolicy = Literal['overwrite', 'rename', 'skip']


class Settings(BaseModel):
    """
    Defines the engine's configuration schema using Pydantic.

    Attributes:
        default_download_dir: Used when a job has no download_dir override. Empty means
            yt-dlp's working directory.
        file_collision: What to do when the output file already exists.
        max_speed_kbps: Rate limit passed to yt-dlp; 0 means unlimited.
        max_concurrent_downloads: Applied by AppController.start_all, not by the engine core.
        auto_clear_finished: Remove successfully finished jobs shortly after completion.
        default_preset: Preset used for jobs added without one.
        log_level: Minimum level written to the log file.
    """
    default_download_dir: str = ''
    file_collision: FileCollisionPolicy = 'rename'
    max_speed_kbps: int = Field(default=0, ge=0)
    max_concurrent_downloads: int = Field(default=2, ge=1, le=20)
    auto_clear_finished: bool = False
    default_preset: str = 'default'
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('default_download_dir')
    @classmethod
    def validate_default_download_dir(cls, value: str) -> str:
        """Falls back to yt-dlp's working directory when the folder is gone."""
        if value and not Path(value).expanduser().is_dir():
            return ''
        return str(Path(value).expanduser()) if value else ''


def validate_filename_template(value: Optional[str]) -> Optional[str]:
    """
    Validates a per-job yt-dlp filename template override.

    Raises:
        ValueError: If the template is empty, climbs out of the destination
            directory, or is absolute.
    """
    if value is None:
        return None
    is_invalid = (
        not value.strip() or
        '..' in value or
        Path(value).is_absolute()
    )
    if is_invalid:
        raise ValueError("Filename template is invalid. It must be relative and cannot contain '..'.")
    return value


class ConfigManager:
    """Handles loading and saving the engine configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
