"""
Manages loading, saving, and validating the service configuration.

This module defines the configuration schema as a pydantic-settings model
(`Settings`), which reads `YTDLP_WEB_*` environment variables, and a manager
class (`ConfigManager`) that layers an optional JSON file underneath them.
"""

import json
import time
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_OUTPUT_DIR, TEMP_DOWNLOAD_DIR, ENV_PREFIX, MAX_CONCURRENT_LIMIT
from .jobs import DownloadOptions


class Settings(BaseSettings):
    """
    Defines the service's configuration schema.

    Every field can be set from the environment with the `YTDLP_WEB_` prefix,
    e.g. `YTDLP_WEB_MAX_CONCURRENT_DOWNLOADS=2`. The listening port also
    honours the plain `PORT` variable.
    """
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter='__',
        populate_by_name=True,
        extra='ignore',
    )

    host: str = '0.0.0.0'
    port: int = Field(default=3000, ge=1, le=65535,
                      validation_alias=AliasChoices('port', f'{ENV_PREFIX}PORT', 'PORT'))
    max_concurrent_downloads: int = Field(default=4, ge=1, le=MAX_CONCURRENT_LIMIT)
    output_dir: Path = DEFAULT_OUTPUT_DIR
    temp_dir: Path = TEMP_DOWNLOAD_DIR
    job_timeout: Optional[float] = Field(default=None, gt=0)
    cancel_grace_period: float = Field(default=10.0, gt=0)
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    diagnostic_lines: int = Field(default=20, ge=1, le=500)
    log_level: str = 'INFO'
    default_options: DownloadOptions = Field(default_factory=DownloadOptions)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('job_timeout', mode='before')
    @classmethod
    def validate_job_timeout(cls, value):
        """Treats an empty value or 0 as 'no timeout'."""
        if value in ('', 0, '0', None):
            return None
        return value


class ConfigManager:
    """Handles loading and saving the optional configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)

    def load(self) -> Settings:
        """
        Loads the config file, lets the environment override it, and validates.

        If the file doesn't exist only the environment and defaults are used.
        If it is invalid, it is backed up and ignored.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info(f"No config file at {self.config_path}; using environment and defaults.")
            return Settings()

        # Invalid environment values are the caller's problem, not the file's.
        from_env = Settings().model_fields_set
        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            if not isinstance(config_data, dict):
                raise ValueError("top-level JSON value must be an object")
            file_values = {key: value for key, value in config_data.items() if key not in from_env}
            return Settings(**file_values)
        except (ValidationError, ValueError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
