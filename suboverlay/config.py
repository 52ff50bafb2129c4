"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`),
a manager class (`ConfigManager`) to handle persistence to a JSON file, and the
`ConfigStore` get/set/subscribe interface handed to the components that read
or write persisted state (tool paths, cookies, overlay style, cache entries).
"""

import copy
import json
import time
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_AUDIO_FORMAT, DEFAULT_MERGE_FORMAT, DEFAULT_OVERLAY_PORT, DEFAULT_SUBTITLE_FORMAT
from .exceptions import ConfigurationError


class BinPaths(BaseModel):
    """Locations of the external tools. Empty means "discover it"."""
    yt_dlp_path: str = ''
    ffmpeg_path: str = ''


class OutputStyle(BaseModel):
    """Overlay output and display style, pushed as-is to renderer clients."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mode: str = 'http'
    port: int = DEFAULT_OVERLAY_PORT
    background: str = 'transparent'
    max_width: int = Field(default=1920, ge=1)
    align: str = 'center'
    wrap_style: int = Field(default=2, ge=0, le=3)

    @field_validator('port')
    @classmethod
    def validate_port(cls, value: int) -> int:
        """Ensures the port fits in the TCP port range."""
        if not 0 <= value <= 65535:
            raise ValueError(f"Invalid port value: {value}")
        return value


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings. `downloads` holds the raw cache entry records owned
    by the entry store; nothing else should write to it.
    """
    bins: BinPaths = Field(default_factory=BinPaths)
    output: OutputStyle = Field(default_factory=OutputStyle)
    cookies_path: str = ''
    downloads: List[Dict[str, Any]] = Field(default_factory=list)
    fonts: List[Dict[str, Any]] = Field(default_factory=list)
    merge_format: str = DEFAULT_MERGE_FORMAT
    audio_format: str = DEFAULT_AUDIO_FORMAT
    subtitle_format: str = DEFAULT_SUBTITLE_FORMAT
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

    @field_validator('merge_format', 'subtitle_format')
    @classmethod
    def validate_format(cls, value: str) -> str:
        """Normalizes a container format name (no leading dot) and rejects path-like values."""
        value = value.strip().lstrip('.')
        if '/' in value or '\\' in value:
            raise ValueError(f"'{value}' is not a valid container format.")
        return value


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
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


ConfigListener = Callable[[str, Any], None]


class ConfigStore:
    """
    Key-value view over the persisted settings.

    Values returned by `get` are copies; every `set`/`update` is validated,
    written through the ConfigManager, and announced to subscribers.
    """
    def __init__(self, config_manager: ConfigManager, settings: Settings):
        self.config_manager = config_manager
        self._settings = settings
        self._listeners: List[ConfigListener] = []
        self.logger = logging.getLogger(__name__)

    @classmethod
    def open(cls, config_path: Path) -> 'ConfigStore':
        """Loads (or creates) the configuration file at `config_path`."""
        manager = ConfigManager(config_path)
        return cls(manager, manager.load())

    @property
    def settings(self) -> Settings:
        """A snapshot copy of the current settings."""
        return self._settings.model_copy(deep=True)

    def get(self, key: str) -> Any:
        if key not in Settings.model_fields:
            raise KeyError(key)
        value = getattr(self._settings, key)
        if isinstance(value, BaseModel):
            return value.model_copy(deep=True)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any):
        self.update({key: value})

    def update(self, patch: Dict[str, Any]):
        """
        Applies a partial update to the settings and persists it.

        Raises:
            ConfigurationError: If a key is unknown or a value fails validation.
        """
        data = self._settings.model_dump()
        for key, value in patch.items():
            if key not in Settings.model_fields:
                raise ConfigurationError(f"Unknown setting '{key}'.")
            data[key] = value.model_dump() if isinstance(value, BaseModel) else value

        try:
            new_settings = Settings.model_validate(data)
        except ValidationError as e:
            error_details = e.errors()[0]
            field = '.'.join(str(part) for part in error_details['loc'])
            raise ConfigurationError(f"Error in field '{field}': {error_details['msg']}") from e

        self._settings = new_settings
        self.config_manager.save(new_settings)
        for key in patch:
            self._notify(key, self.get(key))

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Registers `listener(key, value)` for changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, key: str, value: Any):
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                self.logger.exception(f"Config listener failed for key '{key}'")
