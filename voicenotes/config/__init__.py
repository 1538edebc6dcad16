"""YAML configuration loader and recorder profiles for voicenotes."""

import os
import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:5000",
        "timeout_seconds": 20,
    },
    "google_cloud": {
        "language": "en-US",
        "enable_automatic_punctuation": True,
        "model": "latest_long",
    },
    "audio": {
        "sample_rate": 16000,
        "chunk_size": 1024,
        "channels": 1,
        "topic": "audio.frame",
    },
    "recorder": {
        "profile": "desktop",
        "overrides": {},
    },
    "logging": {
        "level": "INFO",
        "file_path": "data/logs/voicenotes.log",
        "console_output": True,
    },
}


class RecorderSettings(BaseModel):
    """Timing and audio constraints for one recording session.

    All delays are in seconds. ``manual_entry_timeout`` of None waits for the
    user indefinitely.
    """
    settle_delay: float = Field(default=1.0, ge=0)
    stop_grace: float = Field(default=2.0, ge=0)
    retry_grace: float = Field(default=1.0, ge=0)
    health_check_interval: float = Field(default=2.0, gt=0)
    capture_stop_timeout: float = Field(default=5.0, gt=0)
    manual_entry_timeout: Optional[float] = Field(default=None, gt=0)
    sample_rate: int = Field(default=16000, gt=0)
    chunk_size: int = Field(default=1024, gt=0)
    channels: int = Field(default=1, ge=1)


# Mobile microphones take longer to settle and recognizers lag behind
RECORDER_PROFILES: Dict[str, Dict[str, Any]] = {
    "desktop": {},
    "mobile": {
        "settle_delay": 1.5,
        "stop_grace": 3.0,
        "retry_grace": 1.5,
        "capture_stop_timeout": 8.0,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class VoiceNotesConfig:
    """voicenotes configuration loader."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, built-in defaults are used.
        """
        self.config_file = Path(config_path) if config_path else None

        if self.config_file is None:
            logger.info("No configuration file given, using defaults")
            self.config = copy.deepcopy(DEFAULT_CONFIG)
            return

        if not self.config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_file}")

        logger.info(f"Loading configuration from: {self.config_file}")
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        if not config:
            raise ValueError("Configuration file is empty")
        if not isinstance(config, dict):
            raise ValueError("Configuration file must contain a mapping")

        config = _merge(DEFAULT_CONFIG, config)
        self._resolve_paths(config)

        logger.info("Configuration loaded successfully")
        return config

    def _resolve_paths(self, config: Dict[str, Any]) -> None:
        """Resolve relative paths in configuration relative to config file location."""
        config_dir = self.config_file.parent

        creds_path = config.get('google_cloud', {}).get('credentials_path')
        if creds_path and not os.path.isabs(creds_path):
            config['google_cloud']['credentials_path'] = str(config_dir / creds_path)

        log_path = config.get('logging', {}).get('file_path')
        if log_path and not os.path.isabs(log_path):
            config['logging']['file_path'] = str(config_dir / log_path)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'google_cloud.language').

        Args:
            key_path: Dot-separated key path
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self.config
        for key in key_path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation."""
        keys = key_path.split('.')
        config_dict = self.config

        for key in keys[:-1]:
            if key not in config_dict or not isinstance(config_dict[key], dict):
                config_dict[key] = {}
            config_dict = config_dict[key]

        config_dict[keys[-1]] = value
        logger.debug(f"Configuration key '{key_path}' set to: {value}")

    def get_google_credentials_path(self) -> Optional[str]:
        """Get Google credentials path, or None when live transcription is not configured."""
        creds_path = self.get('google_cloud.credentials_path')
        if not creds_path:
            return None

        creds_file = Path(creds_path)
        if not creds_file.exists():
            logger.warning(f"Google credentials file not found: {creds_path}")
            return None

        return str(creds_file.absolute())

    def get_recorder_settings(self, profile: Optional[str] = None) -> RecorderSettings:
        """Build recorder settings from the selected profile, audio section and overrides."""
        profile = profile or self.get('recorder.profile', 'desktop')
        if profile not in RECORDER_PROFILES:
            raise ValueError(f"Unknown recorder profile: {profile} "
                             f"(expected one of {', '.join(RECORDER_PROFILES)})")

        values: Dict[str, Any] = {
            "sample_rate": self.get('audio.sample_rate', 16000),
            "chunk_size": self.get('audio.chunk_size', 1024),
            "channels": self.get('audio.channels', 1),
        }
        values.update(RECORDER_PROFILES[profile])
        values.update(self.get('recorder.overrides') or {})

        settings = RecorderSettings(**values)
        logger.debug(f"Recorder settings ({profile}): {settings}")
        return settings


_config: Optional[VoiceNotesConfig] = None


def get_config() -> VoiceNotesConfig:
    """Return the process-wide configuration, loading ./voicenotes.yaml if present."""
    global _config
    if _config is None:
        default_path = Path("voicenotes.yaml")
        _config = VoiceNotesConfig(str(default_path) if default_path.exists() else None)
    return _config


def reload_config(config_path: Optional[str] = None) -> VoiceNotesConfig:
    """Replace the process-wide configuration."""
    global _config
    _config = VoiceNotesConfig(config_path)
    return _config
