# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Configuration management for SynPhoto.
Handles loading, validation, and defaults for all settings.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_CONFIG_PATHS = [
    "/etc/synphoto/config.yaml",
    os.path.expanduser("~/.config/synphoto/config.yaml"),
    "./config.yaml",
]

DEFAULT_DATA_DIR = os.path.expanduser("~/.local/share/synphoto")

# Name of the centralized metadata database; the cache never deletes it
METADATA_DB_FILENAME = "photo_metadata.json"

SORT_OPTIONS = ["name", "created", "modified"]


@dataclass
class SynologyConfig:
    """Synology Photos connection and photo selection."""
    url: str = ""
    account: str = ""
    password: str = ""
    album_name: str = ""
    share_token: str = ""
    tag_names: List[str] = field(default_factory=list)
    person_ids: List[int] = field(default_factory=list)
    concept_ids: List[int] = field(default_factory=list)
    geocoding_ids: List[int] = field(default_factory=list)
    verify_ssl: bool = True


@dataclass
class CacheConfig:
    """Image cache settings."""
    enabled: bool = True
    directory: str = os.path.join(DEFAULT_DATA_DIR, "image-cache")
    max_size_mb: int = 500
    preload_count: int = 10
    preload_delay_ms: int = 500


@dataclass
class SlideshowConfig:
    """Batching and ordering of the slideshow."""
    interval_ms: int = 10000
    batch_size: int = 100
    show_all_images_before_restart: bool = False
    randomize_image_order: bool = True
    sort_images_by: str = "name"  # name, created, modified
    sort_images_descending: bool = False
    shown_tracker_path: str = os.path.join(DEFAULT_DATA_DIR, "filesShownTracker.txt")
    retry_delay_seconds: int = 600


@dataclass
class BackgroundDownloadConfig:
    """Background download of original files."""
    enabled: bool = False
    interval_ms: int = 60 * 60 * 1000
    initial_delay_seconds: float = 5.0


@dataclass
class MetadataConfig:
    """Metadata database and reverse geocoding."""
    database_path: str = os.path.join(DEFAULT_DATA_DIR, METADATA_DB_FILENAME)
    geocoding_enabled: bool = True
    geocoding_user_agent: str = "synphoto/1.0 (synology photo slideshow)"
    geocoding_min_interval_seconds: float = 5.0
    geocoding_timeout_seconds: int = 10


@dataclass
class LoggingConfig:
    """Log level and optional log directory."""
    level: str = "info"  # error, warn, info, debug
    directory: Optional[str] = None


@dataclass
class SynPhotoConfig:
    """Main configuration class."""
    synology: SynologyConfig = field(default_factory=SynologyConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    slideshow: SlideshowConfig = field(default_factory=SlideshowConfig)
    background_download: BackgroundDownloadConfig = field(default_factory=BackgroundDownloadConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Runtime state (not persisted)
    config_path: Optional[str] = None


def _dict_to_dataclass(data: Dict[str, Any], cls: type) -> Any:
    """Convert a dictionary to a dataclass instance, handling nested dataclasses."""
    if data is None:
        return cls()

    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs = {}

    for key, value in data.items():
        if key not in field_types:
            logger.debug(f"Ignoring unknown config key '{key}' for {cls.__name__}")
            continue

        field_type = field_types[key]

        # Handle nested dataclasses
        if hasattr(field_type, '__dataclass_fields__'):
            kwargs[key] = _dict_to_dataclass(value, field_type)
        else:
            kwargs[key] = value

    return cls(**kwargs)


def load_config(config_path: Optional[str] = None) -> SynPhotoConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to config file. If None, uses $SYNPHOTO_CONFIG or
            searches default locations.

    Returns:
        SynPhotoConfig instance with loaded or default values.
    """
    if config_path is None:
        config_path = os.environ.get("SYNPHOTO_CONFIG")

    # Find config file
    if config_path:
        paths_to_try = [config_path]
    else:
        paths_to_try = DEFAULT_CONFIG_PATHS

    config_data = {}
    found_path = None

    for path in paths_to_try:
        expanded_path = os.path.expanduser(path)
        if os.path.exists(expanded_path):
            try:
                with open(expanded_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
                found_path = expanded_path
                logger.info(f"Loaded config from {expanded_path}")
                break
            except Exception as e:
                logger.warning(f"Failed to load config from {expanded_path}: {e}")

    if not found_path:
        logger.info("No config file found, using defaults")

    config = SynPhotoConfig(
        synology=_dict_to_dataclass(config_data.get('synology'), SynologyConfig),
        cache=_dict_to_dataclass(config_data.get('cache'), CacheConfig),
        slideshow=_dict_to_dataclass(config_data.get('slideshow'), SlideshowConfig),
        background_download=_dict_to_dataclass(
            config_data.get('background_download'), BackgroundDownloadConfig
        ),
        metadata=_dict_to_dataclass(config_data.get('metadata'), MetadataConfig),
        logging=_dict_to_dataclass(config_data.get('logging'), LoggingConfig),
        config_path=found_path,
    )

    # Secrets may come from the environment instead of the file
    env_password = os.environ.get("SYNPHOTO_SYNOLOGY_PASSWORD")
    if env_password:
        config.synology.password = env_password

    # Expand paths
    config.cache.directory = os.path.expanduser(config.cache.directory)
    config.slideshow.shown_tracker_path = os.path.expanduser(config.slideshow.shown_tracker_path)
    config.metadata.database_path = os.path.expanduser(config.metadata.database_path)
    if config.logging.directory:
        config.logging.directory = os.path.expanduser(config.logging.directory)

    return config


def validate_config(config: SynPhotoConfig) -> List[str]:
    """
    Validate configuration and return list of errors.

    Returns:
        List of error messages. Empty if valid.
    """
    errors = []

    # Check Synology connection
    url = config.synology.url
    if not url:
        errors.append("No Synology URL configured.")
    elif not (url.startswith('http://') or url.startswith('https://')):
        errors.append("Synology URL must start with http:// or https://")

    if not config.synology.share_token and not (config.synology.account and config.synology.password):
        errors.append("Synology account and password are required unless a share_token is set.")

    # Check cache settings
    if config.cache.max_size_mb <= 0:
        errors.append("Cache max_size_mb must be positive")
    if config.cache.preload_count < 0:
        errors.append("Cache preload_count must not be negative")
    if config.cache.preload_delay_ms < 0:
        errors.append("Cache preload_delay_ms must not be negative")

    # Check slideshow settings
    if config.slideshow.sort_images_by not in SORT_OPTIONS:
        errors.append(f"sort_images_by must be one of: {SORT_OPTIONS}")
    if config.slideshow.batch_size < 1:
        errors.append("Slideshow batch_size must be at least 1")
    if config.slideshow.interval_ms < 1000:
        errors.append("Slideshow interval_ms should be at least 1000 ms")

    # Check background download
    if config.background_download.interval_ms < 60 * 1000:
        errors.append("Background download interval_ms should be at least one minute")

    # Nominatim usage policy
    if config.metadata.geocoding_min_interval_seconds < 5.0:
        errors.append("geocoding_min_interval_seconds must be at least 5 seconds")

    # The metadata database must live outside the cache directory
    cache_dir = Path(config.cache.directory).resolve()
    db_path = Path(config.metadata.database_path).resolve()
    if cache_dir in db_path.parents:
        errors.append("metadata database_path must not be inside the cache directory")

    if config.logging.level.lower() not in ['error', 'warn', 'warning', 'info', 'debug']:
        errors.append("Logging level must be one of: error, warn, info, debug")

    return errors
