# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Pytest configuration and shared fixtures for SynPhoto tests.
"""

import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from synphoto.provider import PhotoItem, PhotoProvider


class FakeProvider(PhotoProvider):
    """In-memory provider that records every call."""

    def __init__(self, photos: Optional[List[PhotoItem]] = None):
        self.photos = list(photos or [])
        self.list_calls: List[tuple] = []
        self.download_calls: List[str] = []
        self.original_calls: List[tuple] = []
        self.exif: Dict[int, dict] = {}
        self.list_error: Optional[Exception] = None
        self.logged_out = False

    def authenticate(self) -> bool:
        return True

    def logout(self) -> None:
        self.logged_out = True

    def list_photos(self, offset: int = 0, limit: int = 100) -> List[PhotoItem]:
        self.list_calls.append((offset, limit))
        if self.list_error is not None:
            raise self.list_error
        return self.photos[offset:offset + limit]

    def download_bytes(self, url: str) -> Optional[bytes]:
        self.download_calls.append(url)
        return f"image-bytes:{url}".encode()

    def download_original(self, provider_id, space_id=None, file_path=None, person_id=None):
        self.original_calls.append((provider_id, space_id))
        return b"\xff\xd8original-" + str(provider_id).encode()

    def get_exif_metadata(self, provider_id, space_id=None):
        return self.exif.get(provider_id)

    @property
    def list_offsets(self) -> List[int]:
        return [offset for offset, _ in self.list_calls]


def make_photo(index: int, name: Optional[str] = None, space_id: Optional[int] = 0, **kwargs) -> PhotoItem:
    """Build a provider photo with a predictable name and URL."""
    name = name or f"photo_{index:03d}.jpg"
    return PhotoItem(
        path=name,
        url=kwargs.pop("url", f"https://nas.local/webapi/entry.cgi?id={index}&size=xl"),
        created=kwargs.pop("created", index * 1000),
        modified=kwargs.pop("modified", index * 1000),
        provider_id=index,
        space_id=space_id,
        file_path=kwargs.pop("file_path", f"/photo/{name}"),
        **kwargs
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_photos():
    """Five provider photos, already in name order."""
    return [make_photo(i) for i in range(1, 6)]


@pytest.fixture
def fake_provider(sample_photos):
    return FakeProvider(sample_photos)


@pytest.fixture
def sample_config_dict(temp_dir):
    """Return a minimal valid config dictionary."""
    return {
        "synology": {
            "url": "https://nas.local:5001",
            "account": "frame",
            "password": "secret",
            "album_name": "Living Room",
            "verify_ssl": False
        },
        "cache": {
            "enabled": True,
            "directory": str(temp_dir / "cache"),
            "max_size_mb": 100,
            "preload_count": 5,
            "preload_delay_ms": 0
        },
        "slideshow": {
            "interval_ms": 10000,
            "batch_size": 2,
            "show_all_images_before_restart": False,
            "randomize_image_order": False,
            "sort_images_by": "name",
            "sort_images_descending": False,
            "shown_tracker_path": str(temp_dir / "shown.txt"),
            "retry_delay_seconds": 600
        },
        "background_download": {
            "enabled": False,
            "interval_ms": 3600000,
            "initial_delay_seconds": 0
        },
        "metadata": {
            "database_path": str(temp_dir / "photo_metadata.json"),
            "geocoding_enabled": False
        },
        "logging": {
            "level": "debug"
        }
    }


@pytest.fixture
def sample_config_yaml(temp_dir, sample_config_dict):
    """Create a temporary config.yaml file."""
    import yaml
    config_path = temp_dir / "config.yaml"
    with open(config_path, 'w') as f:
        yaml.dump(sample_config_dict, f)
    return config_path


@pytest.fixture
def sample_config(sample_config_yaml):
    """Loaded SynPhotoConfig for the sample YAML."""
    from synphoto.config import load_config
    return load_config(str(sample_config_yaml))
