# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Tests for configuration loading and validation.
"""

import pytest
import yaml


class TestConfigLoading:
    """Test loading YAML into dataclasses."""

    def test_values_are_loaded(self, sample_config_yaml, temp_dir):
        from synphoto.config import load_config

        config = load_config(str(sample_config_yaml))

        assert config.synology.url == "https://nas.local:5001"
        assert config.synology.verify_ssl is False
        assert config.cache.max_size_mb == 100
        assert config.slideshow.batch_size == 2
        assert config.slideshow.randomize_image_order is False
        assert config.metadata.database_path == str(temp_dir / "photo_metadata.json")
        assert config.config_path == str(sample_config_yaml)

    def test_missing_sections_use_defaults(self, temp_dir):
        from synphoto.config import load_config

        config_path = temp_dir / "config.yaml"
        config_path.write_text("synology:\n  url: https://nas.local\n")

        config = load_config(str(config_path))

        assert config.cache.max_size_mb == 500
        assert config.cache.preload_count == 10
        assert config.cache.preload_delay_ms == 500
        assert config.slideshow.interval_ms == 10000
        assert config.slideshow.sort_images_by == "name"
        assert config.background_download.enabled is False
        assert config.background_download.interval_ms == 3600000

    def test_unknown_keys_are_ignored(self, temp_dir):
        from synphoto.config import load_config

        config_path = temp_dir / "config.yaml"
        config_path.write_text("cache:\n  max_size_mb: 50\n  color: blue\n")

        config = load_config(str(config_path))

        assert config.cache.max_size_mb == 50

    def test_no_file_uses_defaults(self, temp_dir):
        from synphoto.config import load_config

        config = load_config(str(temp_dir / "missing.yaml"))

        assert config.config_path is None
        assert config.cache.enabled is True

    def test_env_overrides(self, sample_config_yaml, monkeypatch):
        from synphoto.config import load_config

        monkeypatch.setenv("SYNPHOTO_CONFIG", str(sample_config_yaml))
        monkeypatch.setenv("SYNPHOTO_SYNOLOGY_PASSWORD", "from-env")

        config = load_config()

        assert config.config_path == str(sample_config_yaml)
        assert config.synology.password == "from-env"


class TestConfigValidation:
    """Test config validation logic."""

    def _errors(self, temp_dir, data):
        from synphoto.config import load_config, validate_config

        config_path = temp_dir / "config.yaml"
        with open(config_path, 'w') as f:
            yaml.dump(data, f)
        return validate_config(load_config(str(config_path)))

    def test_valid_config_passes(self, sample_config_yaml):
        """Valid config should load without errors."""
        from synphoto.config import load_config, validate_config

        errors = validate_config(load_config(str(sample_config_yaml)))

        assert len(errors) == 0, f"Unexpected errors: {errors}"

    def test_missing_url(self, temp_dir, sample_config_dict):
        sample_config_dict["synology"]["url"] = ""
        assert any("URL" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_bad_url_scheme(self, temp_dir, sample_config_dict):
        sample_config_dict["synology"]["url"] = "nas.local"
        assert any("http" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_share_token_replaces_credentials(self, temp_dir, sample_config_dict):
        sample_config_dict["synology"].update({"account": "", "password": "", "share_token": "abc"})
        assert self._errors(temp_dir, sample_config_dict) == []

    def test_missing_credentials(self, temp_dir, sample_config_dict):
        sample_config_dict["synology"]["password"] = ""
        assert any("password" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_invalid_sort_option(self, temp_dir, sample_config_dict):
        sample_config_dict["slideshow"]["sort_images_by"] = "size"
        assert any("sort_images_by" in e for e in self._errors(temp_dir, sample_config_dict))

    @pytest.mark.parametrize("sort_by", ["name", "created", "modified"])
    def test_valid_sort_options(self, temp_dir, sample_config_dict, sort_by):
        sample_config_dict["slideshow"]["sort_images_by"] = sort_by
        assert not [e for e in self._errors(temp_dir, sample_config_dict) if "sort_images_by" in e]

    def test_non_positive_cache_size(self, temp_dir, sample_config_dict):
        sample_config_dict["cache"]["max_size_mb"] = 0
        assert any("max_size_mb" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_database_inside_cache_dir(self, temp_dir, sample_config_dict):
        sample_config_dict["metadata"]["database_path"] = str(temp_dir / "cache" / "photo_metadata.json")
        assert any("database_path" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_geocoding_interval_floor(self, temp_dir, sample_config_dict):
        sample_config_dict["metadata"]["geocoding_min_interval_seconds"] = 0.5
        assert any("geocoding" in e for e in self._errors(temp_dir, sample_config_dict))

    def test_invalid_log_level(self, temp_dir, sample_config_dict):
        sample_config_dict["logging"]["level"] = "verbose"
        assert any("Logging level" in e for e in self._errors(temp_dir, sample_config_dict))
