# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Tests for the background original downloader.
"""

import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeProvider
from synphoto.background_downloader import BackgroundDownloader
from synphoto.image_cache import ImageCache
from synphoto.provider import PhotoItem


@pytest.fixture
def config(sample_config):
    sample_config.background_download.enabled = True
    return sample_config


@pytest.fixture
def cache(config):
    cache = ImageCache(config.cache)
    cache.initialize()
    return cache


@pytest.fixture
def store():
    return MagicMock()


class TestSweep:
    """Tests for check_and_download_new_images."""

    def test_downloads_every_original(self, config, cache, store, fake_provider, sample_photos):
        downloader = BackgroundDownloader(config, fake_provider, cache, store)

        assert downloader.check_and_download_new_images() == 5

        assert fake_provider.list_offsets == [0, 2, 4]
        assert [pid for pid, _ in fake_provider.original_calls] == [1, 2, 3, 4, 5]
        path = cache.get("original_1_0", 1, 0)
        assert os.path.basename(path) == "original_1_0.jpg"
        store.extract_and_save.assert_any_call(1, 0, path)
        assert store.extract_and_save.call_count == 5

    def test_full_last_page_ends_on_empty_page(self, config, cache, store, sample_photos):
        provider = FakeProvider(sample_photos[:4])
        downloader = BackgroundDownloader(config, provider, cache, store)

        downloader.check_and_download_new_images()

        assert provider.list_offsets == [0, 2, 4]

    def test_cached_originals_are_skipped(self, config, cache, store, fake_provider):
        downloader = BackgroundDownloader(config, fake_provider, cache, store)
        downloader.check_and_download_new_images()
        fake_provider.original_calls.clear()

        assert downloader.check_and_download_new_images() == 0
        assert fake_provider.original_calls == []

    def test_items_without_provider_id_are_skipped(self, config, cache, store):
        provider = FakeProvider([PhotoItem(path="local.jpg")])
        downloader = BackgroundDownloader(config, provider, cache, store)

        assert downloader.check_and_download_new_images() == 0
        assert provider.original_calls == []

    def test_heic_original_keeps_extension(self, config, cache, store):
        provider = FakeProvider([PhotoItem(path="IMG_0001.HEIC", provider_id=9, space_id=1,
                                           file_path="/photo/IMG_0001.HEIC")])
        downloader = BackgroundDownloader(config, provider, cache, store)

        downloader.check_and_download_new_images()

        assert cache.get("original_9_1", 9, 1).endswith("original_9_1.heic")

    def test_per_item_failures_are_skipped(self, config, cache, store, fake_provider):
        original = fake_provider.download_original

        def flaky(provider_id, space_id=None, file_path=None, person_id=None):
            if provider_id == 2:
                raise RuntimeError("connection reset")
            if provider_id == 3:
                return None
            return original(provider_id, space_id, file_path, person_id)

        fake_provider.download_original = flaky
        downloader = BackgroundDownloader(config, fake_provider, cache, store)

        assert downloader.check_and_download_new_images() == 3
        assert cache.get("original_2_0", 2, 0) is None
        assert cache.get("original_4_0", 4, 0) is not None

    def test_cache_disabled(self, config, cache, store, fake_provider):
        config.cache.enabled = False
        downloader = BackgroundDownloader(config, fake_provider, cache, store)

        assert downloader.check_and_download_new_images() == 0
        assert fake_provider.list_calls == []

    def test_no_cache(self, config, store, fake_provider):
        downloader = BackgroundDownloader(config, fake_provider, None, store)
        assert downloader.check_and_download_new_images() == 0

    def test_overlapping_sweep_is_dropped(self, config, cache, store, fake_provider):
        downloader = BackgroundDownloader(config, fake_provider, cache, store)
        downloader._sweep_lock.acquire()
        try:
            assert downloader.is_downloading
            assert downloader.check_and_download_new_images() == 0
        finally:
            downloader._sweep_lock.release()
        assert fake_provider.list_calls == []

    def test_works_without_metadata_store(self, config, cache, fake_provider):
        downloader = BackgroundDownloader(config, fake_provider, cache)
        assert downloader.check_and_download_new_images() == 5

    def test_stats(self, config, cache, store, fake_provider):
        downloader = BackgroundDownloader(config, fake_provider, cache, store)
        downloader.check_and_download_new_images()

        assert downloader.get_stats() == {
            "enabled": True,
            "interval_ms": 3600000,
            "downloaded_count": 5,
            "is_downloading": False,
        }


class TestLifecycle:
    """Tests for start/stop."""

    def test_disabled_does_not_start(self, config, cache, fake_provider):
        config.background_download.enabled = False
        downloader = BackgroundDownloader(config, fake_provider, cache)

        assert not downloader.start()

    def test_first_sweep_after_initial_delay(self, config, cache, fake_provider):
        swept = threading.Event()
        downloader = BackgroundDownloader(config, fake_provider, cache)

        with patch.object(downloader, "check_and_download_new_images", side_effect=lambda: swept.set()) as sweep:
            assert downloader.start()
            assert not downloader.start()
            assert swept.wait(timeout=5)
            downloader.stop(timeout=5)

        sweep.assert_called_once()
