# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Background original-file downloader for SynPhoto.
Periodically walks the whole photo collection and stores full-resolution
originals in the cache so their EXIF data can be extracted.
"""

import threading
from typing import Any, Dict, Optional, Set

from .config import SynPhotoConfig
from .image_cache import ImageCache, extension_for
from .logs import ComponentLogger, get_component_logger
from .metadata_store import MetadataStore
from .provider import PhotoItem, PhotoProvider, dedupe_photos


class BackgroundDownloader:
    """
    Downloads every photo's original on a fixed interval.

    Sweeps never overlap; a sweep requested while one is running is
    dropped.
    """

    def __init__(
        self,
        config: SynPhotoConfig,
        provider: PhotoProvider,
        cache: Optional[ImageCache],
        metadata_store: Optional[MetadataStore] = None,
        logger: Optional[ComponentLogger] = None
    ):
        self.config = config
        self.provider = provider
        self.cache = cache
        self.metadata_store = metadata_store
        self._logger = logger or get_component_logger(__name__, "BackgroundDownloader")

        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._downloaded_ids: Set[str] = set()

    @property
    def enabled(self) -> bool:
        return self.config.background_download.enabled

    @property
    def is_downloading(self) -> bool:
        return self._sweep_lock.locked()

    def start(self) -> bool:
        """
        Start the periodic sweep thread.

        Returns:
            False if background downloading is disabled or already running.
        """
        if not self.enabled:
            self._logger.info("Background download disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="background-download")
        self._thread.start()

        interval_minutes = self.config.background_download.interval_ms / 60000
        self._logger.info(f"Background download started (interval: {interval_minutes:g} minutes)")
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._logger.info("Background download stopped")

    def _run(self) -> None:
        settings = self.config.background_download
        if self._stop_event.wait(settings.initial_delay_seconds):
            return

        while not self._stop_event.is_set():
            try:
                self.check_and_download_new_images()
            except Exception as e:
                self._logger.error(f"Background download error: {e}")

            if self._stop_event.wait(settings.interval_ms / 1000.0):
                break

    def _list_all_photos(self) -> list:
        """List the whole collection page by page."""
        batch_size = self.config.slideshow.batch_size
        photos = []
        offset = 0
        while not self._stop_event.is_set():
            page = self.provider.list_photos(offset, batch_size)
            if not page:
                break
            photos.extend(page)
            if len(page) < batch_size:
                break
            offset += batch_size
        return dedupe_photos(photos)

    def check_and_download_new_images(self) -> int:
        """
        Download originals that are not cached yet.

        Returns:
            Number of originals downloaded in this sweep.
        """
        if self.cache is None or not self.config.cache.enabled:
            self._logger.debug("Image cache disabled, skipping background download")
            return 0

        if not self._sweep_lock.acquire(blocking=False):
            self._logger.debug("Background download already in progress, skipping")
            return 0

        downloaded = 0
        try:
            self._logger.info("Checking for new images to download...")
            photos = self._list_all_photos()
            self._logger.info(f"Found {len(photos)} photos in collection")

            delay = self.config.cache.preload_delay_ms / 1000.0
            for photo in photos:
                if self._stop_event.is_set():
                    break
                if photo.provider_id is None:
                    continue
                if self.cache.get(self._original_key(photo), photo.provider_id, photo.space_id):
                    continue

                if self._download_original(photo):
                    downloaded += 1
                    if self._stop_event.wait(delay):
                        break

            self._logger.info(f"Background download complete: {downloaded} new originals")
        except Exception as e:
            self._logger.error(f"Error checking for new images: {e}")
        finally:
            self._sweep_lock.release()

        return downloaded

    @staticmethod
    def _original_key(photo: PhotoItem) -> str:
        return f"original_{photo.provider_id}_{photo.space_id or 0}"

    def _download_original(self, photo: PhotoItem) -> bool:
        try:
            data = self.provider.download_original(
                photo.provider_id,
                photo.space_id,
                file_path=photo.file_path,
                person_id=photo.person_id,
            )
            if not data:
                self._logger.warning(f'No data returned for original of "{photo.path}"')
                return False

            extension = extension_for((photo.file_path or photo.path).lower())
            cached_path = self.cache.set(
                self._original_key(photo), data, extension, photo.provider_id, photo.space_id
            )
            if not cached_path:
                return False

            self._downloaded_ids.add(photo.identity)
            self._logger.debug(f'Downloaded original of "{photo.path}"')

            if self.metadata_store is not None:
                self.metadata_store.extract_and_save(photo.provider_id, photo.space_id, cached_path)
            return True
        except Exception as e:
            self._logger.warning(f'Failed to download original of "{photo.path}": {e}')
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "interval_ms": self.config.background_download.interval_ms,
            "downloaded_count": len(self._downloaded_ids),
            "is_downloading": self.is_downloading,
        }
