# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Slideshow controller for SynPhoto.
Decides which photo to serve next, pages through the provider in batches,
preloads the next batch before the current one runs out, and hands each
photo with its metadata to the display callback.
"""

import os
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import SynPhotoConfig
from .image_cache import ImageCache, extension_for
from .image_list import ImageListManager, ShownTracker
from .logs import ComponentLogger, get_component_logger
from .metadata import PhotoMetadata
from .metadata_store import MetadataRecord, MetadataStore
from .provider import AuthenticationError, PhotoItem, PhotoProvider, dedupe_photos

# Start fetching the next batch when this many photos remain
LOW_WATER_MARK = 2

INITIAL_LOAD_DELAY_SECONDS = 0.2

# How long a batch switch waits for an in-flight batch preload
PRELOAD_WAIT_SECONDS = 60


@dataclass
class DisplayPayload:
    """Everything the display layer needs to show one photo."""
    path: str
    identity: str
    provider_id: Optional[int]
    space_id: Optional[int]
    data: Optional[bytes]
    cached_path: Optional[str]
    index: int                 # 1-based position in the current batch
    total: int                 # Size of the current batch
    metadata: Optional[MetadataRecord] = None
    exif: Optional[PhotoMetadata] = None   # Camera details from the latest extraction


DisplayCallback = Callable[[DisplayPayload], None]


class SlideshowController:
    """
    Serves photos on a timer.

    One display timer drives get_next_image(). Batch preloads, cache
    preloads, metadata enrichment and the deferred retry all run on their
    own daemon threads and never block the timer.
    """

    def __init__(
        self,
        config: SynPhotoConfig,
        provider: PhotoProvider,
        display_callback: DisplayCallback,
        list_manager: Optional[ImageListManager] = None,
        cache: Optional[ImageCache] = None,
        metadata_store: Optional[MetadataStore] = None,
        logger: Optional[ComponentLogger] = None
    ):
        """
        Initialize the controller.

        Args:
            config: Full configuration.
            provider: Photo provider client.
            display_callback: Receives a DisplayPayload for every served photo.
            list_manager: Batch manager; built from config when omitted.
            cache: Image cache; built and initialized from config when omitted
                and caching is enabled.
            metadata_store: Metadata store; enrichment is skipped when None.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.config = config
        self.provider = provider
        self.display_callback = display_callback
        self.metadata_store = metadata_store
        self._logger = logger or get_component_logger(__name__, "SlideshowController")

        self.list_manager = list_manager or ImageListManager(
            ShownTracker(config.slideshow.shown_tracker_path)
        )

        if cache is None and config.cache.enabled:
            cache = ImageCache(config.cache)
            if not cache.initialize():
                cache = None
        self.cache = cache

        # Serializes serving; the timer thread and callers may race
        self._serve_lock = threading.RLock()
        self._timer_lock = threading.Lock()
        self._preload_lock = threading.Lock()  # One batch preload at a time

        self._timer: Optional[threading.Timer] = None
        self._retry_timer: Optional[threading.Timer] = None
        self._is_retrying = False
        self._running = False
        self._paused = False

        self._preload_thread: Optional[threading.Thread] = None
        self._enrichment_thread: Optional[threading.Thread] = None

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Load the first batch shortly after start and begin the slideshow."""
        self._running = True
        self._paused = False
        self._logger.info("Starting slideshow")
        with self._timer_lock:
            self._timer = threading.Timer(INITIAL_LOAD_DELAY_SECONDS, self._initial_load)
            self._timer.daemon = True
            self._timer.start()

    def _initial_load(self) -> None:
        try:
            with self._serve_lock:
                self.gather_image_list(0, check_for_new_first=True)
                self.get_next_image()
        except Exception as e:
            self._logger.error(f"Error loading initial image list: {e}")

    def stop(self) -> None:
        """Stop all timers and ask background preloads to finish."""
        self._running = False
        self._cancel_timer()
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        self._is_retrying = False
        if self.cache is not None:
            self.cache.cancel_preload()
        self._logger.info("Slideshow stopped")

    def pause(self) -> None:
        self._paused = True
        self._cancel_timer()
        self._logger.info("Slideshow paused")

    def play(self) -> None:
        self._paused = False
        self._logger.info("Slideshow resumed")
        self._restart_timer()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    # -- Timers --------------------------------------------------------------

    def _cancel_timer(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _restart_timer(self) -> None:
        """Arm the single display timer for the next photo."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._running or self._paused:
                return
            interval = self.config.slideshow.interval_ms / 1000.0
            self._timer = threading.Timer(interval, self._on_timer)
            self._timer.daemon = True
            self._timer.start()
        self._logger.debug(f"Next image in {interval:.1f}s")

    def _on_timer(self) -> None:
        try:
            self.get_next_image()
        except Exception as e:
            self._logger.error(f"Error showing next image: {e}")

    def _schedule_retry(self) -> None:
        """Schedule one deferred reload. Further calls are ignored until it fires."""
        if self._is_retrying:
            return
        delay = self.config.slideshow.retry_delay_seconds
        self._logger.warning(f"No images available, retrying in {delay // 60} minutes")
        self._is_retrying = True
        self._retry_timer = threading.Timer(delay, self._retry)
        self._retry_timer.daemon = True
        self._retry_timer.start()

    def _retry(self) -> None:
        self._is_retrying = False
        self._retry_timer = None
        try:
            self.get_next_image()
        except Exception as e:
            self._logger.error(f"Error retrying image load: {e}")

    # -- Fetching ------------------------------------------------------------

    def _fetch(self, offset: int, limit: int) -> List[PhotoItem]:
        """
        List one page from the provider.

        Raises:
            AuthenticationError: Propagated so the caller can abort its fetch.
        """
        try:
            photos = self.provider.list_photos(offset, limit)
        except AuthenticationError:
            raise
        except Exception as e:
            self._logger.error(f"Error fetching photos at offset {offset}: {e}")
            return []
        return dedupe_photos(photos or [])

    def _check_cache_size(self) -> None:
        if self.cache is None or not self.config.cache.enabled:
            return
        current_size = self.cache.get_current_cache_size_mb()
        max_size = self.config.cache.max_size_mb
        if current_size >= max_size:
            self._logger.info(f"Cache size ({current_size}MB) reached max ({max_size}MB), evicting old files...")
            self.cache.evict_old_files()

    def _preload_cache(self, photos: List[PhotoItem]) -> None:
        if self.cache is not None and photos:
            self.cache.preload_images(photos, self._download)

    def gather_image_list(self, offset: int = 0, check_for_new_first: bool = False) -> Optional[List[PhotoItem]]:
        """
        Fetch a page and make it the current batch.

        Args:
            offset: Provider offset to fetch.
            check_for_new_first: Fetch offset 0 instead, to pick up new photos.

        Returns:
            The prepared batch, or None if authentication failed (the
            current batch is left untouched).
        """
        actual_offset = 0 if check_for_new_first else offset
        self._logger.info(
            f"Gathering image list... (offset: {offset}, check_for_new_first: {check_for_new_first})"
        )

        self._check_cache_size()

        try:
            photos = self._fetch(actual_offset, self.config.slideshow.batch_size)
        except AuthenticationError as e:
            self._logger.warning(f"Authentication failed while gathering images: {e}")
            return None

        prepared = self.list_manager.prepare(photos, self.config.slideshow, offset=actual_offset)
        self._preload_cache(prepared)
        return prepared

    def _unseen_new_photos(self) -> List[PhotoItem]:
        """Photos at offset 0 that were never shown and are not in the current batch."""
        new_photos = self._fetch(0, self.config.slideshow.batch_size)
        if not new_photos:
            return []
        shown = self.list_manager.read_shown()
        current = self.list_manager.identities()
        return [p for p in new_photos if p.identity not in shown and p.identity not in current]

    def _maybe_preload_next_batch(self) -> None:
        if self.list_manager.remaining() > LOW_WATER_MARK or self.list_manager.has_preloaded():
            return
        if not self._preload_lock.acquire(blocking=False):
            return

        self._logger.info(
            f"Only {self.list_manager.remaining()} images remaining, preloading next batch in background..."
        )
        self._preload_thread = threading.Thread(target=self._preload_next_batch, daemon=True, name="batch-preload")
        try:
            self._preload_thread.start()
        except RuntimeError:
            self._preload_lock.release()
            raise

    def _preload_next_batch(self) -> None:
        slideshow = self.config.slideshow
        try:
            if slideshow.show_all_images_before_restart:
                unseen = self._unseen_new_photos()
                if unseen:
                    self._logger.info(f"Preloading {len(unseen)} new unseen photos in background")
                    prepared = self.list_manager.prepare(unseen, slideshow, is_preload=True, offset=0)
                    self._preload_cache(prepared)
                    return

            next_offset = self.list_manager.current_batch_offset + slideshow.batch_size
            self._logger.info(f"Preloading next batch with offset {next_offset} in background")
            photos = self._fetch(next_offset, slideshow.batch_size)
            if photos:
                prepared = self.list_manager.prepare(photos, slideshow, is_preload=True, offset=next_offset)
                self._preload_cache(prepared)
            else:
                self._logger.info("No more photos upstream, will restart when current batch ends")
        except AuthenticationError as e:
            self._logger.warning(f"Authentication failed while preloading next batch: {e}")
        except Exception as e:
            self._logger.error(f"Error preloading next batch: {e}")
        finally:
            self._preload_lock.release()

    def _load_next_batch_now(self) -> bool:
        """
        Load the next batch synchronously when no preloaded batch exists.

        Returns:
            False if authentication failed.
        """
        preload_thread = self._preload_thread
        if preload_thread is not None and preload_thread.is_alive():
            self._logger.info("Waiting for in-flight batch preload...")
            preload_thread.join(PRELOAD_WAIT_SECONDS)
            if self.list_manager.switch_to_preloaded():
                self._logger.info("Switched to preloaded next batch")
                return True

        slideshow = self.config.slideshow
        self._logger.info("Next batch not yet preloaded, loading now...")

        try:
            if slideshow.show_all_images_before_restart:
                unseen = self._unseen_new_photos()
                if unseen:
                    self._logger.info(f"Found {len(unseen)} new unseen photos, loading them first")
                    return self.gather_image_list(0, check_for_new_first=True) is not None

            next_offset = self.list_manager.current_batch_offset + slideshow.batch_size
            photos = self._fetch(next_offset, slideshow.batch_size)
        except AuthenticationError as e:
            self._logger.warning(f"Authentication failed while loading next batch: {e}")
            return False

        if photos:
            self._logger.info(f"Loading next batch with offset {next_offset}")
            self._check_cache_size()
            prepared = self.list_manager.prepare(photos, slideshow, offset=next_offset)
            self._preload_cache(prepared)
            return True

        self._logger.info("All photos have been shown, resetting tracker and starting from beginning")
        self.list_manager.reset_shown()
        return self.gather_image_list(0, check_for_new_first=True) is not None

    # -- Serving -------------------------------------------------------------

    def get_next_image(self) -> Optional[DisplayPayload]:
        """
        Serve the next photo.

        Returns:
            The payload sent to the display callback, or None when nothing
            could be served (a deferred retry is then scheduled).
        """
        with self._serve_lock:
            self._logger.debug("Getting next image...")

            if self.list_manager.is_empty():
                self._logger.debug("Image list empty, loading images...")
                self.gather_image_list(0, check_for_new_first=True)
                if self.list_manager.is_empty():
                    self._schedule_retry()
                    return None

            self._maybe_preload_next_batch()

            if self.list_manager.is_exhausted():
                self._logger.info("All images in current batch have been shown, switching to next batch...")
                if self.list_manager.switch_to_preloaded():
                    self._logger.info("Switched to preloaded next batch")
                elif not self._load_next_batch_now() or self.list_manager.is_exhausted():
                    self._logger.warning("No images available after loading next batch")
                    self._schedule_retry()
                    return None

            photo = self.list_manager.next()
            if photo is None:
                self._logger.error("Failed to get next image")
                return None

            return self._serve(photo)

    def get_previous_image(self) -> Optional[DisplayPayload]:
        """Serve the photo before the one currently displayed."""
        with self._serve_lock:
            photo = self.list_manager.previous()
            if photo is None:
                return None
            return self._serve(photo)

    def _serve(self, photo: PhotoItem) -> DisplayPayload:
        data, cached_path = self._load_photo(photo)

        metadata = None
        exif = None
        if self.metadata_store is not None and photo.provider_id is not None:
            metadata = self.metadata_store.get_metadata(photo.provider_id, photo.space_id)
            exif = self.metadata_store.get_exif(photo.provider_id, photo.space_id)

        payload = DisplayPayload(
            path=photo.path,
            identity=photo.identity,
            provider_id=photo.provider_id,
            space_id=photo.space_id,
            data=data,
            cached_path=cached_path,
            index=self.list_manager.index,
            total=len(self.list_manager.items()),
            metadata=metadata,
            exif=exif,
        )

        if metadata is not None:
            self._logger.debug(
                f'Image metadata for "{photo.path}": date={metadata.capture_date} '
                f'location={metadata.location} address={metadata.short_address}'
            )
        else:
            self._logger.debug(f'No metadata available for "{photo.path}"')
        if exif is not None and exif.camera:
            self._logger.debug(f'Camera for "{photo.path}": {exif.camera}')

        try:
            self.display_callback(payload)
        except Exception as e:
            self._logger.error(f'Display callback failed for "{photo.path}": {e}')

        self._start_enrichment(photo, cached_path)
        self._restart_timer()

        if self.config.slideshow.show_all_images_before_restart:
            self.list_manager.mark_shown(photo)

        return payload

    def _download(self, photo: PhotoItem) -> Optional[bytes]:
        if not photo.url:
            return None
        try:
            return self.provider.download_bytes(photo.url)
        except Exception as e:
            self._logger.error(f'Error downloading "{photo.path}": {e}')
            return None

    def _load_photo(self, photo: PhotoItem) -> Tuple[Optional[bytes], Optional[str]]:
        """Return (bytes, cached path) for a photo, from cache when possible."""
        identifier = photo.url or photo.path

        if self.cache is not None:
            cached_path = self.cache.get(identifier, photo.provider_id, photo.space_id)
            if cached_path:
                try:
                    with open(cached_path, 'rb') as f:
                        self._logger.debug("Serving image from cache")
                        return f.read(), cached_path
                except OSError as e:
                    self._logger.warning(f"Failed to read cached file {cached_path}: {e}")

        if photo.url:
            data = self._download(photo)
            if not data:
                self._logger.error(f'Failed to download "{photo.path}"')
                return None, None
            cached_path = None
            if self.cache is not None:
                cached_path = self.cache.set(
                    identifier, data, extension_for(identifier), photo.provider_id, photo.space_id
                )
            return data, cached_path

        if os.path.exists(photo.path):
            try:
                with open(photo.path, 'rb') as f:
                    return f.read(), photo.path
            except OSError as e:
                self._logger.error(f'Error reading "{photo.path}": {e}')

        return None, None

    # -- Enrichment ----------------------------------------------------------

    def _start_enrichment(self, photo: PhotoItem, cached_path: Optional[str]) -> None:
        if self.metadata_store is None or photo.provider_id is None:
            return
        self._enrichment_thread = threading.Thread(
            target=self._enrich, args=(photo, cached_path), daemon=True, name="metadata-enrichment"
        )
        self._enrichment_thread.start()

    def _enrich(self, photo: PhotoItem, cached_path: Optional[str]) -> None:
        store = self.metadata_store
        try:
            if store.get_exif(photo.provider_id, photo.space_id) is None:
                # Originals carry richer EXIF than thumbnails
                path = cached_path
                if self.cache is not None:
                    original_key = f"original_{photo.provider_id}_{photo.space_id or 0}"
                    path = self.cache.get(original_key, photo.provider_id, photo.space_id) or cached_path
                store.extract_and_save(photo.provider_id, photo.space_id, path)

            # Records loaded from disk may still lack an address
            store.request_geocoding(photo.provider_id, photo.space_id)
        except Exception as e:
            self._logger.warning(f'Metadata enrichment failed for "{photo.path}": {e}')
