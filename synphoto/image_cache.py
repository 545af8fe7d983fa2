# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Image cache for SynPhoto.
Stores downloaded photos on disk under a size limit and preloads upcoming
photos in the background.
"""

import base64
import concurrent.futures
import hashlib
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .config import CacheConfig, METADATA_DB_FILENAME
from .logs import ComponentLogger, get_component_logger
from .provider import PhotoItem

# Extensions probed when looking a key up on disk
CACHE_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.heic', '.webp']

# In-memory index bounds
MAX_INDEX_ENTRIES = 1000
INDEX_EVICTION_BATCH = 100

# Eviction stops once the cache is back under this fraction of the max
EVICTION_TARGET_RATIO = 0.9

PRELOAD_TIMEOUT_SECONDS = 30

ORIGINAL_DOWNLOAD_APIS = ('SYNO.Foto.Download', 'SYNO.FotoTeam.Download')


@dataclass
class CacheEntry:
    """An indexed file in the cache directory."""
    key: str
    extension: str
    size: int
    mtime: float

    @property
    def filename(self) -> str:
        return f"{self.key}{self.extension}"


def extension_for(identifier: str) -> str:
    """Guess a cache file extension from a URL or path."""
    lowered = identifier.lower()
    if '.heic' in lowered:
        return '.heic'
    if '.png' in lowered:
        return '.png'
    if '.webp' in lowered:
        return '.webp'
    return '.jpg'


# The metadata database and its atomic-write siblings
PROTECTED_SUFFIXES = (
    METADATA_DB_FILENAME,
    METADATA_DB_FILENAME + '.backup',
    METADATA_DB_FILENAME + '.tmp',
)


def _is_protected(filename: str) -> bool:
    return filename.endswith(PROTECTED_SUFFIXES)


class ImageCache:
    """
    Size-bounded on-disk photo cache.

    Files live in a single directory as ``{key}{extension}``. An in-memory
    index and a running byte total are kept alongside; both are guarded by
    a lock because preload sweeps, eviction and the slideshow all touch
    them from different threads.
    """

    def __init__(self, config: CacheConfig, logger: Optional[ComponentLogger] = None):
        """
        Initialize the cache. Call initialize() before use.

        Args:
            config: Cache configuration.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.config = config
        self.cache_dir = config.directory
        self.max_size_bytes = int(config.max_size_mb * 1024 * 1024)
        self.preload_delay = config.preload_delay_ms / 1000.0
        self._logger = logger or get_component_logger(__name__, "ImageCache")

        # Thread safety
        self._lock = threading.RLock()
        self._eviction_lock = threading.Lock()
        self._preload_lock = threading.Lock()  # One preload sweep at a time
        self._preload_cancel = threading.Event()

        self._index: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._current_size = 0
        self._initialized = False

        self._eviction_thread: Optional[threading.Thread] = None
        self._eviction_requested = False
        self._preload_thread: Optional[threading.Thread] = None

    def initialize(self) -> bool:
        """
        Create the cache directory and measure its current size.

        Returns:
            True if the cache is usable.
        """
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
        except OSError as e:
            self._logger.error(f"Failed to initialize image cache: {e}")
            return False

        self._current_size = self._calculate_cache_size()
        self._initialized = True
        self._logger.info(
            f"Image cache initialized at {self.cache_dir} with max size {self.config.max_size_mb}MB"
        )
        return True

    def _calculate_cache_size(self) -> int:
        """Sum the size of every file in the cache directory."""
        total = 0
        try:
            with os.scandir(self.cache_dir) as entries:
                for entry in entries:
                    try:
                        if entry.is_file():
                            total += entry.stat().st_size
                    except OSError:
                        continue  # Deleted while scanning
        except FileNotFoundError:
            return 0
        except OSError as e:
            self._logger.error(f"Error calculating cache size: {e}")
            return 0

        self._logger.debug(f"Current cache size: {total / 1024 / 1024:.2f}MB")
        return total

    def get_current_cache_size_mb(self) -> int:
        """Re-measure the cache directory and return its size in whole MB."""
        size = self._calculate_cache_size()
        with self._lock:
            self._current_size = size
        return round(size / 1024 / 1024)

    @property
    def current_size(self) -> int:
        """Running byte total of cached files."""
        with self._lock:
            return self._current_size

    def key(self, identifier: str, provider_id: Optional[int] = None, space_id: Optional[int] = None) -> str:
        """
        Compute the cache key for a photo.

        Args:
            identifier: URL, path, or an existing original_/thumbnail_ key.
            provider_id: Provider unit id, when known.
            space_id: Provider space id (None is treated as 0).

        Returns:
            ``original_{id}_{space}`` for original downloads,
            ``thumbnail_{id}_{space}`` for other provider photos, or the md5
            hex digest of the identifier.
        """
        if identifier.startswith('original_') or identifier.startswith('thumbnail_'):
            return identifier

        if provider_id is not None:
            if any(api in identifier for api in ORIGINAL_DOWNLOAD_APIS):
                return f"original_{provider_id}_{space_id or 0}"
            return f"thumbnail_{provider_id}_{space_id or 0}"

        return hashlib.md5(identifier.encode()).hexdigest()

    def get(self, identifier: str, provider_id: Optional[int] = None, space_id: Optional[int] = None) -> Optional[str]:
        """
        Look a photo up in the cache.

        Returns:
            Path of the cached file, or None on a miss.
        """
        if not self._initialized:
            return None

        key = self.key(identifier, provider_id, space_id)
        with self._lock:
            indexed = key in self._index

            for ext in CACHE_EXTENSIONS:
                file_path = os.path.join(self.cache_dir, f"{key}{ext}")
                if os.path.exists(file_path):
                    if not indexed:
                        self._index_file(key, ext, file_path)
                        self._logger.debug(f"Disk cache hit for {identifier}")
                    else:
                        self._logger.debug(f"Cache hit for {identifier}")
                    return file_path

            if indexed:
                # Index entry without a file: drop it
                del self._index[key]
                self._logger.debug(f"Cache file missing for {identifier}")
                return None

        self._logger.debug(f"Cache miss for {identifier}")
        return None

    def _index_file(self, key: str, ext: str, file_path: str) -> None:
        try:
            stat = os.stat(file_path)
        except OSError:
            return
        self._make_index_room()
        self._index[key] = CacheEntry(key=key, extension=ext, size=stat.st_size, mtime=stat.st_mtime)

    def _make_index_room(self) -> None:
        """Drop the oldest index entries when the index is full. Files stay on disk."""
        if len(self._index) < MAX_INDEX_ENTRIES:
            return
        self._logger.debug(
            f"Cache at max keys limit ({len(self._index)}/{MAX_INDEX_ENTRIES}), evicting old entries..."
        )
        for _ in range(min(INDEX_EVICTION_BATCH, len(self._index))):
            self._index.popitem(last=False)

    def set(
        self,
        identifier: str,
        data: Union[bytes, str],
        extension: str = '.jpg',
        provider_id: Optional[int] = None,
        space_id: Optional[int] = None
    ) -> Optional[str]:
        """
        Store a photo in the cache.

        Args:
            identifier: URL, path or key of the photo.
            data: Raw bytes, or a base64 string / data URL.
            extension: File extension including the dot.
            provider_id: Provider unit id, when known.
            space_id: Provider space id.

        Returns:
            Path of the written file, or None on failure.
        """
        if not self._initialized:
            return None

        if isinstance(data, str):
            if data.startswith('data:'):
                data = data.split(',', 1)[1]
            try:
                data = base64.b64decode(data)
            except ValueError as e:
                self._logger.error(f"Error setting cache: invalid base64 data ({e})")
                return None

        key = self.key(identifier, provider_id, space_id)
        file_path = os.path.join(self.cache_dir, f"{key}{extension}")

        with self._lock:
            old_size = 0
            if os.path.exists(file_path):
                try:
                    old_size = os.path.getsize(file_path)
                except OSError:
                    old_size = 0

            try:
                with open(file_path, 'wb') as f:
                    f.write(data)
            except OSError as e:
                self._logger.error(f"Error setting cache: {e}")
                return None

            if key not in self._index:
                self._make_index_room()
            self._index[key] = CacheEntry(
                key=key, extension=extension, size=len(data), mtime=time.time()
            )
            self._current_size += len(data) - old_size
            over_limit = self._current_size > self.max_size_bytes

        self._logger.debug(f"Cached image {identifier} ({len(data) / 1024 / 1024:.2f}MB)")

        if over_limit:
            self._start_eviction()

        return file_path

    def _start_eviction(self) -> None:
        with self._lock:
            self._eviction_requested = True
            if self._eviction_thread is not None:
                return
            self._eviction_thread = threading.Thread(
                target=self._eviction_loop, daemon=True, name="cache-eviction"
            )
            self._eviction_thread.start()

    def _eviction_loop(self) -> None:
        # Runs one pass per request, so inserts made during a pass are not missed
        while True:
            with self._lock:
                if not self._eviction_requested:
                    self._eviction_thread = None
                    return
                self._eviction_requested = False
            try:
                self.evict_old_files()
            except Exception as e:
                self._logger.error(f"Error evicting files: {e}")

    def wait_for_eviction(self, timeout: Optional[float] = None) -> None:
        """Block until a running background eviction finishes."""
        thread = self._eviction_thread
        if thread is not None:
            thread.join(timeout)

    def evict_old_files(self) -> None:
        """
        Delete the oldest cache files until the cache is under 90% of its max.

        Files are ordered by modification time. The metadata database file
        is never deleted, even if it was placed in the cache directory.
        """
        if not self._eviction_lock.acquire(blocking=False):
            self._logger.debug("Eviction already running, skipping")
            return

        try:
            with self._lock:
                if self._current_size <= self.max_size_bytes:
                    return

            files = []
            try:
                with os.scandir(self.cache_dir) as entries:
                    for entry in entries:
                        try:
                            if entry.is_file():
                                stat = entry.stat()
                                files.append((stat.st_mtime, entry.name, entry.path, stat.st_size))
                        except OSError:
                            continue  # Deleted while scanning
            except OSError as e:
                self._logger.error(f"Error evicting files: {e}")
                return

            files.sort()
            target_size = self.max_size_bytes * EVICTION_TARGET_RATIO

            for _, name, path, size in files:
                with self._lock:
                    if self._current_size <= target_size:
                        break

                    if _is_protected(name):
                        self._logger.debug(f"Skipping {name} in eviction (protected file)")
                        continue

                    try:
                        os.remove(path)
                    except OSError as e:
                        self._logger.debug(f"Could not evict {name}: {e}")
                        continue

                    key, _ = os.path.splitext(name)
                    self._index.pop(key, None)
                    self._current_size -= size
                self._logger.debug(f"Evicted {name} ({size / 1024 / 1024:.2f}MB)")
        finally:
            self._eviction_lock.release()

    def preload_images(self, items: List[PhotoItem], download_fn: Callable[[PhotoItem], Optional[bytes]]) -> bool:
        """
        Download upcoming photos into the cache in the background.

        Only the first ``preload_count`` items that have a URL are
        considered. A call made while a sweep is running is dropped.

        Args:
            items: Photos in display order.
            download_fn: Returns the bytes for a photo, or None.

        Returns:
            True if a sweep was started.
        """
        if not self.config.enabled or not self._initialized:
            return False

        queue = [item for item in items if item.url][:self.config.preload_count]
        if not queue:
            return False

        if not self._preload_lock.acquire(blocking=False):
            self._logger.debug("Preload already in progress, skipping")
            return False

        self._preload_cancel.clear()
        self._logger.info(f"Starting background preload of {len(queue)} images")
        self._preload_thread = threading.Thread(
            target=self._run_preload, args=(queue, download_fn), daemon=True, name="cache-preload"
        )
        try:
            self._preload_thread.start()
        except RuntimeError:
            self._preload_lock.release()
            raise
        return True

    def _run_preload(self, queue: List[PhotoItem], download_fn: Callable[[PhotoItem], Optional[bytes]]) -> None:
        executor = self._new_download_executor()
        try:
            for item in queue:
                if self._preload_cancel.is_set():
                    self._logger.info("Background preload cancelled")
                    break

                identifier = item.url or item.path
                if self.get(identifier, item.provider_id, item.space_id):
                    self._logger.debug(f"Skipping preload, already cached: {item.path}")
                    continue

                future = executor.submit(download_fn, item)
                try:
                    data = future.result(timeout=PRELOAD_TIMEOUT_SECONDS)
                    if data:
                        self.set(identifier, data, extension_for(identifier), item.provider_id, item.space_id)
                        self._logger.debug(f"Preloaded and cached: {item.path}")
                except concurrent.futures.TimeoutError:
                    self._logger.error(f"Error preloading image {item.path}: preload timeout")
                    # The hung download keeps its worker; later items get a fresh one
                    executor.shutdown(wait=False)
                    executor = self._new_download_executor()
                except Exception as e:
                    self._logger.error(f"Error preloading image {item.path}: {e}")

                if self._preload_cancel.wait(self.preload_delay):
                    self._logger.info("Background preload cancelled")
                    break
            else:
                self._logger.info("Background preload complete")
        finally:
            # A timed-out download may still be running; don't wait for it
            executor.shutdown(wait=False)
            self._preload_lock.release()

    @staticmethod
    def _new_download_executor() -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="preload-download")

    def cancel_preload(self) -> None:
        """Ask a running preload sweep to stop after the current photo."""
        self._preload_cancel.set()

    def wait_for_preload(self, timeout: Optional[float] = None) -> None:
        """Block until a running preload sweep finishes."""
        thread = self._preload_thread
        if thread is not None:
            thread.join(timeout)

    def clear(self) -> None:
        """Delete every cached file except the metadata database."""
        if not self._initialized:
            return

        with self._lock:
            self._index.clear()
            try:
                with os.scandir(self.cache_dir) as entries:
                    for entry in entries:
                        if _is_protected(entry.name):
                            self._logger.debug(f"Skipping {entry.name} in cache clear (protected file)")
                            continue
                        try:
                            if entry.is_file():
                                os.remove(entry.path)
                        except OSError:
                            continue  # Already gone
            except FileNotFoundError:
                pass
            except OSError as e:
                self._logger.error(f"Error clearing cache: {e}")
            self._current_size = self._calculate_cache_size()

        self._logger.info("Cache cleared")

    def get_stats(self) -> Optional[Dict[str, Any]]:
        """Get cache statistics, or None before initialize()."""
        if not self._initialized:
            return None
        with self._lock:
            return {
                "enabled": self.config.enabled,
                "max_size_mb": self.config.max_size_mb,
                "preload_count": self.config.preload_count,
                "current_size_mb": round(self._current_size / 1024 / 1024, 2),
                "indexed_entries": len(self._index),
            }
