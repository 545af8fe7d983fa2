# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Image list management for SynPhoto.
Holds the current display batch, its ordering, the already-shown tracker,
and a preloaded next batch.
"""

import os
import random
import threading
import time
from typing import Callable, List, Optional, Set

from .config import SlideshowConfig
from .logs import ComponentLogger, get_component_logger
from .provider import PhotoItem


def _lcg(seed: int) -> Callable[[], float]:
    """Linear congruential generator returning floats in [0, 1)."""
    state = [seed % 233280]

    def next_random() -> float:
        state[0] = (state[0] * 9301 + 49297) % 233280
        return state[0] / 233280

    return next_random


def _fisher_yates(items: list, rand: Callable[[], float]) -> None:
    for i in range(len(items) - 1, 0, -1):
        j = int(rand() * (i + 1))
        items[i], items[j] = items[j], items[i]


def shuffle_photos(photos: List[PhotoItem], seed: Optional[int] = None) -> List[PhotoItem]:
    """
    Shuffle photos with two Fisher-Yates passes.

    The first pass is driven by an LCG seeded from the wall clock so that
    consecutive restarts do not replay the same order; the second uses the
    platform random source.

    Args:
        photos: Photos to shuffle (not modified).
        seed: Seed for the first pass. Defaults to current time in ms.

    Returns:
        A new list containing every input photo exactly once.
    """
    shuffled = list(photos)
    if seed is None:
        seed = int(time.time() * 1000)

    _fisher_yates(shuffled, _lcg(seed))
    _fisher_yates(shuffled, random.random)
    return shuffled


def sort_photos(photos: List[PhotoItem], sort_by: str = "name", descending: bool = False) -> List[PhotoItem]:
    """
    Sort photos by name (case-insensitive), created or modified time.

    Sorting is stable. Descending order reverses the ascending result.
    """
    if sort_by == "created":
        ordered = sorted(photos, key=lambda p: p.created)
    elif sort_by == "modified":
        ordered = sorted(photos, key=lambda p: p.modified)
    else:
        ordered = sorted(photos, key=lambda p: p.path.lower())

    if descending:
        ordered.reverse()
    return ordered


class ShownTracker:
    """Append-only file of identities that have already been displayed."""

    def __init__(self, path: str, logger: Optional[ComponentLogger] = None):
        self.path = path
        self._logger = logger or get_component_logger(__name__, "ShownTracker")
        self._lock = threading.Lock()

    def read(self) -> Set[str]:
        """Read all recorded identities. A missing file reads as empty."""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                shown = {line.strip() for line in f if line.strip()}
            self._logger.info(f"Found {len(shown)} files in tracker")
            return shown
        except FileNotFoundError:
            self._logger.info("No tracker file found, starting fresh")
            return set()
        except OSError as e:
            self._logger.error(f"Error reading tracker {self.path}: {e}")
            return set()

    def add(self, identity: str) -> None:
        with self._lock:
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(f"{identity}\n")
            except OSError as e:
                self._logger.error(f"Error appending to tracker {self.path}: {e}")

    def reset(self) -> None:
        with self._lock:
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self.path, 'w', encoding='utf-8'):
                    pass
                self._logger.info("Reset shown images tracker")
            except OSError as e:
                self._logger.error(f"Error resetting tracker: {e}")


class ImageListManager:
    """
    Manages the current batch of photos and the preloaded next batch.

    Cursor movement (next/previous) is driven by the slideshow timer; batch
    replacement may come from a background preload, so all state changes
    happen under a lock.
    """

    def __init__(self, tracker: ShownTracker, logger: Optional[ComponentLogger] = None):
        """
        Initialize the list manager.

        Args:
            tracker: Persistent already-shown tracker.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.tracker = tracker
        self._logger = logger or get_component_logger(__name__, "ImageListManager")
        self._lock = threading.RLock()

        self._image_list: List[PhotoItem] = []
        self._next_batch: List[PhotoItem] = []
        self._next_batch_offset: Optional[int] = None
        self._already_shown: Set[str] = set()
        self.index = 0
        self.current_batch_offset = 0

    def prepare(
        self,
        photos: List[PhotoItem],
        config: SlideshowConfig,
        is_preload: bool = False,
        offset: Optional[int] = None
    ) -> List[PhotoItem]:
        """
        Prepare a batch from a page of photos.

        Args:
            photos: Photos fetched from the provider.
            config: Ordering and already-shown policy.
            is_preload: Stash the result as the next batch instead of
                replacing the current one.
            offset: Provider offset the page was fetched from.

        Returns:
            The prepared (filtered, ordered) list.
        """
        working_list = list(photos)

        if config.show_all_images_before_restart:
            self._already_shown = self.tracker.read()
            to_use = [p for p in working_list if p.identity not in self._already_shown]
        else:
            to_use = working_list

        # Every photo was shown already: start over instead of stalling
        if (config.show_all_images_before_restart and not to_use
                and working_list and not is_preload):
            self._logger.info("All images were previously shown, resetting shown tracker")
            self.reset_shown()
            to_use = working_list

        if not is_preload:
            self._logger.info(f"Skipped {len(working_list) - len(to_use)} already shown files")

        if config.randomize_image_order:
            final_list = shuffle_photos(to_use)
        else:
            self._logger.debug(f"Sorting by {config.sort_images_by}...")
            final_list = sort_photos(to_use, config.sort_images_by, config.sort_images_descending)

        with self._lock:
            if is_preload:
                if self._is_stale_offset(offset):
                    self._logger.info(f"Discarding preloaded batch for offset {offset}, already loaded")
                    return []
                self._next_batch = final_list
                self._next_batch_offset = offset
                self._logger.info(f"Preloaded next batch with {len(final_list)} images")
                return list(final_list)

            self._image_list = final_list
            self.index = 0
            if offset is not None:
                self.current_batch_offset = offset

        self._logger.info(f"Final image list contains {len(final_list)} files")
        return list(final_list)

    def next(self) -> Optional[PhotoItem]:
        """
        Return the photo at the cursor and advance.

        Returns:
            PhotoItem, or None when the batch is empty or exhausted.
        """
        with self._lock:
            if not self._image_list:
                return None

            if self.index >= len(self._image_list):
                self._logger.info("All images in current batch have been shown")
                return None

            photo = self._image_list[self.index]
            self.index += 1
            self._logger.info(f'Displaying image {self.index}/{len(self._image_list)}: "{photo.path}"')
            return photo

    def previous(self) -> Optional[PhotoItem]:
        """Step back one photo (the cursor already points past the current one)."""
        with self._lock:
            self.index = max(0, self.index - 2)
            return self.next()

    def has_preloaded(self) -> bool:
        with self._lock:
            return bool(self._next_batch)

    def switch_to_preloaded(self) -> bool:
        """
        Replace the current batch with the stashed next batch.

        Returns:
            True if a batch was switched in.
        """
        with self._lock:
            if not self._next_batch:
                return False
            if self._is_stale_offset(self._next_batch_offset):
                self._logger.info(f"Discarding preloaded batch for offset {self._next_batch_offset}, already loaded")
                self._next_batch = []
                self._next_batch_offset = None
                return False
            self._logger.info(f"Switching to preloaded batch with {len(self._next_batch)} images")
            self._image_list = self._next_batch
            self._next_batch = []
            self.index = 0
            if self._next_batch_offset is not None:
                self.current_batch_offset = self._next_batch_offset
            self._next_batch_offset = None
            return True

    def _is_stale_offset(self, offset: Optional[int]) -> bool:
        # Offset 0 batches hold new photos and are never stale
        return bool(offset) and offset <= self.current_batch_offset

    def remaining(self) -> int:
        with self._lock:
            return max(0, len(self._image_list) - self.index)

    def is_exhausted(self) -> bool:
        with self._lock:
            return self.index >= len(self._image_list)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._image_list

    def items(self) -> List[PhotoItem]:
        with self._lock:
            return list(self._image_list)

    def identities(self) -> Set[str]:
        with self._lock:
            return {p.identity for p in self._image_list}

    def mark_shown(self, photo: PhotoItem) -> None:
        """Record a displayed photo in memory and in the tracker file."""
        self._already_shown.add(photo.identity)
        self.tracker.add(photo.identity)

    def read_shown(self) -> Set[str]:
        return self.tracker.read()

    def reset_shown(self) -> None:
        """Clear the in-memory shown set and the persisted tracker."""
        self._already_shown.clear()
        self.tracker.reset()
