# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Tests for batch preparation, ordering and the shown tracker.
"""

import random

import pytest

from conftest import make_photo
from synphoto.config import SlideshowConfig
from synphoto.image_list import ImageListManager, ShownTracker, shuffle_photos, sort_photos
from synphoto.provider import PhotoItem


class TestShufflePhotos:
    """Tests for the dual-pass shuffle."""

    def test_result_is_permutation(self, sample_photos):
        """Shuffling keeps every photo exactly once."""
        shuffled = shuffle_photos(sample_photos)
        assert len(shuffled) == len(sample_photos)
        assert sorted(p.identity for p in shuffled) == sorted(p.identity for p in sample_photos)

    def test_input_not_modified(self, sample_photos):
        original = list(sample_photos)
        shuffle_photos(sample_photos, seed=7)
        assert sample_photos == original

    def test_same_seeds_same_order(self):
        """Both passes seeded identically produce the same order."""
        photos = [make_photo(i) for i in range(20)]

        random.seed(1234)
        first = shuffle_photos(photos, seed=42)
        random.seed(1234)
        second = shuffle_photos(photos, seed=42)

        assert first == second

    def test_empty_and_single(self):
        assert shuffle_photos([]) == []
        photo = make_photo(1)
        assert shuffle_photos([photo]) == [photo]


class TestSortPhotos:
    """Tests for sorting by name, created and modified."""

    def test_sort_by_name_case_insensitive(self):
        photos = [
            PhotoItem(path="beach.jpg"),
            PhotoItem(path="Alps.jpg"),
            PhotoItem(path="canyon.jpg"),
        ]
        result = sort_photos(photos, "name")
        assert [p.path for p in result] == ["Alps.jpg", "beach.jpg", "canyon.jpg"]

    def test_sort_by_created(self):
        photos = [
            PhotoItem(path="a.jpg", created=300),
            PhotoItem(path="b.jpg", created=100),
            PhotoItem(path="c.jpg", created=200),
        ]
        result = sort_photos(photos, "created")
        assert [p.path for p in result] == ["b.jpg", "c.jpg", "a.jpg"]

    def test_sort_by_modified_descending(self):
        photos = [
            PhotoItem(path="a.jpg", modified=300),
            PhotoItem(path="b.jpg", modified=100),
            PhotoItem(path="c.jpg", modified=200),
        ]
        result = sort_photos(photos, "modified", descending=True)
        assert [p.path for p in result] == ["a.jpg", "c.jpg", "b.jpg"]

    def test_sort_is_stable(self):
        """Equal keys keep their input order."""
        photos = [
            PhotoItem(path="x.jpg", created=100, provider_id=1),
            PhotoItem(path="y.jpg", created=100, provider_id=2),
            PhotoItem(path="z.jpg", created=50, provider_id=3),
        ]
        result = sort_photos(photos, "created")
        assert [p.provider_id for p in result] == [3, 1, 2]

    def test_descending_reverses_ascending(self, sample_photos):
        ascending = sort_photos(sample_photos, "created")
        descending = sort_photos(sample_photos, "created", descending=True)
        assert descending == list(reversed(ascending))


class TestShownTracker:
    """Tests for the already-shown tracker file."""

    def test_missing_file_reads_empty(self, temp_dir):
        tracker = ShownTracker(str(temp_dir / "missing.txt"))
        assert tracker.read() == set()

    def test_add_and_read(self, temp_dir):
        tracker = ShownTracker(str(temp_dir / "sub" / "shown.txt"))
        tracker.add("1_0")
        tracker.add("2_0")
        tracker.add("1_0")
        assert tracker.read() == {"1_0", "2_0"}

    def test_reset_truncates(self, temp_dir):
        path = temp_dir / "shown.txt"
        tracker = ShownTracker(str(path))
        tracker.add("1_0")
        tracker.reset()
        assert path.exists()
        assert tracker.read() == set()


class TestImageListManager:
    """Tests for batch preparation and navigation."""

    @pytest.fixture
    def tracker(self, temp_dir):
        return ShownTracker(str(temp_dir / "shown.txt"))

    @pytest.fixture
    def manager(self, tracker):
        return ImageListManager(tracker)

    @pytest.fixture
    def sorted_config(self):
        return SlideshowConfig(randomize_image_order=False, sort_images_by="name")

    def test_prepare_replaces_current_batch(self, manager, sorted_config, sample_photos):
        result = manager.prepare(list(reversed(sample_photos)), sorted_config, offset=10)

        assert [p.path for p in result] == [p.path for p in sample_photos]
        assert manager.items() == result
        assert manager.index == 0
        assert manager.current_batch_offset == 10

    def test_prepare_filters_shown(self, manager, tracker, sample_photos):
        config = SlideshowConfig(show_all_images_before_restart=True, randomize_image_order=False)
        tracker.add(sample_photos[0].identity)
        tracker.add(sample_photos[2].identity)

        result = manager.prepare(sample_photos, config)

        assert [p.identity for p in result] == ["2_0", "4_0", "5_0"]

    def test_all_shown_resets_tracker(self, manager, tracker, sample_photos):
        """When every photo was already shown, the tracker resets and all are used."""
        config = SlideshowConfig(show_all_images_before_restart=True, randomize_image_order=False)
        for photo in sample_photos:
            tracker.add(photo.identity)

        result = manager.prepare(sample_photos, config)

        assert len(result) == len(sample_photos)
        assert tracker.read() == set()

    def test_all_shown_preload_stashes_nothing(self, manager, tracker, sample_photos):
        """A preload never resets the tracker."""
        config = SlideshowConfig(show_all_images_before_restart=True, randomize_image_order=False)
        for photo in sample_photos:
            tracker.add(photo.identity)

        result = manager.prepare(sample_photos, config, is_preload=True)

        assert result == []
        assert not manager.has_preloaded()
        assert len(tracker.read()) == len(sample_photos)

    def test_next_and_exhaustion(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos[:2], sorted_config)

        assert manager.remaining() == 2
        assert manager.next() == sample_photos[0]
        assert manager.next() == sample_photos[1]
        assert manager.is_exhausted()
        assert manager.next() is None

    def test_next_on_empty(self, manager):
        assert manager.is_empty()
        assert manager.next() is None

    def test_previous(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos, sorted_config)
        manager.next()
        manager.next()
        manager.next()

        assert manager.previous() == sample_photos[1]
        assert manager.index == 2

    def test_previous_at_start_stays_at_first(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos, sorted_config)
        manager.next()
        assert manager.previous() == sample_photos[0]

    def test_switch_to_preloaded(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos[:2], sorted_config, offset=0)
        manager.prepare(sample_photos[2:4], sorted_config, is_preload=True, offset=2)

        assert manager.has_preloaded()
        assert manager.items() == sample_photos[:2]

        assert manager.switch_to_preloaded()
        assert manager.items() == sample_photos[2:4]
        assert manager.index == 0
        assert manager.current_batch_offset == 2
        assert not manager.has_preloaded()
        assert not manager.switch_to_preloaded()

    def test_preload_for_loaded_offset_is_discarded(self, manager, sorted_config, sample_photos):
        """A batch preloaded after the same page was loaded directly is not served twice."""
        manager.prepare(sample_photos[2:4], sorted_config, offset=2)

        result = manager.prepare(sample_photos[2:4], sorted_config, is_preload=True, offset=2)

        assert result == []
        assert not manager.has_preloaded()

    def test_stale_stash_is_dropped_on_switch(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos[:2], sorted_config, offset=0)
        manager.prepare(sample_photos[2:4], sorted_config, is_preload=True, offset=2)
        manager.prepare(sample_photos[2:4], sorted_config, offset=2)

        assert not manager.switch_to_preloaded()
        assert not manager.has_preloaded()
        assert manager.current_batch_offset == 2

    def test_new_photos_at_offset_zero_are_kept(self, manager, sorted_config, sample_photos):
        manager.prepare(sample_photos[:2], sorted_config, offset=0)
        manager.prepare(sample_photos[4:], sorted_config, is_preload=True, offset=0)

        assert manager.switch_to_preloaded()
        assert manager.items() == sample_photos[4:]

    def test_mark_shown_persists(self, manager, tracker, sample_photos):
        manager.mark_shown(sample_photos[0])
        assert tracker.read() == {sample_photos[0].identity}

        manager.reset_shown()
        assert manager.read_shown() == set()
