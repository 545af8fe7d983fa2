# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Tests for reverse geocoding and the geocoding queue.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
from geopy.exc import GeocoderServiceError, GeocoderTimedOut

from synphoto.geocoding import (
    GeocodeResult,
    GeocodingQueue,
    GeocodingTask,
    ReverseGeocoder,
    reset_rate_limit,
    short_address_from,
)


class FakeClock:
    """Monotonic clock that only advances when slept on."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_location(display_name, address=None):
    location = MagicMock()
    location.raw = {"display_name": display_name, "address": address or {}}
    location.address = display_name
    return location


@pytest.fixture(autouse=True)
def fresh_rate_limit():
    reset_rate_limit()
    yield
    reset_rate_limit()


@pytest.fixture
def clock():
    fake = FakeClock()
    with patch("synphoto.geocoding.time", fake):
        yield fake


@pytest.fixture
def geocoder():
    geocoder = ReverseGeocoder(min_interval=5.0)
    geocoder._geolocator = MagicMock()
    return geocoder


class TestShortAddress:
    """Tests for short address construction."""

    def test_city_and_country(self):
        assert short_address_from({"city": "Paris", "country": "France"}, None) == "Paris, France"

    def test_town_fallback(self):
        assert short_address_from({"town": "Carmel", "country": "USA"}, None) == "Carmel, USA"

    def test_country_only(self):
        assert short_address_from({"country": "Iceland"}, None) == "Iceland"

    def test_from_display_name(self):
        assert short_address_from({}, "Pier 39, San Francisco, California") == "Pier 39, San Francisco"

    def test_nothing(self):
        assert short_address_from({}, None) is None


class TestReverseGeocoder:
    """Tests for ReverseGeocoder."""

    def test_successful_lookup(self, clock, geocoder):
        geocoder._geolocator.reverse.return_value = make_location(
            "5 Avenue Anatole France, Paris, France", {"city": "Paris", "country": "France"}
        )

        result = geocoder.reverse_geocode(48.8584, 2.2945)

        assert result == GeocodeResult(
            full_address="5 Avenue Anatole France, Paris, France", short_address="Paris, France"
        )
        geocoder._geolocator.reverse.assert_called_once_with(
            (48.8584, 2.2945), exactly_one=True, language="en"
        )

    def test_calls_are_spaced(self, clock, geocoder):
        """Consecutive lookups are at least min_interval apart."""
        call_times = []
        geocoder._geolocator.reverse.side_effect = lambda *a, **k: call_times.append(clock.now) or make_location("X")

        geocoder.reverse_geocode(1.0, 1.0)
        clock.now += 2.0
        geocoder.reverse_geocode(2.0, 2.0)
        geocoder.reverse_geocode(3.0, 3.0)

        assert clock.sleeps == [pytest.approx(3.0), pytest.approx(5.0)]
        gaps = [b - a for a, b in zip(call_times, call_times[1:])]
        assert all(gap >= 5.0 for gap in gaps)

    def test_spacing_is_process_wide(self, clock):
        first = ReverseGeocoder(min_interval=5.0)
        second = ReverseGeocoder(min_interval=5.0)
        first._geolocator = MagicMock()
        second._geolocator = MagicMock()
        first._geolocator.reverse.return_value = make_location("A")
        second._geolocator.reverse.return_value = make_location("B")

        first.reverse_geocode(1.0, 1.0)
        second.reverse_geocode(1.0, 1.0)

        assert clock.sleeps == [pytest.approx(5.0)]

    def test_no_wait_after_interval(self, clock, geocoder):
        geocoder._geolocator.reverse.return_value = make_location("A")
        geocoder.reverse_geocode(1.0, 1.0)
        clock.now += 10.0
        geocoder.reverse_geocode(1.0, 1.0)
        assert clock.sleeps == []

    @pytest.mark.parametrize("error", [GeocoderTimedOut("slow"), GeocoderServiceError("down"), ValueError("bad")])
    def test_errors_return_none(self, clock, geocoder, error):
        geocoder._geolocator.reverse.side_effect = error
        assert geocoder.reverse_geocode(1.0, 1.0) is None

    def test_no_location(self, clock, geocoder):
        geocoder._geolocator.reverse.return_value = None
        assert geocoder.reverse_geocode(0.0, 0.0) is None

    def test_lazy_nominatim_client(self):
        geocoder = ReverseGeocoder(user_agent="test-agent/1.0", timeout=3)
        with patch("synphoto.geocoding.Nominatim") as nominatim:
            client = geocoder.geolocator
            assert geocoder.geolocator is client
        nominatim.assert_called_once_with(user_agent="test-agent/1.0", timeout=3)


class TestGeocodingQueue:
    """Tests for the sequential geocoding queue."""

    def test_results_are_delivered(self):
        geocoder = MagicMock()
        geocoder.reverse_geocode.return_value = GeocodeResult(full_address="Paris, France")
        results = []
        queue = GeocodingQueue(geocoder, lambda task, result: results.append((task.key, result.full_address)))

        assert queue.enqueue(GeocodingTask("1_0", 48.0, 2.0))
        assert queue.enqueue(GeocodingTask("2_0", 49.0, 3.0))
        assert queue.wait_until_idle(timeout=5)

        assert results == [("1_0", "Paris, France"), ("2_0", "Paris, France")]
        assert queue.pending() == 0

    def test_duplicate_keys_are_ignored(self):
        release = threading.Event()
        geocoder = MagicMock()

        def slow_lookup(lat, lon):
            release.wait(5)
            return GeocodeResult(full_address="Somewhere")

        geocoder.reverse_geocode.side_effect = slow_lookup
        queue = GeocodingQueue(geocoder, lambda task, result: None)

        assert queue.enqueue(GeocodingTask("1_0", 1.0, 1.0))
        assert not queue.enqueue(GeocodingTask("1_0", 1.0, 1.0))
        release.set()
        queue.wait_until_idle(timeout=5)

        assert geocoder.reverse_geocode.call_count == 1

    def test_failures_do_not_stop_worker(self):
        geocoder = MagicMock()
        geocoder.reverse_geocode.side_effect = [RuntimeError("boom"), None, GeocodeResult(full_address="Rome")]
        results = []
        queue = GeocodingQueue(geocoder, lambda task, result: results.append(task.key))

        for i in range(3):
            queue.enqueue(GeocodingTask(f"{i}_0", 1.0, 1.0))
        queue.wait_until_idle(timeout=5)

        assert results == ["2_0"]

    def test_concurrent_enqueues_are_spaced(self, clock, geocoder):
        """Tasks queued at once from several threads still hit the service 5 s apart."""
        call_times = []
        geocoder._geolocator.reverse.side_effect = lambda *a, **k: call_times.append(clock.now) or make_location("X")
        queue = GeocodingQueue(geocoder, lambda task, result: None)
        tasks = [GeocodingTask(f"{i}_0", float(i), float(i)) for i in range(3)]

        threads = [threading.Thread(target=queue.enqueue, args=(task,)) for task in tasks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
        assert queue.wait_until_idle(timeout=5)

        assert len(call_times) == 3
        gaps = [b - a for a, b in zip(call_times, call_times[1:])]
        assert all(gap >= 5.0 for gap in gaps)
