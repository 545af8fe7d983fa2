# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Reverse geocoding for photo locations.
Turns GPS coordinates into addresses via OpenStreetMap's Nominatim service,
rate limited process-wide and drained by a single background worker.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from geopy.exc import GeocoderServiceError, GeocoderTimedOut
from geopy.geocoders import Nominatim

from .logs import ComponentLogger, get_component_logger

DEFAULT_USER_AGENT = "synphoto/1.0 (synology photo slideshow)"

# Nominatim usage policy allows at most one request per second; stay well under
DEFAULT_MIN_INTERVAL_SECONDS = 5.0

# Shared by every ReverseGeocoder in the process
_geocode_lock = threading.Lock()
_last_geocode_time: float = 0

CITY_KEYS = ("city", "town", "village", "municipality", "county")


@dataclass(frozen=True)
class GeocodeResult:
    """Address resolved for a coordinate."""
    full_address: str
    short_address: Optional[str] = None


@dataclass(frozen=True)
class GeocodingTask:
    """A pending lookup for one metadata record."""
    key: str
    latitude: float
    longitude: float


def short_address_from(address: Dict[str, Any], full_address: Optional[str]) -> Optional[str]:
    """
    Build a "City, Country" style short address.

    Args:
        address: Structured address from the geocoder (may be empty).
        full_address: Display name, used when no structured parts exist.

    Returns:
        Short address or None.
    """
    city = next((address.get(k) for k in CITY_KEYS if address.get(k)), None)
    country = address.get("country")

    if city and country:
        return f"{city}, {country}"
    if city:
        return city
    if country:
        return country

    if full_address:
        parts = [p.strip() for p in full_address.split(",") if p.strip()]
        if parts:
            return ", ".join(parts[:2])

    return None


def reset_rate_limit() -> None:
    """Forget the time of the last request (used by tests)."""
    global _last_geocode_time
    with _geocode_lock:
        _last_geocode_time = 0


class ReverseGeocoder:
    """
    Reverse geocoder backed by geopy's Nominatim client.

    Calls are spaced at least ``min_interval`` seconds apart across the
    whole process; a caller arriving early sleeps until its slot.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: int = 10,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        logger: Optional[ComponentLogger] = None
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.min_interval = min_interval
        self._logger = logger or get_component_logger(__name__, "ReverseGeocoder")
        self._geolocator: Optional[Nominatim] = None

    @property
    def geolocator(self) -> Nominatim:
        if self._geolocator is None:
            self._geolocator = Nominatim(user_agent=self.user_agent, timeout=self.timeout)
        return self._geolocator

    def _wait_for_slot(self) -> None:
        global _last_geocode_time
        with _geocode_lock:
            if _last_geocode_time:
                elapsed = time.monotonic() - _last_geocode_time
                if elapsed < self.min_interval:
                    wait = self.min_interval - elapsed
                    self._logger.debug(f"Rate limiting: waiting {wait:.1f}s before geocoding")
                    time.sleep(wait)
            _last_geocode_time = time.monotonic()

    def reverse_geocode(self, latitude: float, longitude: float) -> Optional[GeocodeResult]:
        """
        Convert GPS coordinates to an address.

        Args:
            latitude: GPS latitude in decimal degrees.
            longitude: GPS longitude in decimal degrees.

        Returns:
            GeocodeResult, or None on service error, timeout or an empty answer.
        """
        self._wait_for_slot()

        try:
            location = self.geolocator.reverse(
                (latitude, longitude),
                exactly_one=True,
                language="en"
            )
        except (GeocoderTimedOut, GeocoderServiceError) as e:
            self._logger.warning(f"Geocoding service error for {latitude}, {longitude}: {e}")
            return None
        except Exception as e:
            self._logger.warning(f"Reverse geocoding failed for {latitude}, {longitude}: {e}")
            return None

        if not location:
            self._logger.debug(f"No address found for {latitude}, {longitude}")
            return None

        raw = getattr(location, "raw", None) or {}
        full_address = raw.get("display_name") or getattr(location, "address", None)
        if not full_address:
            self._logger.debug(f"Geocoder returned no display name for {latitude}, {longitude}")
            return None

        address = raw.get("address") or {}
        if not isinstance(address, dict):
            address = {}

        return GeocodeResult(
            full_address=full_address,
            short_address=short_address_from(address, full_address),
        )


class GeocodingQueue:
    """
    Sequential background geocoding.

    Tasks are processed one at a time by a single worker thread that is
    started on demand and exits when the queue is empty. A task whose key
    is already pending is ignored.
    """

    def __init__(
        self,
        geocoder: ReverseGeocoder,
        on_result: Callable[[GeocodingTask, GeocodeResult], None],
        logger: Optional[ComponentLogger] = None
    ):
        """
        Args:
            geocoder: Geocoder used for every task.
            on_result: Called with each successful result.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.geocoder = geocoder
        self.on_result = on_result
        self._logger = logger or get_component_logger(__name__, "GeocodingQueue")

        self._lock = threading.Lock()
        self._tasks: "OrderedDict[str, GeocodingTask]" = OrderedDict()
        self._worker: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()

    def enqueue(self, task: GeocodingTask) -> bool:
        """
        Queue a lookup.

        Returns:
            False if a task with the same key is already pending.
        """
        with self._lock:
            if task.key in self._tasks:
                self._logger.debug(f"Geocoding already pending for {task.key}")
                return False
            self._tasks[task.key] = task
            self._idle.clear()
            if self._worker is None:
                self._worker = threading.Thread(target=self._drain, daemon=True, name="geocoding")
                self._worker.start()
        self._logger.debug(f"Queued geocoding for {task.key}")
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued task has been processed."""
        return self._idle.wait(timeout)

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._tasks:
                    self._worker = None
                    self._idle.set()
                    return
                # Leave the task in the map while it runs so duplicates are ignored
                key, task = next(iter(self._tasks.items()))

            try:
                result = self.geocoder.reverse_geocode(task.latitude, task.longitude)
                if result is not None:
                    self.on_result(task, result)
                    self._logger.info(f"Geocoded {key}: {result.short_address or result.full_address}")
                else:
                    self._logger.debug(f"No geocoding result for {key}")
            except Exception as e:
                self._logger.error(f"Geocoding task {key} failed: {e}")
            finally:
                with self._lock:
                    self._tasks.pop(key, None)
