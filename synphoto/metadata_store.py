# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Centralized photo metadata database.
Maps provider photo identities to capture date, location and address, and
feeds records with a location but no address to the geocoding queue.
"""

import json
import os
import shutil
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from .geocoding import GeocodeResult, GeocodingQueue, GeocodingTask, ReverseGeocoder
from .logs import ComponentLogger, get_component_logger
from .metadata import MetadataExtractor, PhotoMetadata


@dataclass
class MetadataRecord:
    """Enriched facts about one photo."""
    location: Optional[str] = None       # "lat, lon"
    capture_date: Optional[str] = None   # ISO 8601 UTC
    full_address: Optional[str] = None
    short_address: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "location": self.location,
            "captureDate": self.capture_date,
            "fullAddress": self.full_address,
            "shortAddress": self.short_address,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "MetadataRecord":
        return cls(
            location=data.get("location"),
            capture_date=data.get("captureDate"),
            full_address=data.get("fullAddress"),
            short_address=data.get("shortAddress"),
        )

    def coordinates(self) -> Optional[Tuple[float, float]]:
        """Parse the location string back into (latitude, longitude)."""
        if not self.location:
            return None
        try:
            lat, lon = (float(part) for part in self.location.split(","))
        except ValueError:
            return None
        return lat, lon

    def needs_geocoding(self) -> bool:
        return bool(self.location) and not self.full_address


def metadata_key(photo_id: int, space_id: Optional[int] = None) -> str:
    return f"{photo_id}_{space_id or 0}"


class MetadataDatabase:
    """
    JSON file holding every MetadataRecord.

    Writes are atomic: the new content goes to a ``.tmp`` sibling which is
    renamed over the real file, after the previous version is copied to a
    ``.backup`` sibling. Loads fall back to the backup, then to empty.
    """

    def __init__(self, path: str, logger: Optional[ComponentLogger] = None):
        self.path = path
        self.backup_path = path + '.backup'
        self.temp_path = path + '.tmp'
        self._logger = logger or get_component_logger(__name__, "MetadataDatabase")

    def _read(self, path: str) -> Optional[Dict[str, MetadataRecord]]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            self._logger.warning(f"Failed to read {path}: {e}")
            return None

        if not content.strip():
            self._logger.warning(f"Metadata database {path} is empty")
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self._logger.warning(f"Metadata database {path} is corrupted: {e}")
            return None

        if not isinstance(data, dict):
            self._logger.warning(f"Metadata database {path} is not a JSON object")
            return None

        return {
            key: MetadataRecord.from_dict(value)
            for key, value in data.items()
            if isinstance(value, dict)
        }

    def load(self) -> Dict[str, MetadataRecord]:
        """
        Load all records.

        Returns:
            Records keyed by ``{photo_id}_{space_id}``. Never raises; a
            missing or corrupted file with no usable backup yields {}.
        """
        records = self._read(self.path)
        if records is not None:
            self._logger.info(f"Loaded {len(records)} metadata records from {self.path}")
            return records

        if os.path.exists(self.path):
            records = self._read(self.backup_path)
            if records is not None:
                self._logger.warning(f"Recovered {len(records)} metadata records from backup")
                return records
            self._logger.error("Metadata database and backup unusable, starting empty")

        return {}

    def save(self, records: Dict[str, MetadataRecord]) -> bool:
        """
        Persist all records atomically.

        Returns:
            True on success. On failure the previous file is left intact.
        """
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            if os.path.exists(self.path):
                try:
                    shutil.copyfile(self.path, self.backup_path)
                except OSError as e:
                    self._logger.debug(f"Could not back up metadata database: {e}")

            data = {key: record.to_dict() for key, record in records.items()}
            with open(self.temp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(self.temp_path, self.path)
            return True
        except (OSError, TypeError, ValueError) as e:
            self._logger.error(f"Failed to save metadata database: {e}")
            try:
                if os.path.exists(self.temp_path):
                    os.remove(self.temp_path)
            except OSError:
                pass
            return False


class MetadataStore:
    """
    In-memory view of the metadata database plus the enrichment workflow.

    Every read-modify-write of the records happens under one lock so that
    the serve loop, the background downloader and the geocoding worker
    never lose each other's updates.
    """

    def __init__(
        self,
        database: MetadataDatabase,
        extractor: MetadataExtractor,
        geocoder: Optional[ReverseGeocoder] = None,
        logger: Optional[ComponentLogger] = None
    ):
        """
        Initialize the store and load existing records.

        Args:
            database: Backing JSON database.
            extractor: Metadata extractor for new photos.
            geocoder: Reverse geocoder; None disables address enrichment.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.database = database
        self.extractor = extractor
        self._logger = logger or get_component_logger(__name__, "MetadataStore")
        self._lock = threading.RLock()
        self._records: Dict[str, MetadataRecord] = database.load()
        # Latest full extraction per photo (camera details included); not persisted
        self._exif: Dict[str, PhotoMetadata] = {}

        self.geocoding_queue: Optional[GeocodingQueue] = None
        if geocoder is not None:
            self.geocoding_queue = GeocodingQueue(
                geocoder,
                lambda task, result: self.update_address(task.key, result),
                logger=self._logger,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get_metadata(self, photo_id: int, space_id: Optional[int] = None) -> Optional[MetadataRecord]:
        with self._lock:
            record = self._records.get(metadata_key(photo_id, space_id))
            if record is None:
                return None
            return MetadataRecord(**record.__dict__)

    def get_exif(self, photo_id: int, space_id: Optional[int] = None) -> Optional[PhotoMetadata]:
        """Return the last extracted EXIF details for a photo in this process, if any."""
        with self._lock:
            exif = self._exif.get(metadata_key(photo_id, space_id))
            return replace(exif) if exif is not None else None

    def has_metadata(self, photo_id: int, space_id: Optional[int] = None) -> bool:
        with self._lock:
            return metadata_key(photo_id, space_id) in self._records

    def save_photo_metadata(self, photo_id: int, space_id: Optional[int], metadata: PhotoMetadata) -> bool:
        """
        Record newly extracted metadata for a photo.

        An existing record is never overwritten; it is only queued for
        geocoding if it has a location but no address yet.
        The full extraction is kept in memory for get_exif().

        Returns:
            True if a new record was inserted.
        """
        key = metadata_key(photo_id, space_id)

        with self._lock:
            self._exif[key] = replace(metadata)
            existing = self._records.get(key)
            if existing is not None:
                needs_geocoding = existing.needs_geocoding()
                coordinates = existing.coordinates()
            else:
                record = MetadataRecord(location=metadata.location, capture_date=metadata.capture_date)
                self._records[key] = record
                self.database.save(self._records)
                needs_geocoding = record.needs_geocoding()
                coordinates = None
                if metadata.latitude is not None and metadata.longitude is not None:
                    coordinates = (metadata.latitude, metadata.longitude)

        if existing is None:
            self._logger.debug(f"Saved metadata for {key}")

        if needs_geocoding and coordinates is not None:
            self._enqueue_geocoding(key, coordinates)

        return existing is None

    def request_geocoding(self, photo_id: int, space_id: Optional[int] = None) -> bool:
        """
        Queue geocoding for a record that has a location but no address.

        Returns:
            True if a task was queued.
        """
        key = metadata_key(photo_id, space_id)
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.needs_geocoding():
                return False
            coordinates = record.coordinates()

        if coordinates is None:
            self._logger.debug(f"Unparseable location for {key}: {record.location}")
            return False
        return self._enqueue_geocoding(key, coordinates)

    def _enqueue_geocoding(self, key: str, coordinates: Tuple[float, float]) -> bool:
        if self.geocoding_queue is None:
            return False
        latitude, longitude = coordinates
        return self.geocoding_queue.enqueue(GeocodingTask(key=key, latitude=latitude, longitude=longitude))

    def update_address(self, key: str, result: GeocodeResult) -> bool:
        """
        Store a geocoding result on its record and persist.

        Returns:
            False if the record no longer exists.
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                self._logger.debug(f"No metadata record for {key}, dropping address")
                return False
            record.full_address = result.full_address
            record.short_address = result.short_address
            return self.database.save(self._records)

    def extract_and_save(
        self,
        photo_id: int,
        space_id: Optional[int] = None,
        path: Optional[str] = None
    ) -> Optional[MetadataRecord]:
        """
        Extract metadata for a photo and record it.

        Returns:
            The stored record, or None if nothing useful was found.
        """
        metadata = self.extractor.extract(photo_id, space_id, path)
        if metadata is None:
            self._logger.debug(f"No metadata found for photo {photo_id}")
            return None

        self.save_photo_metadata(photo_id, space_id, metadata)
        return self.get_metadata(photo_id, space_id)

    def wait_for_geocoding(self, timeout: Optional[float] = None) -> bool:
        if self.geocoding_queue is None:
            return True
        return self.geocoding_queue.wait_until_idle(timeout)
