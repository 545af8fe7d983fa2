# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Metadata extraction for photos.
Reads capture date, GPS position and camera details from the provider's
EXIF endpoint or from the image file itself.
"""

import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from PIL import Image
from PIL.ExifTags import GPSTAGS, TAGS

from .logs import ComponentLogger, get_component_logger
from .provider import PhotoProvider

# IFD pointers inside the main EXIF block
EXIF_IFD = 0x8769
GPS_IFD = 0x8825

# EXIF date format
EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"

# Numeric timestamps above this are milliseconds, below it seconds
MS_TIMESTAMP_THRESHOLD = 1e11

# Provider EXIF payloads are loosely typed: each field may arrive under
# any of these names. First non-empty alias wins.
API_EXIF_ALIASES: Dict[str, Tuple[str, ...]] = {
    "date": ("DateTimeOriginal", "DateTime", "date_time_original", "date_time"),
    "latitude": ("GPSLatitude", "gps_latitude", "latitude"),
    "longitude": ("GPSLongitude", "gps_longitude", "longitude"),
    "make": ("Make", "make"),
    "model": ("Model", "model"),
    "iso": ("ISO", "iso"),
    "f_number": ("FNumber", "f_number", "aperture"),
    "exposure_time": ("ExposureTime", "exposure_time", "shutter_speed"),
    "focal_length": ("FocalLength", "focal_length"),
}


@dataclass(frozen=True)
class ApiExifFields:
    """A provider EXIF payload after alias resolution and type coercion."""
    date: Any = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    make: Optional[str] = None
    model: Optional[str] = None
    iso: Optional[int] = None
    f_number: Optional[float] = None
    exposure_time: Optional[float] = None
    focal_length: Optional[float] = None


@dataclass
class PhotoMetadata:
    """Extracted metadata from a photo."""
    capture_date: Optional[str] = None       # ISO 8601 UTC, e.g. 2023-06-01T12:00:00.000Z
    capture_timestamp: Optional[int] = None  # Epoch milliseconds
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None           # "lat, lon" with 6 decimals
    camera: Optional[str] = None
    iso: Optional[int] = None
    aperture: Optional[str] = None
    shutter_speed: Optional[str] = None
    focal_length: Optional[str] = None

    def has_useful_data(self) -> bool:
        return self.capture_date is not None or self.latitude is not None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if hasattr(value, 'numerator') and hasattr(value, 'denominator'):
        if not value.denominator:
            return None
        return float(value.numerator) / float(value.denominator)
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _pick(payload: Dict[str, Any], aliases: Tuple[str, ...]) -> Any:
    for name in aliases:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def normalize_api_exif(payload: Dict[str, Any]) -> ApiExifFields:
    """
    Resolve field aliases in a provider EXIF payload.

    Args:
        payload: Raw dictionary returned by the provider.

    Returns:
        ApiExifFields with numeric fields coerced; unparseable values are None.
    """
    raw = {field: _pick(payload, aliases) for field, aliases in API_EXIF_ALIASES.items()}

    iso = _to_float(raw["iso"])
    make = raw["make"]
    model = raw["model"]

    return ApiExifFields(
        date=raw["date"],
        latitude=_to_float(raw["latitude"]),
        longitude=_to_float(raw["longitude"]),
        make=str(make).strip() if make else None,
        model=str(model).strip() if model else None,
        iso=int(iso) if iso is not None else None,
        f_number=_to_float(raw["f_number"]),
        exposure_time=_to_float(raw["exposure_time"]),
        focal_length=_to_float(raw["focal_length"]),
    )


def parse_capture_date(value: Any) -> Optional[datetime]:
    """
    Parse a capture date in any of the forms providers and files use.

    Accepts EXIF "YYYY:MM:DD HH:MM:SS" strings, ISO 8601 strings and
    numeric epoch timestamps (seconds or milliseconds). Naive values are
    taken as UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            return None
        seconds = value / 1000.0 if value > MS_TIMESTAMP_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip().rstrip('\x00')
    if not text:
        return None

    if text.isdigit():
        return parse_capture_date(int(text))

    parsed = None
    try:
        parsed = datetime.strptime(text[:19], EXIF_DATE_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_iso_utc(value: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with milliseconds and a Z suffix."""
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def format_location(latitude: float, longitude: float) -> str:
    return f"{latitude:.6f}, {longitude:.6f}"


def format_aperture(f_number: float) -> str:
    return f"f/{f_number:.1f}"


def format_shutter_speed(exposure_time: float) -> str:
    if exposure_time < 1:
        return f"1/{round(1 / exposure_time)}s"
    return f"{exposure_time:.1f}s"


def format_focal_length(focal_length: float) -> str:
    return f"{focal_length:.0f}mm"


def _build_metadata(
    date: Any,
    latitude: Optional[float],
    longitude: Optional[float],
    make: Optional[str],
    model: Optional[str],
    iso: Optional[int],
    f_number: Optional[float],
    exposure_time: Optional[float],
    focal_length: Optional[float]
) -> PhotoMetadata:
    metadata = PhotoMetadata()

    captured = parse_capture_date(date)
    if captured is not None:
        metadata.capture_date = format_iso_utc(captured)
        metadata.capture_timestamp = int(captured.timestamp() * 1000)

    if latitude is not None and longitude is not None:
        metadata.latitude = latitude
        metadata.longitude = longitude
        metadata.location = format_location(latitude, longitude)

    camera = " ".join(part for part in (make, model) if part).strip()
    if camera:
        metadata.camera = camera

    if iso:
        metadata.iso = iso
    if f_number:
        metadata.aperture = format_aperture(f_number)
    if exposure_time and exposure_time > 0:
        metadata.shutter_speed = format_shutter_speed(exposure_time)
    if focal_length:
        metadata.focal_length = format_focal_length(focal_length)

    return metadata


class MetadataExtractor:
    """
    Extracts capture metadata for a photo.

    The provider's EXIF endpoint is tried first since it needs no download;
    the image file is read with Pillow when the API has nothing useful.
    """

    EXIF_DATE_FORMAT = EXIF_DATE_FORMAT

    # EXIF tags we're interested in, in order of preference
    DATE_TAGS = [
        "DateTimeOriginal",     # When photo was taken
        "DateTimeDigitized",    # When photo was digitized
        "DateTime",             # File modification time
    ]

    def __init__(self, provider: Optional[PhotoProvider] = None, logger: Optional[ComponentLogger] = None):
        self.provider = provider
        self._logger = logger or get_component_logger(__name__, "MetadataExtractor")

    def extract(
        self,
        photo_id: Optional[int] = None,
        space_id: Optional[int] = None,
        path: Optional[str] = None
    ) -> Optional[PhotoMetadata]:
        """
        Extract metadata, API first, then the local file.

        Args:
            photo_id: Provider unit id, enables the API lookup.
            space_id: Provider space id.
            path: Local path of the image file.

        Returns:
            PhotoMetadata with a capture date or GPS position, or None.
        """
        if photo_id is not None:
            metadata = self.extract_from_api(photo_id, space_id)
            if metadata is not None:
                return metadata

        if path:
            return self.extract_from_file(path)

        return None

    def extract_from_api(self, photo_id: int, space_id: Optional[int] = None) -> Optional[PhotoMetadata]:
        """Extract metadata from the provider's EXIF endpoint."""
        if self.provider is None:
            self._logger.debug("No provider available for API-based EXIF extraction")
            return None

        try:
            payload = self.provider.get_exif_metadata(photo_id, space_id)
        except Exception as e:
            self._logger.warning(f"Failed to extract EXIF metadata from API for photo {photo_id}: {e}")
            return None

        if not payload:
            self._logger.debug(f"No EXIF data returned from API for photo {photo_id}")
            return None

        fields = normalize_api_exif(payload)
        metadata = _build_metadata(
            fields.date, fields.latitude, fields.longitude, fields.make, fields.model,
            fields.iso, fields.f_number, fields.exposure_time, fields.focal_length,
        )

        if metadata.has_useful_data():
            self._logger.debug(f"Extracted EXIF metadata from API for photo {photo_id}: {metadata.to_dict()}")
            return metadata

        self._logger.debug(f"No useful EXIF data extracted from API for photo {photo_id}")
        return None

    def extract_from_file(self, image_path: str) -> Optional[PhotoMetadata]:
        """
        Extract metadata from an image file.

        Args:
            image_path: Path to the image file.

        Returns:
            PhotoMetadata with a capture date or GPS position, or None.
        """
        if not os.path.exists(image_path):
            self._logger.debug(f"Image file not found for EXIF extraction: {image_path}")
            return None

        try:
            with Image.open(image_path) as img:
                exif_data = self._get_exif_data(img)
        except Exception as e:
            self._logger.warning(f"Failed to extract EXIF metadata from {image_path}: {e}")
            return None

        if not exif_data:
            self._logger.debug(f"No EXIF data in {os.path.basename(image_path)}")
            return None

        latitude, longitude = self._extract_gps(exif_data.get("GPSInfo") or {})
        iso = _to_float(self._first_value(exif_data.get("ISOSpeedRatings")))

        metadata = _build_metadata(
            self._extract_date(exif_data),
            latitude,
            longitude,
            self._clean_text(exif_data.get("Make")),
            self._clean_text(exif_data.get("Model")),
            int(iso) if iso is not None else None,
            _to_float(exif_data.get("FNumber")),
            _to_float(exif_data.get("ExposureTime")),
            _to_float(exif_data.get("FocalLength")),
        )

        if metadata.has_useful_data():
            self._logger.debug(
                f"Extracted EXIF metadata from {os.path.basename(image_path)}: {metadata.to_dict()}"
            )
            return metadata

        self._logger.debug(f"No useful EXIF data extracted from {os.path.basename(image_path)}")
        return None

    def _get_exif_data(self, img: Image.Image) -> dict:
        """
        Extract EXIF data as a dictionary with readable tag names.

        Tags from the Exif sub-IFD are merged in; GPS tags are kept under
        "GPSInfo" keyed by GPS tag name.
        """
        exif_data = {}

        try:
            exif = img.getexif()
            if not exif:
                return exif_data

            for tag_id, value in exif.items():
                exif_data[TAGS.get(tag_id, tag_id)] = value

            for tag_id, value in exif.get_ifd(EXIF_IFD).items():
                exif_data[TAGS.get(tag_id, tag_id)] = value

            gps_ifd = exif.get_ifd(GPS_IFD)
            if gps_ifd:
                exif_data["GPSInfo"] = {GPSTAGS.get(tag_id, tag_id): value for tag_id, value in gps_ifd.items()}
        except Exception as e:
            self._logger.debug(f"Error reading EXIF: {e}")

        return exif_data

    def _extract_date(self, exif_data: dict) -> Optional[datetime]:
        """
        Extract the date the photo was taken from EXIF data.

        Returns:
            Timezone-aware datetime or None if not found.
        """
        for tag in self.DATE_TAGS:
            value = exif_data.get(tag)
            if value:
                parsed = parse_capture_date(value)
                if parsed is not None:
                    return parsed
                self._logger.debug(f"Failed to parse date '{value}'")
        return None

    def _extract_gps(self, gps_data: dict) -> Tuple[Optional[float], Optional[float]]:
        """
        Extract GPS coordinates from decoded EXIF GPS tags.

        Returns:
            Tuple of (latitude, longitude) or (None, None).
        """
        try:
            lat = gps_data.get("GPSLatitude")
            lat_ref = gps_data.get("GPSLatitudeRef")
            lon = gps_data.get("GPSLongitude")
            lon_ref = gps_data.get("GPSLongitudeRef")

            if lat and lon:
                latitude = self._convert_gps_coordinate(lat)
                longitude = self._convert_gps_coordinate(lon)

                if isinstance(lat_ref, bytes):
                    lat_ref = lat_ref.decode('ascii', errors='ignore')
                if isinstance(lon_ref, bytes):
                    lon_ref = lon_ref.decode('ascii', errors='ignore')

                if lat_ref == "S":
                    latitude = -latitude
                if lon_ref == "W":
                    longitude = -longitude

                return latitude, longitude

        except Exception as e:
            self._logger.debug(f"Error extracting GPS: {e}")

        return None, None

    def _convert_gps_coordinate(self, coord) -> float:
        """Convert a (degrees, minutes, seconds) GPS coordinate to decimal degrees."""
        degrees = _to_float(coord[0]) or 0.0
        minutes = _to_float(coord[1]) or 0.0
        seconds = _to_float(coord[2]) or 0.0

        return degrees + (minutes / 60.0) + (seconds / 3600.0)

    @staticmethod
    def _first_value(value: Any) -> Any:
        if isinstance(value, (tuple, list)):
            return value[0] if value else None
        return value

    @staticmethod
    def _clean_text(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode('utf-8', errors='ignore')
        text = str(value).strip().rstrip('\x00').strip()
        return text or None
