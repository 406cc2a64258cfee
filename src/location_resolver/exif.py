"""GPS extraction from photo EXIF metadata (Pillow)."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, BinaryIO

from PIL import Image, UnidentifiedImageError
from PIL.ExifTags import GPSTAGS

from .models import Coordinates, is_valid_coordinates

logger = logging.getLogger(__name__)

# EXIF pointer to the GPS IFD.
GPS_IFD_TAG = 0x8825


def dms_to_decimal(value: Any, ref: str | None) -> float | None:
    """Convert an EXIF (degrees, minutes, seconds) triple to signed decimal.

    Southern latitudes and western longitudes come out negative.
    """
    try:
        degrees, minutes, seconds = (float(v) for v in value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None

    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", errors="ignore")
    if ref and ref.strip().upper() in ("S", "W"):
        decimal = -decimal
    return decimal


def coordinates_from_gps_info(gps_info: dict[Any, Any]) -> Coordinates | None:
    """Build coordinates from a GPS IFD (numeric or named keys)."""
    named = {GPSTAGS.get(k, k): v for k, v in gps_info.items()}

    lat = dms_to_decimal(named.get("GPSLatitude"), named.get("GPSLatitudeRef"))
    lon = dms_to_decimal(named.get("GPSLongitude"), named.get("GPSLongitudeRef"))
    if lat is None or lon is None:
        return None
    if not is_valid_coordinates(lat, lon):
        logger.warning("Ignoring out-of-range EXIF GPS (%s, %s)", lat, lon)
        return None
    return Coordinates(lat, lon)


class PillowExifExtractor:
    """`ExifExtractor` that reads the GPS IFD with Pillow.

    `photo` may be a path or a binary file object. Unreadable images are
    treated the same as images without GPS.
    """

    async def extract(self, photo: str | Path | BinaryIO) -> Coordinates | None:
        return await asyncio.to_thread(self.extract_sync, photo)

    def extract_sync(self, photo: str | Path | BinaryIO) -> Coordinates | None:
        try:
            with Image.open(photo) as image:
                gps_info = image.getexif().get_ifd(GPS_IFD_TAG)
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("Could not read EXIF from %s: %s", photo, e)
            return None

        if not gps_info:
            return None
        return coordinates_from_gps_info(dict(gps_info))
