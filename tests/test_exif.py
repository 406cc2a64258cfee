from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from PIL import Image

from location_resolver.exif import (
    GPS_IFD_TAG,
    PillowExifExtractor,
    coordinates_from_gps_info,
    dms_to_decimal,
)
from location_resolver.models import Coordinates


def test_dms_to_decimal() -> None:
    assert dms_to_decimal((7, 15, 27), "S") == pytest.approx(-7.2575)
    assert dms_to_decimal((112, 45, 7.5), b"E") == pytest.approx(112.752083, abs=1e-6)
    assert dms_to_decimal((106, 49, 54.12), "W") == pytest.approx(-106.83170, abs=1e-5)
    assert dms_to_decimal(None, "N") is None
    assert dms_to_decimal((1, 2), "N") is None


def test_coordinates_from_numeric_gps_keys() -> None:
    # 1/2 = lat ref/value, 3/4 = lon ref/value
    coords = coordinates_from_gps_info(
        {1: "S", 2: (7.0, 15.0, 27.0), 3: "E", 4: (112.0, 45.0, 7.5)}
    )
    assert isinstance(coords, Coordinates)
    assert coords.latitude == pytest.approx(-7.2575)
    assert coords.longitude == pytest.approx(112.752083, abs=1e-6)


def test_coordinates_from_named_gps_keys() -> None:
    coords = coordinates_from_gps_info(
        {
            "GPSLatitudeRef": "S",
            "GPSLatitude": (6, 11, 42),
            "GPSLongitudeRef": "E",
            "GPSLongitude": (106, 49, 54),
        }
    )
    assert coords is not None
    assert coords.latitude == pytest.approx(-6.195)


def test_out_of_range_gps_is_ignored() -> None:
    assert coordinates_from_gps_info({1: "N", 2: (95, 0, 0), 3: "E", 4: (10, 0, 0)}) is None


def test_incomplete_gps_is_ignored() -> None:
    assert coordinates_from_gps_info({1: "S", 2: (7, 15, 27)}) is None


def test_extract_from_jpeg_with_gps(tmp_path: Path) -> None:
    path = tmp_path / "road.jpg"
    image = Image.new("RGB", (8, 8), "gray")
    exif = image.getexif()
    exif[GPS_IFD_TAG] = {1: "S", 2: (7.0, 15.0, 27.0), 3: "E", 4: (112.0, 45.0, 7.5)}
    image.save(path, exif=exif)

    coords = asyncio.run(PillowExifExtractor().extract(path))

    assert coords is not None
    assert coords.latitude == pytest.approx(-7.2575, abs=1e-4)
    assert coords.longitude == pytest.approx(112.752083, abs=1e-4)


def test_extract_without_exif(tmp_path: Path) -> None:
    path = tmp_path / "plain.jpg"
    Image.new("RGB", (8, 8)).save(path)

    assert PillowExifExtractor().extract_sync(path) is None


def test_unreadable_file_is_treated_as_no_gps(tmp_path: Path) -> None:
    path = tmp_path / "not-an-image.jpg"
    path.write_bytes(b"definitely not a jpeg")

    assert PillowExifExtractor().extract_sync(path) is None
    assert PillowExifExtractor().extract_sync(tmp_path / "missing.jpg") is None
