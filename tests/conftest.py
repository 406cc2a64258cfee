from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from location_resolver.errors import GeocodingUnavailable, ReferenceDataUnavailable
from location_resolver.models import Coordinates
from location_resolver.reference import InMemoryReferenceStore

SAMPLE_CSV = """\
province_code,province_name,city_code,city_name,district_code,district_name,subdistrict_code,subdistrict_name
31,DKI Jakarta,31.71,Kota Jakarta Pusat,31.71.06,Menteng,31.71.06.1001,Menteng
31,DKI Jakarta,31.71,Kota Jakarta Pusat,31.71.06,Menteng,31.71.06.1002,Pegangsaan
31,DKI Jakarta,31.71,Kota Jakarta Pusat,31.71.01,Gambir,31.71.01.1001,Gambir
31,DKI Jakarta,31.74,Kota Jakarta Selatan,31.74.07,Kebayoran Baru,31.74.07.1001,Senayan
35,Jawa Timur,35.78,Kota Surabaya,35.78.05,Genteng,35.78.05.1001,Embong Kaliasin
35,Jawa Timur,35.78,Kota Surabaya,35.78.06,Tegalsari,35.78.06.1001,Keputran
35,Jawa Timur,35.77,Kota Madiun,35.77.03,Taman,35.77.03.1001,Josenan
35,Jawa Timur,35.07,Kabupaten Malang,35.07.22,Singosari,35.07.22.2001,Ardimulyo
32,Jawa Barat,32.73,Kota Bandung,32.73.06,Coblong,32.73.06.1001,Dago
32,Jawa Barat,32.01,Kabupaten Bogor,32.01.01,Cibinong,32.01.01.1001,Pakansari
17,Bengkulu,17.71,Kota Bengkulu,17.71.01,Ratu Agung,17.71.01.1001,Kebun Tebeng
"""

SURABAYA_COORDS = Coordinates(-7.257472, 112.752088)
SURABAYA_ADDRESS = "Jl. Tunjungan, Genteng, Surabaya, Jawa Timur"

MENTENG_COORDS = Coordinates(-6.195, 106.8317)
MENTENG_ADDRESS = "Jalan Sudirman, Menteng, Jakarta Pusat, DKI Jakarta"


@pytest.fixture()
def sample_csv(tmp_path: Path) -> Path:
    path = tmp_path / "locations.csv"
    path.write_text(SAMPLE_CSV, encoding="utf-8")
    return path


@pytest.fixture()
def store(sample_csv: Path) -> InMemoryReferenceStore:
    return InMemoryReferenceStore.from_csv(sample_csv)


@pytest.fixture()
def gateway() -> "FakeGateway":
    return FakeGateway(
        reverse={
            SURABAYA_COORDS.as_tuple(): SURABAYA_ADDRESS,
            MENTENG_COORDS.as_tuple(): MENTENG_ADDRESS,
        },
        forward={
            SURABAYA_ADDRESS: SURABAYA_COORDS,
            MENTENG_ADDRESS: MENTENG_COORDS,
        },
    )


class FakeGateway:
    """In-memory `GeocodingGateway`.

    Setting `reverse_gate` / `forward_gate` to an `asyncio.Event` holds the
    matching calls until the event is set.
    """

    def __init__(self, reverse=None, forward=None):
        self.reverse = dict(reverse or {})
        self.forward = dict(forward or {})
        self.calls: list[tuple[str, object]] = []
        self.reverse_gate: asyncio.Event | None = None
        self.forward_gate: asyncio.Event | None = None

    async def reverse_geocode(self, coordinates: Coordinates) -> str:
        self.calls.append(("reverse", coordinates))
        if self.reverse_gate is not None:
            await self.reverse_gate.wait()
        try:
            return self.reverse[coordinates.as_tuple()]
        except KeyError:
            raise GeocodingUnavailable("No address found", code="NOT_FOUND") from None

    async def forward_geocode(self, address_text: str) -> Coordinates:
        self.calls.append(("forward", address_text))
        if self.forward_gate is not None:
            await self.forward_gate.wait()
        try:
            return self.forward[address_text]
        except KeyError:
            raise GeocodingUnavailable("No geocoding result found", code="NOT_FOUND") from None


class GatedStore:
    """Wraps a store; child listings for gated parent codes wait on an event."""

    def __init__(self, inner: InMemoryReferenceStore, gates: dict[str, asyncio.Event]):
        self.inner = inner
        self.gates = gates

    async def list_provinces(self):
        return await self.inner.list_provinces()

    async def list_regencies(self, province_code: str):
        gate = self.gates.get(province_code)
        if gate is not None:
            await gate.wait()
        return await self.inner.list_regencies(province_code)

    async def list_districts(self, regency_code: str):
        gate = self.gates.get(regency_code)
        if gate is not None:
            await gate.wait()
        return await self.inner.list_districts(regency_code)


class FailingStore:
    """Every listing fails, or only child listings with `children_only=True`."""

    def __init__(self, inner: InMemoryReferenceStore | None = None, *, children_only=False):
        self.inner = inner
        self.children_only = children_only
        self.calls = 0

    async def list_provinces(self):
        self.calls += 1
        if self.children_only and self.inner is not None:
            return await self.inner.list_provinces()
        raise ReferenceDataUnavailable("reference backend down")

    async def list_regencies(self, province_code: str):
        self.calls += 1
        raise ReferenceDataUnavailable("reference backend down")

    async def list_districts(self, regency_code: str):
        self.calls += 1
        raise ReferenceDataUnavailable("reference backend down")


class FakeExif:
    def __init__(self, coordinates: Coordinates | None):
        self.coordinates = coordinates

    async def extract(self, photo):
        return self.coordinates


class FakeLocator:
    def __init__(self, coordinates: Coordinates | None = None, error: Exception | None = None):
        self.coordinates = coordinates
        self.error = error

    async def get_current_position(self) -> Coordinates:
        if self.error is not None:
            raise self.error
        return self.coordinates


async def wait_until(predicate, *, rounds: int = 100) -> None:
    """Yield to the event loop until `predicate()` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
