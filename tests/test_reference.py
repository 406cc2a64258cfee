from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from location_resolver.codes import DISTRICT, PROVINCE, REGENCY
from location_resolver.errors import ReferenceDataUnavailable
from location_resolver.reference import (
    AdministrativeNode,
    CachedReferenceStore,
    InMemoryReferenceStore,
    ReferenceCatalog,
)

from conftest import FailingStore


def test_from_csv_dedups_and_canonicalizes_codes(store) -> None:
    provinces = asyncio.run(store.list_provinces())
    assert [p.code for p in provinces] == ["17", "31", "32", "35"]

    regencies = asyncio.run(store.list_regencies("31"))
    assert [(r.code, r.name) for r in regencies] == [
        ("3171", "Kota Jakarta Pusat"),
        ("3174", "Kota Jakarta Selatan"),
    ]

    # Two kelurahan rows for Menteng collapse into one district.
    districts = asyncio.run(store.list_districts("3171"))
    assert [d.code for d in districts] == ["317101", "317106"]
    assert all(d.parent_code == "3171" for d in districts)


def test_unknown_parent_returns_empty_list(store) -> None:
    assert asyncio.run(store.list_regencies("99")) == []


def test_get_single_node(store) -> None:
    node = store.get(DISTRICT, "357805")
    assert node == AdministrativeNode(DISTRICT, "357805", "Genteng", "3578")
    assert store.get(REGENCY, "9999") is None


def test_missing_columns_raise(tmp_path: Path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text("province_code,province_name\n35,Jawa Timur\n", encoding="utf-8")

    with pytest.raises(ValueError, match="missing required columns"):
        InMemoryReferenceStore.from_csv(path)


def test_invalid_code_reports_line_number(tmp_path: Path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text(
        "province_code,province_name,city_code,city_name,district_code,district_name\n"
        "35,Jawa Timur,3578,Kota Surabaya,357805,Genteng\n"
        "35,Jawa Timur,35.00,Kota Salah,35.00.01,Salah\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match=r":3: invalid regency"):
        InMemoryReferenceStore.from_csv(path)


def test_node_validation() -> None:
    with pytest.raises(ValueError):
        AdministrativeNode(PROVINCE, "35", "Jawa Timur", parent_code="35")
    with pytest.raises(ValueError):
        AdministrativeNode(REGENCY, "3578", "Kota Surabaya")
    with pytest.raises(ValueError):
        AdministrativeNode("village", "3578051001", "Embong Kaliasin", "357805")


def test_store_rejects_orphans() -> None:
    with pytest.raises(ValueError, match="unknown province"):
        InMemoryReferenceStore([AdministrativeNode(REGENCY, "3578", "Kota Surabaya", "35")])


class _CountingStore:
    def __init__(self, inner, fail_first: int = 0):
        self.inner = inner
        self.fail_first = fail_first
        self.calls = 0

    async def list_provinces(self):
        self.calls += 1
        if self.calls <= self.fail_first:
            raise ReferenceDataUnavailable("temporarily down")
        return await self.inner.list_provinces()

    async def list_regencies(self, province_code):
        self.calls += 1
        return await self.inner.list_regencies(province_code)

    async def list_districts(self, regency_code):
        self.calls += 1
        return await self.inner.list_districts(regency_code)


def test_cached_store_caches_successes_only(store) -> None:
    counting = _CountingStore(store, fail_first=1)
    cached = CachedReferenceStore(counting)

    async def scenario():
        with pytest.raises(ReferenceDataUnavailable):
            await cached.list_provinces()
        first = await cached.list_provinces()
        second = await cached.list_provinces()
        await asyncio.gather(cached.list_regencies("35"), cached.list_regencies("35"))
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    # One failure, one success, one shared regency fetch.
    assert counting.calls == 3


def test_catalog_load(store) -> None:
    catalog = asyncio.run(ReferenceCatalog.load(store))

    assert [p.code for p in catalog.provinces] == ["17", "31", "32", "35"]
    assert [r.code for r in catalog.regencies_for("35")] == ["3507", "3577", "3578"]
    assert len(catalog.regencies_for(None)) == 8
    assert [d.code for d in catalog.districts_for("3578")] == ["357805", "357806"]


def test_catalog_load_failure_is_reference_unavailable() -> None:
    with pytest.raises(ReferenceDataUnavailable):
        asyncio.run(ReferenceCatalog.load(FailingStore()))


def test_cached_store_invalidate(store) -> None:
    counting = _CountingStore(store)
    cached = CachedReferenceStore(counting)

    async def scenario():
        await cached.list_districts("3578")
        cached.invalidate()
        await cached.list_districts("3578")

    asyncio.run(scenario())
    assert counting.calls == 2
