"""Administrative reference data (provinces, regencies, districts).

This module loads a Kemendagri-like CSV and exposes it through the async
`ReferenceStore` interface consumed by the matcher and the selection
controller.

Key design choice
-----------------
The raw CSV is usually *row-based* (one row per district or even per
kelurahan), which means province/regency values repeat many times.

We *deduplicate* nodes by their codes:
- province unique by `province_code`
- regency unique by `city_code`
- district unique by `district_code`

Reference data is read-only. A single store (optionally wrapped in
`CachedReferenceStore`) can be shared by every report draft.
"""

from __future__ import annotations

import asyncio
import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from .adapters import ReferenceStore
from .codes import DISTRICT, PROVINCE, REGENCY, canonical_code, is_valid_code
from .errors import ReferenceDataUnavailable

logger = logging.getLogger(__name__)

_PARENT_LEVEL = {REGENCY: PROVINCE, DISTRICT: REGENCY}


@dataclass(frozen=True)
class AdministrativeNode:
    """A unique administrative node.

    `parent_code` is None for provinces and required for regencies/districts.
    """

    level: str  # province|regency|district
    code: str
    name: str
    parent_code: str | None = None

    def __post_init__(self) -> None:
        if self.level == PROVINCE:
            if self.parent_code is not None:
                raise ValueError(f"Province {self.code!r} cannot have a parent")
        elif self.level in _PARENT_LEVEL:
            if not self.parent_code:
                raise ValueError(f"{self.level} {self.code!r} requires parent_code")
        else:
            raise ValueError(f"Unknown administrative level: {self.level!r}")


class InMemoryReferenceStore:
    """Holds all loaded nodes and answers listing queries from memory."""

    def __init__(self, nodes: Iterable[AdministrativeNode]):
        self._by_level: dict[str, dict[str, AdministrativeNode]] = {
            PROVINCE: {},
            REGENCY: {},
            DISTRICT: {},
        }
        # parent_code -> child nodes, per child level.
        self._children: dict[str, dict[str, list[AdministrativeNode]]] = {
            REGENCY: {},
            DISTRICT: {},
        }

        for node in nodes:
            self._by_level[node.level].setdefault(node.code, node)

        for level, parent_level in _PARENT_LEVEL.items():
            for node in self._by_level[level].values():
                if node.parent_code not in self._by_level[parent_level]:
                    raise ValueError(
                        f"{level} {node.code!r} references unknown "
                        f"{parent_level} {node.parent_code!r}"
                    )
                self._children[level].setdefault(node.parent_code, []).append(node)

    @classmethod
    def from_csv(cls, csv_path: str | Path) -> "InMemoryReferenceStore":
        """Load a Kemendagri-like CSV into a store.

        Required columns: province_code, province_name, city_code, city_name,
        district_code, district_name. Extra columns (e.g. subdistrict_*,
        postal_code) are ignored. Dotted codes ("35.78.05") are accepted.

        Args:
            csv_path: Path to the CSV.

        Returns:
            InMemoryReferenceStore instance.
        """
        csv_path = Path(csv_path)

        provinces: dict[str, AdministrativeNode] = {}
        regencies: dict[str, AdministrativeNode] = {}
        districts: dict[str, AdministrativeNode] = {}

        with csv_path.open("r", encoding="utf-8") as f:
            reader = csv.DictReader(f)

            required_cols = {
                "province_name",
                "province_code",
                "city_name",
                "city_code",
                "district_name",
                "district_code",
            }
            missing = required_cols.difference(reader.fieldnames or [])
            if missing:
                raise ValueError(
                    f"CSV missing required columns: {sorted(missing)} (found={reader.fieldnames})"
                )

            # Line 1 is the header.
            for line_no, row in enumerate(reader, start=2):
                province_code = canonical_code(row["province_code"])
                regency_code = canonical_code(row["city_code"])
                district_code = canonical_code(row["district_code"])

                for level, code in (
                    (PROVINCE, province_code),
                    (REGENCY, regency_code),
                    (DISTRICT, district_code),
                ):
                    if not is_valid_code(level, code):
                        raise ValueError(
                            f"{csv_path}:{line_no}: invalid {level} code {code!r}"
                        )

                provinces.setdefault(
                    province_code,
                    AdministrativeNode(
                        level=PROVINCE,
                        code=province_code,
                        name=row["province_name"].strip(),
                    ),
                )
                regencies.setdefault(
                    regency_code,
                    AdministrativeNode(
                        level=REGENCY,
                        code=regency_code,
                        name=row["city_name"].strip(),
                        parent_code=province_code,
                    ),
                )
                districts.setdefault(
                    district_code,
                    AdministrativeNode(
                        level=DISTRICT,
                        code=district_code,
                        name=row["district_name"].strip(),
                        parent_code=regency_code,
                    ),
                )

        logger.info(
            "Loaded %d provinces, %d regencies, %d districts from %s",
            len(provinces),
            len(regencies),
            len(districts),
            csv_path,
        )
        return cls([*provinces.values(), *regencies.values(), *districts.values()])

    async def list_provinces(self) -> list[AdministrativeNode]:
        return _sorted(self._by_level[PROVINCE].values())

    async def list_regencies(self, province_code: str) -> list[AdministrativeNode]:
        return _sorted(self._children[REGENCY].get(province_code, []))

    async def list_districts(self, regency_code: str) -> list[AdministrativeNode]:
        return _sorted(self._children[DISTRICT].get(regency_code, []))

    def get(self, level: str, code: str) -> AdministrativeNode | None:
        """Synchronous lookup of a single node."""
        return self._by_level.get(level, {}).get(code)


class CachedReferenceStore:
    """Caches successful listings of another store.

    Failures are not cached, so a later call retries the inner store.
    Concurrent first requests for the same key share one inner call.
    """

    def __init__(self, inner: ReferenceStore):
        self._inner = inner
        self._cache: dict[tuple[str, str], list[AdministrativeNode]] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    async def list_provinces(self) -> list[AdministrativeNode]:
        return await self._cached((PROVINCE, ""), self._inner.list_provinces)

    async def list_regencies(self, province_code: str) -> list[AdministrativeNode]:
        return await self._cached(
            (REGENCY, province_code), lambda: self._inner.list_regencies(province_code)
        )

    async def list_districts(self, regency_code: str) -> list[AdministrativeNode]:
        return await self._cached(
            (DISTRICT, regency_code), lambda: self._inner.list_districts(regency_code)
        )

    def invalidate(self) -> None:
        self._cache.clear()

    async def _cached(self, key, fetch) -> list[AdministrativeNode]:
        if key in self._cache:
            return list(self._cache[key])

        pending = self._inflight.get(key)
        if pending is not None:
            return list(await asyncio.shield(pending))

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            nodes = list(await fetch())
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure does not log a warning.
            future.exception()
            raise
        else:
            self._cache[key] = nodes
            future.set_result(nodes)
            return list(nodes)
        finally:
            self._inflight.pop(key, None)


@dataclass(frozen=True)
class ReferenceCatalog:
    """Immutable snapshot of the whole hierarchy, used by the pure matcher."""

    provinces: tuple[AdministrativeNode, ...]
    regencies_by_province: Mapping[str, tuple[AdministrativeNode, ...]] = field(
        default_factory=dict
    )
    districts_by_regency: Mapping[str, tuple[AdministrativeNode, ...]] = field(
        default_factory=dict
    )

    @classmethod
    def from_nodes(cls, nodes: Iterable[AdministrativeNode]) -> "ReferenceCatalog":
        provinces: list[AdministrativeNode] = []
        regencies: dict[str, list[AdministrativeNode]] = {}
        districts: dict[str, list[AdministrativeNode]] = {}
        for node in nodes:
            if node.level == PROVINCE:
                provinces.append(node)
            elif node.level == REGENCY:
                regencies.setdefault(node.parent_code, []).append(node)
            else:
                districts.setdefault(node.parent_code, []).append(node)
        return cls(
            provinces=tuple(_sorted(provinces)),
            regencies_by_province={k: tuple(_sorted(v)) for k, v in regencies.items()},
            districts_by_regency={k: tuple(_sorted(v)) for k, v in districts.items()},
        )

    @classmethod
    async def load(cls, store: ReferenceStore) -> "ReferenceCatalog":
        """Fetch every level from `store`.

        Raises:
            ReferenceDataUnavailable: if any listing fails.
        """
        try:
            provinces = list(await store.list_provinces())
            regency_lists = await asyncio.gather(
                *(store.list_regencies(p.code) for p in provinces)
            )
            regencies = [r for rs in regency_lists for r in rs]
            district_lists = await asyncio.gather(
                *(store.list_districts(r.code) for r in regencies)
            )
        except ReferenceDataUnavailable:
            raise
        except Exception as e:
            raise ReferenceDataUnavailable(
                f"Failed to load administrative reference data: {e}"
            ) from e

        districts = [d for ds in district_lists for d in ds]
        return cls.from_nodes([*provinces, *regencies, *districts])

    def regencies_for(self, province_code: str | None) -> tuple[AdministrativeNode, ...]:
        """Children of a province, or every regency when no province is given."""
        if province_code:
            return self.regencies_by_province.get(province_code, ())
        return tuple(r for rs in self.regencies_by_province.values() for r in rs)

    def districts_for(self, regency_code: str | None) -> tuple[AdministrativeNode, ...]:
        if regency_code:
            return self.districts_by_regency.get(regency_code, ())
        return tuple(d for ds in self.districts_by_regency.values() for d in ds)


def _sorted(nodes: Iterable[AdministrativeNode]) -> list[AdministrativeNode]:
    return sorted(nodes, key=lambda n: n.code)
