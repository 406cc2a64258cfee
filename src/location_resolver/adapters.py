"""Collaborator interfaces consumed by the engine and the reconciler.

Concrete implementations live next to their dependency:
- `exif.PillowExifExtractor` (Pillow)
- `geocoding.NominatimGateway` (requests)
- `reference.InMemoryReferenceStore` / `reference.CachedReferenceStore`

Device geolocation has no server-side implementation; callers pass their own
`DeviceLocator` (a browser bridge, a fixed position in tests, ...).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .models import Coordinates, SelectionState

if TYPE_CHECKING:
    from .reference import AdministrativeNode


class ExifExtractor(Protocol):
    async def extract(self, photo: Any) -> Coordinates | None:
        """Return GPS coordinates embedded in `photo`, or None."""
        ...


class DeviceLocator(Protocol):
    async def get_current_position(self) -> Coordinates:
        """Return the device position. Raise on permission/timeout errors."""
        ...


class GeocodingGateway(Protocol):
    async def reverse_geocode(self, coordinates: Coordinates) -> str:
        """Return a formatted address. Raise `GeocodingUnavailable` on failure."""
        ...

    async def forward_geocode(self, address_text: str) -> Coordinates:
        """Return coordinates for an address. Raise `GeocodingUnavailable` on failure."""
        ...


class ReferenceStore(Protocol):
    async def list_provinces(self) -> list["AdministrativeNode"]: ...

    async def list_regencies(self, province_code: str) -> list["AdministrativeNode"]: ...

    async def list_districts(self, regency_code: str) -> list["AdministrativeNode"]: ...


@runtime_checkable
class BoundaryLocator(Protocol):
    """Optional store capability: map coordinates straight to a boundary path."""

    async def locate(self, coordinates: Coordinates) -> SelectionState | None: ...
