"""Core value types shared by the matcher, the selection controller and the
reconciler."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class CandidateSource(str, Enum):
    """Where a location candidate came from."""

    EXIF = "exif"
    DEVICE = "device"
    MANUAL_ADDRESS = "manual-address"
    GEOCODE_REVERSE = "geocode-reverse"
    GEOCODE_FORWARD = "geocode-forward"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class Coordinates:
    """A WGS84 latitude/longitude pair."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not is_valid_coordinates(self.latitude, self.longitude):
            raise ValueError(
                f"Coordinates out of range: ({self.latitude!r}, {self.longitude!r})"
            )

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


def is_valid_coordinates(latitude: object, longitude: object) -> bool:
    """Return True if both values are finite numbers within Earth bounds."""
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return False
    if not isinstance(latitude, (int, float)) or not isinstance(
        longitude, (int, float)
    ):
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LocationCandidate:
    """A provisional location reading from one source.

    `generation` is assigned by the reconciler when the candidate is accepted
    (or, for derived geocode candidates, copied from the request that
    produced them). Adapters may leave it at 0.
    """

    source: CandidateSource
    coordinates: Coordinates | None = None
    address_text: str | None = None
    captured_at: datetime = field(default_factory=_utcnow)
    generation: int = 0

    def __post_init__(self) -> None:
        text = self.address_text.strip() if self.address_text else None
        object.__setattr__(self, "address_text", text or None)
        if self.coordinates is None and self.address_text is None:
            raise ValueError(
                "LocationCandidate needs coordinates or address_text (got neither)"
            )


@dataclass(frozen=True)
class SelectionState:
    """Codes currently chosen in the three-level selector.

    Structural invariant (a set child implies a set parent) is checked here.
    Parentage against reference data is enforced by the selection controller.
    """

    province_code: str | None = None
    regency_code: str | None = None
    district_code: str | None = None

    def __post_init__(self) -> None:
        if self.district_code and not self.regency_code:
            raise ValueError("district_code requires regency_code")
        if self.regency_code and not self.province_code:
            raise ValueError("regency_code requires province_code")

    @property
    def is_empty(self) -> bool:
        return not (self.province_code or self.regency_code or self.district_code)

    @property
    def depth(self) -> int:
        """Number of levels set (0..3)."""
        if self.district_code:
            return 3
        if self.regency_code:
            return 2
        if self.province_code:
            return 1
        return 0

    def to_dict(self) -> dict[str, str | None]:
        return {
            "province_code": self.province_code,
            "regency_code": self.regency_code,
            "district_code": self.district_code,
        }
