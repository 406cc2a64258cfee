"""Top-level package for the location resolver."""

from .engine import MatchingEngine
from .errors import (
    GeocodingUnavailable,
    InvalidSelectionPath,
    InvalidTransition,
    LocationError,
    NoGpsData,
    ReferenceDataUnavailable,
)
from .matching import AddressMatcher, MatchResult, match_address
from .models import (
    CandidateSource,
    ConfidenceLevel,
    Coordinates,
    LocationCandidate,
    SelectionState,
)
from .reconciler import LocationReconciler, ResolutionStatus, ResolvedLocation
from .reference import (
    AdministrativeNode,
    CachedReferenceStore,
    InMemoryReferenceStore,
    ReferenceCatalog,
)
from .selection import CascadingSelectionController, reduce_selection

__all__ = [
    "AddressMatcher",
    "AdministrativeNode",
    "CachedReferenceStore",
    "CandidateSource",
    "CascadingSelectionController",
    "ConfidenceLevel",
    "Coordinates",
    "GeocodingUnavailable",
    "InMemoryReferenceStore",
    "InvalidSelectionPath",
    "InvalidTransition",
    "LocationCandidate",
    "LocationError",
    "LocationReconciler",
    "MatchResult",
    "MatchingEngine",
    "NoGpsData",
    "ReferenceCatalog",
    "ReferenceDataUnavailable",
    "ResolutionStatus",
    "ResolvedLocation",
    "SelectionState",
    "match_address",
    "reduce_selection",
]
