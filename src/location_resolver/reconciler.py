"""Reconciliation state machine for one report draft.

Location candidates arrive from several sources (photo EXIF, device
geolocation, typed address, coordinate edits). The reconciler decides which
candidate is active, geocodes it, matches it against the administrative
hierarchy and either auto-applies the result to the selection controller or
leaves the selection alone and asks for confirmation.

States::

    IDLE -> CANDIDATE_RECEIVED -> RESOLVING -> RESOLVED | CONFLICT | FAILED
                    ^                                       |
                    +---------------------------------------+

Out-of-order completions are handled with generations: every entry into
RESOLVING issues a new generation, and any result that comes back carrying
an older one is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .adapters import DeviceLocator, ExifExtractor
from .engine import MatchingEngine
from .errors import (
    GeocodingUnavailable,
    InvalidSelectionPath,
    InvalidTransition,
    NoGpsData,
)
from .matching import MatchResult
from .models import (
    CandidateSource,
    ConfidenceLevel,
    Coordinates,
    LocationCandidate,
    SelectionState,
)
from .selection import CascadingSelectionController

logger = logging.getLogger(__name__)


class ReconciliationState(str, Enum):
    IDLE = "idle"
    CANDIDATE_RECEIVED = "candidate_received"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    CONFLICT = "conflict"
    FAILED = "failed"


_S = ReconciliationState

# Legal moves. Every resolution state may re-enter CANDIDATE_RECEIVED.
# RESOLVED is only reachable from RESOLVING; clear_error() turns FAILED into
# CONFLICT.
ALLOWED: dict[ReconciliationState, frozenset[ReconciliationState]] = {
    _S.IDLE: frozenset({_S.CANDIDATE_RECEIVED, _S.FAILED}),
    _S.CANDIDATE_RECEIVED: frozenset({_S.RESOLVING, _S.FAILED}),
    _S.RESOLVING: frozenset({_S.RESOLVED, _S.CONFLICT, _S.FAILED, _S.CANDIDATE_RECEIVED}),
    _S.RESOLVED: frozenset({_S.CANDIDATE_RECEIVED, _S.FAILED}),
    _S.CONFLICT: frozenset({_S.CANDIDATE_RECEIVED, _S.FAILED}),
    _S.FAILED: frozenset({_S.CANDIDATE_RECEIVED, _S.CONFLICT, _S.FAILED}),
}

# Higher wins. Explicit user input beats photo ground truth beats derived data.
SOURCE_PRECEDENCE: dict[CandidateSource, int] = {
    CandidateSource.MANUAL_ADDRESS: 2,
    CandidateSource.DEVICE: 2,
    CandidateSource.EXIF: 1,
    CandidateSource.GEOCODE_REVERSE: 0,
    CandidateSource.GEOCODE_FORWARD: 0,
}

USER_SOURCES = frozenset({CandidateSource.MANUAL_ADDRESS, CandidateSource.DEVICE})

DEFAULT_GEOCODE_TIMEOUT = 5.0
DEFAULT_DEVICE_TIMEOUT = 10.0


def can_transition(current: ReconciliationState, target: ReconciliationState) -> bool:
    return target in ALLOWED.get(current, frozenset())


@dataclass
class ReconciliationRecord:
    """Mutable per-draft bookkeeping. Discarded by `reset()`."""

    active_candidate: LocationCandidate | None = None
    last_source: CandidateSource | None = None
    pending_generation: int = 0
    locked_by_user: bool = False
    resolved_coordinates: Coordinates | None = None
    resolved_address: str | None = None
    # generation -> candidates produced for it (driving candidate first).
    candidates: dict[int, list[LocationCandidate]] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolutionStatus:
    """Snapshot emitted to subscribers on every state change."""

    is_geocoding_from_coords: bool = False
    is_geocoding_from_address: bool = False
    last_geocoding_source: CandidateSource | None = None
    confidence_level: ConfidenceLevel | None = None
    can_auto_select: bool = False
    is_processing_admin_sync: bool = False
    state: ReconciliationState = ReconciliationState.IDLE
    error: str | None = None
    notice: str | None = None
    generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_geocoding_from_coords": self.is_geocoding_from_coords,
            "is_geocoding_from_address": self.is_geocoding_from_address,
            "last_geocoding_source": (
                self.last_geocoding_source.value if self.last_geocoding_source else None
            ),
            "confidence_level": (
                self.confidence_level.value if self.confidence_level else None
            ),
            "can_auto_select": self.can_auto_select,
            "is_processing_admin_sync": self.is_processing_admin_sync,
            "state": self.state.value,
            "error": self.error,
            "notice": self.notice,
            "generation": self.generation,
        }


@dataclass(frozen=True)
class ResolvedLocation:
    """What the form binds to its submitted fields."""

    coordinates: Coordinates | None
    address_text: str | None
    selection: SelectionState
    confidence: ConfidenceLevel

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.coordinates.latitude if self.coordinates else None,
            "longitude": self.coordinates.longitude if self.coordinates else None,
            "address_text": self.address_text,
            **self.selection.to_dict(),
            "confidence": self.confidence.value,
        }


StatusListener = Callable[[ResolutionStatus], None]


class LocationReconciler:
    """Arbitrates location candidates for one draft.

    Collaborator failures never escape: they end in FAILED with a retryable
    message. Only `InvalidSelectionPath` (caller bug) and `InvalidTransition`
    (internal bug) propagate.
    """

    def __init__(
        self,
        engine: MatchingEngine,
        selection: CascadingSelectionController,
        *,
        exif_extractor: ExifExtractor | None = None,
        device_locator: DeviceLocator | None = None,
        geocode_timeout: float = DEFAULT_GEOCODE_TIMEOUT,
        device_timeout: float = DEFAULT_DEVICE_TIMEOUT,
    ):
        if geocode_timeout <= 0:
            raise ValueError("geocode_timeout must be > 0")

        self.engine = engine
        self.selection = selection
        self.exif_extractor = exif_extractor
        self.device_locator = device_locator
        self.geocode_timeout = geocode_timeout
        self.device_timeout = device_timeout

        self.record = ReconciliationRecord()
        self.last_match: MatchResult | None = None
        self._state = ReconciliationState.IDLE
        self._generation = 0
        self._listeners: list[StatusListener] = []

        self._geocoding_from_coords = False
        self._geocoding_from_address = False
        self._last_geocoding_source: CandidateSource | None = None
        self._admin_sync = False
        self._error: str | None = None
        self._notice: str | None = None

    # Observable surface

    @property
    def state(self) -> ReconciliationState:
        return self._state

    @property
    def status(self) -> ResolutionStatus:
        match = self.last_match
        confidence = match.confidence if match else None
        can_auto_select = (
            self._state == ReconciliationState.RESOLVED
            and match is not None
            and match.can_auto_select
        )
        return ResolutionStatus(
            is_geocoding_from_coords=self._geocoding_from_coords,
            is_geocoding_from_address=self._geocoding_from_address,
            last_geocoding_source=self._last_geocoding_source,
            confidence_level=confidence,
            can_auto_select=can_auto_select,
            is_processing_admin_sync=self._admin_sync,
            state=self._state,
            error=self._error,
            notice=self._notice,
            generation=self.record.pending_generation,
        )

    @property
    def resolved(self) -> ResolvedLocation:
        return ResolvedLocation(
            coordinates=self.record.resolved_coordinates,
            address_text=self.record.resolved_address,
            selection=self.selection.state,
            confidence=(
                self.last_match.confidence if self.last_match else ConfidenceLevel.NONE
            ),
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Candidate entry points

    async def submit_candidate(self, candidate: LocationCandidate) -> bool:
        """Offer a candidate. Returns False if it was discarded."""
        record = self.record

        if record.locked_by_user and candidate.source not in USER_SOURCES:
            logger.debug("Discarding %s candidate: selection locked by user", candidate.source.value)
            return False

        active = record.active_candidate
        if active is not None and (
            SOURCE_PRECEDENCE[candidate.source] < SOURCE_PRECEDENCE[active.source]
        ):
            logger.debug(
                "Discarding %s candidate: active %s has higher precedence",
                candidate.source.value,
                active.source.value,
            )
            return False

        self._transition(ReconciliationState.CANDIDATE_RECEIVED)
        if candidate.source in USER_SOURCES:
            record.locked_by_user = True
        self._notice = None

        candidate = replace(candidate, generation=self._next_generation())
        record.active_candidate = candidate
        record.last_source = candidate.source
        record.candidates[candidate.generation] = [candidate]

        await self._resolve(candidate)
        return True

    async def ingest_photo(self, photo: Any, extractor: ExifExtractor | None = None) -> bool:
        """Read EXIF GPS from `photo` and submit it as an `exif` candidate.

        A photo without GPS only sets an informational notice.
        """
        extractor = extractor or self.exif_extractor
        if extractor is None:
            raise ValueError("No EXIF extractor configured")

        try:
            coordinates = await extractor.extract(photo)
            if coordinates is None:
                raise NoGpsData("Photo has no GPS data; enter the location manually")
        except NoGpsData as e:
            logger.info("%s", e)
            self._notice = str(e)
            self._emit()
            return False
        except (InvalidSelectionPath, InvalidTransition):
            raise
        except Exception as e:
            logger.warning("EXIF extraction failed: %r", e)
            self._adapter_failed(CandidateSource.EXIF, f"Could not read photo location: {e}")
            return False

        return await self.submit_candidate(
            LocationCandidate(source=CandidateSource.EXIF, coordinates=coordinates)
        )

    async def use_device_location(self, locator: DeviceLocator | None = None) -> bool:
        """Ask the device for its position and submit it as a `device` candidate."""
        locator = locator or self.device_locator
        if locator is None:
            raise ValueError("No device locator configured")

        try:
            coordinates = await asyncio.wait_for(
                locator.get_current_position(), self.device_timeout
            )
        except asyncio.TimeoutError:
            self._adapter_failed(
                CandidateSource.DEVICE,
                "Device location timed out; try again or enter it manually",
            )
            return False
        except (InvalidSelectionPath, InvalidTransition):
            raise
        except Exception as e:
            logger.warning("Device geolocation failed: %r", e)
            self._adapter_failed(CandidateSource.DEVICE, f"Device location unavailable: {e}")
            return False

        return await self.submit_candidate(
            LocationCandidate(source=CandidateSource.DEVICE, coordinates=coordinates)
        )

    async def edit_address(self, text: str) -> bool:
        """The user typed an address. Clearing the field only sets the lock."""
        if not text or not text.strip():
            self.note_user_edit("address")
            return False
        return await self.submit_candidate(
            LocationCandidate(source=CandidateSource.MANUAL_ADDRESS, address_text=text)
        )

    async def edit_coordinates(self, latitude: float, longitude: float) -> bool:
        """The user entered coordinates (ValueError when out of range)."""
        return await self.submit_candidate(
            LocationCandidate(
                source=CandidateSource.DEVICE,
                coordinates=Coordinates(latitude, longitude),
            )
        )

    def note_user_edit(self, field_name: str) -> None:
        """Any other form edit (category, description, ...) locks the selection."""
        if not self.record.locked_by_user:
            logger.debug("User edited %s; locking selection", field_name)
            self.record.locked_by_user = True
            self._emit()

    async def set_province(self, code: str | None) -> SelectionState:
        self.note_user_edit("province")
        return await self.selection.set_province(code)

    async def set_regency(self, code: str | None) -> SelectionState:
        self.note_user_edit("regency")
        return await self.selection.set_regency(code)

    async def set_district(self, code: str | None) -> SelectionState:
        self.note_user_edit("district")
        return await self.selection.set_district(code)

    async def retry(self) -> bool:
        """Resolve the active candidate again under a fresh generation."""
        active = self.record.active_candidate
        if active is None:
            return False
        self._transition(ReconciliationState.CANDIDATE_RECEIVED)
        candidate = replace(active, generation=self._next_generation())
        self.record.active_candidate = candidate
        self.record.candidates[candidate.generation] = [candidate]
        await self._resolve(candidate)
        return True

    def clear_error(self) -> None:
        self._error = None
        if self._state == ReconciliationState.FAILED:
            self._transition(ReconciliationState.CONFLICT)
        else:
            self._emit()

    async def reset(self) -> None:
        """Discard the draft's record and selection."""
        # Bumping the generation makes every in-flight result stale.
        self._next_generation()
        self.record = ReconciliationRecord(pending_generation=self._generation)
        self.last_match = None
        self._state = ReconciliationState.IDLE
        self._geocoding_from_coords = False
        self._geocoding_from_address = False
        self._last_geocoding_source = None
        self._admin_sync = False
        self._error = None
        self._notice = None
        await self.selection.clear()
        self._emit()

    # Resolution

    async def _resolve(self, candidate: LocationCandidate) -> None:
        record = self.record
        generation = candidate.generation
        record.pending_generation = generation
        self._error = None

        if candidate.address_text is not None:
            record.resolved_address = candidate.address_text
        if candidate.coordinates is not None:
            record.resolved_coordinates = candidate.coordinates

        needs_reverse = candidate.address_text is None
        needs_forward = (
            candidate.coordinates is None and self.engine.gateway is not None
        )
        self._geocoding_from_coords = needs_reverse
        self._geocoding_from_address = needs_forward
        self._transition(ReconciliationState.RESOLVING)

        try:
            if needs_reverse:
                match = await asyncio.wait_for(
                    self.engine.match(coordinates=candidate.coordinates),
                    self.geocode_timeout,
                )
                if self._is_stale(generation, "reverse geocode"):
                    return
                if match.error is None and match.address_text:
                    self._record_derived(
                        candidate,
                        CandidateSource.GEOCODE_REVERSE,
                        coordinates=candidate.coordinates,
                        address_text=match.address_text,
                    )
                    record.resolved_address = match.address_text
            else:
                if needs_forward:
                    coordinates = await asyncio.wait_for(
                        self.engine.gateway.forward_geocode(candidate.address_text),
                        self.geocode_timeout,
                    )
                    if self._is_stale(generation, "forward geocode"):
                        return
                    self._record_derived(
                        candidate,
                        CandidateSource.GEOCODE_FORWARD,
                        coordinates=coordinates,
                        address_text=candidate.address_text,
                    )
                    record.resolved_coordinates = coordinates
                    self._geocoding_from_address = False
                    self._emit()

                match = await self.engine.match(address_text=candidate.address_text)
                if self._is_stale(generation, "match"):
                    return
        except asyncio.TimeoutError:
            if not self._is_stale(generation, "timeout"):
                logger.warning("Geocoding timed out after %ss", self.geocode_timeout)
                self._fail(
                    f"Geocoding timed out after {self.geocode_timeout:g}s; retry or "
                    "fill in the location manually"
                )
            return
        except GeocodingUnavailable as e:
            if not self._is_stale(generation, "geocoding error"):
                logger.warning("Geocoding failed: %s", e)
                self._fail(f"Geocoding unavailable: {e}")
            return
        except (InvalidSelectionPath, InvalidTransition):
            raise
        except Exception as e:
            # Third-party gateways and stores may raise anything.
            if not self._is_stale(generation, "collaborator error"):
                logger.warning("Location lookup failed: %r", e)
                self._fail(f"Location lookup failed: {e}")
            return

        self._geocoding_from_coords = False
        self._geocoding_from_address = False
        self.last_match = match

        if match.error is not None:
            self._fail(match.error)
            return

        user_driven = candidate.source in USER_SOURCES
        if match.can_auto_select and (not record.locked_by_user or user_driven):
            self._admin_sync = True
            self._emit()
            try:
                await self.selection.apply_match(match.selection)
            finally:
                self._admin_sync = False
            if self._is_stale(generation, "admin sync"):
                return
            self._transition(ReconciliationState.RESOLVED)
        else:
            if match.can_auto_select:
                logger.debug("Auto-apply suppressed: selection locked by user")
            self._transition(ReconciliationState.CONFLICT)

    def _record_derived(
        self,
        parent: LocationCandidate,
        source: CandidateSource,
        *,
        coordinates: Coordinates | None,
        address_text: str | None,
    ) -> None:
        # Derived candidates are history only; they never become active.
        derived = LocationCandidate(
            source=source,
            coordinates=coordinates,
            address_text=address_text,
            generation=parent.generation,
        )
        self.record.candidates.setdefault(parent.generation, []).append(derived)
        self._last_geocoding_source = source

    def _is_stale(self, generation: int, what: str) -> bool:
        if generation != self.record.pending_generation:
            logger.debug(
                "Dropping stale %s result (generation %d, pending %d)",
                what,
                generation,
                self.record.pending_generation,
            )
            return True
        return False

    def _adapter_failed(self, source: CandidateSource, message: str) -> None:
        # A failure that could not have changed the active candidate, or that
        # happens while another candidate resolves, is only a notice.
        active = self.record.active_candidate
        irrelevant = (self.record.locked_by_user and source not in USER_SOURCES) or (
            active is not None
            and SOURCE_PRECEDENCE[source] < SOURCE_PRECEDENCE[active.source]
        )
        if irrelevant or self._state == ReconciliationState.RESOLVING:
            self._notice = message
            self._emit()
            return
        self._fail(message)

    def _fail(self, message: str) -> None:
        self._geocoding_from_coords = False
        self._geocoding_from_address = False
        self._error = message
        self._transition(ReconciliationState.FAILED)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _transition(self, target: ReconciliationState) -> None:
        if not can_transition(self._state, target):
            raise InvalidTransition(f"{self._state.value} -> {target.value}")
        logger.debug("Reconciliation %s -> %s", self._state.value, target.value)
        self._state = target
        self._emit()

    def _emit(self) -> None:
        status = self.status
        for listener in list(self._listeners):
            listener(status)
