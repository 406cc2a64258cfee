from __future__ import annotations

import asyncio

import pytest

from location_resolver.engine import MatchingEngine
from location_resolver.models import (
    CandidateSource,
    ConfidenceLevel,
    Coordinates,
    LocationCandidate,
    SelectionState,
)
from location_resolver.reconciler import (
    LocationReconciler,
    ReconciliationState,
    can_transition,
)
from location_resolver.selection import CascadingSelectionController

from conftest import (
    MENTENG_ADDRESS,
    MENTENG_COORDS,
    SURABAYA_ADDRESS,
    SURABAYA_COORDS,
    FailingStore,
    FakeExif,
    FakeLocator,
    wait_until,
)

SURABAYA = SelectionState("35", "3578", "357805")
MENTENG = SelectionState("31", "3171", "317106")


def _reconciler(store, gateway, **kwargs) -> LocationReconciler:
    engine = MatchingEngine(store, gateway)
    return LocationReconciler(engine, CascadingSelectionController(store), **kwargs)


def test_transition_table() -> None:
    S = ReconciliationState
    assert can_transition(S.IDLE, S.CANDIDATE_RECEIVED)
    assert can_transition(S.RESOLVED, S.CANDIDATE_RECEIVED)
    assert can_transition(S.FAILED, S.CANDIDATE_RECEIVED)
    assert can_transition(S.RESOLVING, S.CANDIDATE_RECEIVED)
    assert not can_transition(S.IDLE, S.RESOLVING)
    assert not can_transition(S.IDLE, S.RESOLVED)
    assert not can_transition(S.CANDIDATE_RECEIVED, S.RESOLVED)
    assert not can_transition(S.CONFLICT, S.RESOLVED)


def test_photo_end_to_end_without_partial_states(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))
    selections: list[SelectionState] = []
    statuses = []
    rec.selection.subscribe(selections.append)
    rec.subscribe(statuses.append)

    assert asyncio.run(rec.ingest_photo("road.jpg"))

    assert rec.state == ReconciliationState.RESOLVED
    assert selections == [SURABAYA]
    assert all(s.depth in (0, 3) for s in selections)

    resolving = [s for s in statuses if s.state == ReconciliationState.RESOLVING]
    assert resolving[0].is_geocoding_from_coords
    assert any(s.is_processing_admin_sync for s in resolving)

    final = rec.status
    assert final.confidence_level == ConfidenceLevel.HIGH
    assert final.can_auto_select
    assert final.last_geocoding_source == CandidateSource.GEOCODE_REVERSE
    assert not final.is_geocoding_from_coords

    resolved = rec.resolved
    assert resolved.coordinates == SURABAYA_COORDS
    assert resolved.address_text == SURABAYA_ADDRESS
    assert resolved.selection == SURABAYA


def test_exif_is_not_overwritten_by_its_own_geocode(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))

    async def scenario():
        await rec.ingest_photo("road.jpg")
        late = LocationCandidate(
            source=CandidateSource.GEOCODE_REVERSE,
            coordinates=MENTENG_COORDS,
            address_text=MENTENG_ADDRESS,
        )
        return await rec.submit_candidate(late)

    accepted = asyncio.run(scenario())

    assert not accepted
    active = rec.record.active_candidate
    assert active.source == CandidateSource.EXIF
    history = rec.record.candidates[active.generation]
    assert [c.source for c in history] == [
        CandidateSource.EXIF,
        CandidateSource.GEOCODE_REVERSE,
    ]
    assert rec.resolved.coordinates == SURABAYA_COORDS
    assert rec.selection.state == SURABAYA
    assert not rec.record.locked_by_user


def test_address_edit_locks_and_discards_stale_reverse(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))

    async def scenario():
        gateway.reverse_gate = asyncio.Event()
        photo = asyncio.create_task(rec.ingest_photo("road.jpg"))
        await wait_until(lambda: gateway.calls)
        exif_generation = rec.record.pending_generation

        await rec.edit_address(MENTENG_ADDRESS)

        gateway.reverse_gate.set()
        await photo
        return exif_generation

    exif_generation = asyncio.run(scenario())

    assert rec.record.locked_by_user
    assert rec.state == ReconciliationState.RESOLVED
    assert rec.selection.state == MENTENG
    assert rec.resolved.coordinates == MENTENG_COORDS
    assert rec.record.active_candidate.source == CandidateSource.MANUAL_ADDRESS
    # The late reverse result was dropped: no derived candidate for the photo.
    assert [c.source for c in rec.record.candidates[exif_generation]] == [
        CandidateSource.EXIF
    ]


def test_most_recent_manual_edit_wins(store, gateway) -> None:
    rec = _reconciler(store, gateway)

    async def scenario():
        gateway.reverse_gate = asyncio.Event()
        coords_edit = asyncio.create_task(
            rec.edit_coordinates(SURABAYA_COORDS.latitude, SURABAYA_COORDS.longitude)
        )
        await wait_until(lambda: gateway.calls)
        await rec.edit_address(MENTENG_ADDRESS)
        gateway.reverse_gate.set()
        await coords_edit

    asyncio.run(scenario())
    assert rec.selection.state == MENTENG
    assert rec.resolved.address_text == MENTENG_ADDRESS


def test_user_lock_blocks_photo_candidates(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))

    async def scenario():
        await rec.set_province("32")
        return await rec.ingest_photo("road.jpg")

    assert asyncio.run(scenario()) is False
    assert rec.record.locked_by_user
    assert rec.selection.state == SelectionState("32")
    assert rec.state == ReconciliationState.IDLE


def test_lock_taken_mid_flight_suppresses_auto_apply(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))

    async def scenario():
        gateway.reverse_gate = asyncio.Event()
        photo = asyncio.create_task(rec.ingest_photo("road.jpg"))
        await wait_until(lambda: gateway.calls)
        rec.note_user_edit("category")
        gateway.reverse_gate.set()
        await photo

    asyncio.run(scenario())
    assert rec.state == ReconciliationState.CONFLICT
    assert rec.status.confidence_level == ConfidenceLevel.HIGH
    assert not rec.status.can_auto_select
    assert rec.selection.state.is_empty


def test_low_confidence_is_a_conflict(store) -> None:
    rec = _reconciler(store, None)

    asyncio.run(rec.edit_address("DKI Jakarta"))

    assert rec.state == ReconciliationState.CONFLICT
    assert rec.status.confidence_level == ConfidenceLevel.LOW
    assert not rec.status.can_auto_select
    assert rec.selection.state.is_empty


def test_offline_address_resolves_without_coordinates(store) -> None:
    rec = _reconciler(store, None)

    asyncio.run(rec.edit_address(SURABAYA_ADDRESS))

    assert rec.state == ReconciliationState.RESOLVED
    assert rec.selection.state == SURABAYA
    assert rec.resolved.coordinates is None


def test_geocoding_timeout_fails_and_retry_recovers(store, gateway) -> None:
    rec = _reconciler(
        store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS), geocode_timeout=0.05
    )

    async def scenario():
        gateway.reverse_gate = asyncio.Event()
        await rec.ingest_photo("road.jpg")
        failed = rec.status
        gateway.reverse_gate.set()
        await rec.retry()
        return failed

    failed = asyncio.run(scenario())

    assert failed.state == ReconciliationState.FAILED
    assert "timed out" in failed.error
    assert not failed.is_geocoding_from_coords
    assert rec.state == ReconciliationState.RESOLVED
    assert rec.selection.state == SURABAYA
    assert rec.status.error is None


def test_unknown_coordinates_fail_with_message(store, gateway) -> None:
    rec = _reconciler(store, gateway)

    asyncio.run(rec.edit_coordinates(0.5, 101.4))

    assert rec.state == ReconciliationState.FAILED
    assert rec.status.error == "No address found"
    assert rec.resolved.coordinates == Coordinates(0.5, 101.4)

    rec.clear_error()
    assert rec.state == ReconciliationState.CONFLICT
    assert rec.status.error is None


def test_reference_outage_fails(gateway) -> None:
    rec = _reconciler(FailingStore(), gateway)

    asyncio.run(rec.edit_address(SURABAYA_ADDRESS))

    assert rec.state == ReconciliationState.FAILED
    assert "reference" in rec.status.error.lower()


def test_photo_without_gps_is_a_notice(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(None))

    assert asyncio.run(rec.ingest_photo("no-gps.jpg")) is False
    assert rec.state == ReconciliationState.IDLE
    assert rec.status.error is None
    assert "no GPS" in rec.status.notice


def test_device_location(store, gateway) -> None:
    rec = _reconciler(store, gateway, device_locator=FakeLocator(SURABAYA_COORDS))

    assert asyncio.run(rec.use_device_location())
    assert rec.record.active_candidate.source == CandidateSource.DEVICE
    assert rec.record.locked_by_user
    assert rec.selection.state == SURABAYA


def test_device_error_fails(store, gateway) -> None:
    rec = _reconciler(store, gateway)

    ok = asyncio.run(rec.use_device_location(FakeLocator(error=PermissionError("denied"))))

    assert not ok
    assert rec.state == ReconciliationState.FAILED
    assert "denied" in rec.status.error


class _BrokenGateway:
    """A gateway whose transport fails outside the `GeocodingUnavailable` contract."""

    async def reverse_geocode(self, coordinates):
        raise ConnectionError("socket reset")

    async def forward_geocode(self, address_text):
        raise ConnectionError("socket reset")


def test_unexpected_forward_gateway_error_fails(store) -> None:
    rec = _reconciler(store, _BrokenGateway())

    asyncio.run(rec.edit_address("Genteng, Surabaya, Jawa Timur"))

    status = rec.status
    assert status.state == ReconciliationState.FAILED
    assert not status.is_geocoding_from_address
    assert "socket reset" in status.error

    # The draft stays editable.
    asyncio.run(rec.set_province("35"))
    assert rec.selection.state == SelectionState("35")


def test_unexpected_reverse_gateway_error_fails(store) -> None:
    rec = _reconciler(store, _BrokenGateway())

    asyncio.run(rec.edit_coordinates(SURABAYA_COORDS.latitude, SURABAYA_COORDS.longitude))

    assert rec.state == ReconciliationState.FAILED
    assert not rec.status.is_geocoding_from_coords
    assert rec.status.error == "Reverse geocoding failed: socket reset"


def test_unexpected_device_error_fails(store, gateway) -> None:
    rec = _reconciler(store, gateway)

    ok = asyncio.run(rec.use_device_location(FakeLocator(error=RuntimeError("sensor offline"))))

    assert not ok
    assert rec.state == ReconciliationState.FAILED
    assert "sensor offline" in rec.status.error


def test_invalid_coordinate_edit_raises(store, gateway) -> None:
    rec = _reconciler(store, gateway)
    with pytest.raises(ValueError):
        asyncio.run(rec.edit_coordinates(95.0, 10.0))


def test_round_trip_selects_same_codes(store, gateway) -> None:
    address = "Jl. Tunjungan, Genteng, Surabaya, Jawa Timur"
    engine = MatchingEngine(store, gateway)

    async def scenario():
        coordinates = await gateway.forward_geocode(address)
        reverse_text = await gateway.reverse_geocode(coordinates)
        direct = await engine.match(address_text=address)
        via_reverse = await engine.match(address_text=reverse_text)
        via_coordinates = await engine.match(coordinates=coordinates)
        return direct, via_reverse, via_coordinates

    direct, via_reverse, via_coordinates = asyncio.run(scenario())
    assert direct.selection == via_reverse.selection == via_coordinates.selection


def test_reset_discards_draft(store, gateway) -> None:
    rec = _reconciler(store, gateway, exif_extractor=FakeExif(SURABAYA_COORDS))

    async def scenario():
        await rec.ingest_photo("road.jpg")
        await rec.reset()

    asyncio.run(scenario())
    assert rec.state == ReconciliationState.IDLE
    assert rec.record.active_candidate is None
    assert rec.record.candidates == {}
    assert rec.selection.state.is_empty
    assert rec.resolved.confidence == ConfidenceLevel.NONE
