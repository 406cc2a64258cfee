"""Async matching engine: geocoding + reference loading around `AddressMatcher`.

The engine never raises for collaborator failures. Reference or geocoding
problems degrade to a `none` result with `error` set, so free-text entry
stays usable.
"""

from __future__ import annotations

import logging

from .adapters import BoundaryLocator, GeocodingGateway, ReferenceStore
from .errors import GeocodingUnavailable, ReferenceDataUnavailable
from .matching import DEFAULT_FUZZY_THRESHOLD, AddressMatcher, MatchResult, confidence_for
from .models import Coordinates
from .reference import ReferenceCatalog

logger = logging.getLogger(__name__)


class MatchingEngine:
    def __init__(
        self,
        store: ReferenceStore,
        gateway: GeocodingGateway | None = None,
        *,
        threshold: float = DEFAULT_FUZZY_THRESHOLD,
    ):
        if threshold < 0 or threshold > 100:
            raise ValueError("fuzzy_threshold must be in range [0, 100]")
        self.store = store
        self.gateway = gateway
        self.threshold = float(threshold)
        self._matcher: AddressMatcher | None = None

    async def matcher(self) -> AddressMatcher:
        """Load the reference catalog once and keep the matcher around.

        A failed load is not cached; the next call tries again.
        """
        if self._matcher is None:
            catalog = await ReferenceCatalog.load(self.store)
            self._matcher = AddressMatcher(catalog, threshold=self.threshold)
        return self._matcher

    async def match(
        self,
        address_text: str | None = None,
        coordinates: Coordinates | None = None,
    ) -> MatchResult:
        """Propose administrative codes for an address and/or coordinates.

        When only coordinates are given they are reverse-geocoded first. If
        geocoding fails and the store can locate coordinates directly, that
        lookup is used instead.
        """
        text = address_text.strip() if address_text else ""

        if not text and coordinates is None:
            return MatchResult.failed("Nothing to match: no address text or coordinates")

        if not text:
            try:
                text = await self._reverse(coordinates)
            except GeocodingUnavailable as e:
                logger.warning("Reverse geocoding failed for %s: %s", coordinates, e)
                located = await self._locate(coordinates)
                if located is not None:
                    return located
                return MatchResult.failed(str(e))

        try:
            matcher = await self.matcher()
        except ReferenceDataUnavailable as e:
            logger.warning("Reference data unavailable: %s", e)
            return MatchResult.failed(str(e), address_text=text)

        return matcher.match(text)

    async def _reverse(self, coordinates: Coordinates) -> str:
        if self.gateway is None:
            raise GeocodingUnavailable("No geocoding gateway configured", code="OFFLINE")
        try:
            return await self.gateway.reverse_geocode(coordinates)
        except GeocodingUnavailable:
            raise
        except Exception as e:
            raise GeocodingUnavailable(
                f"Reverse geocoding failed: {e}", code="NETWORK_ERROR"
            ) from e

    async def _locate(self, coordinates: Coordinates) -> MatchResult | None:
        if not isinstance(self.store, BoundaryLocator):
            return None
        try:
            selection = await self.store.locate(coordinates)
        except ReferenceDataUnavailable as e:
            logger.warning("Boundary lookup failed for %s: %s", coordinates, e)
            return None
        if selection is None:
            return None
        return MatchResult(
            selection=selection,
            confidence=confidence_for(selection.depth),
            matched_levels=selection.depth,
        )
