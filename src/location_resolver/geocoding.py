"""Nominatim geocoding gateway (OpenStreetMap).

Blocking HTTP runs through `requests` on a worker thread, so the gateway can
be awaited from the reconciler's event loop.

Nominatim usage policy:
- at most one request per second (`rate_limit` seconds between calls)
- a meaningful User-Agent
- cache results; we keep successes for `cache_ttl` seconds, errors never
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Mapping

import requests

from .errors import GeocodingUnavailable
from .models import Coordinates, is_valid_coordinates

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "location-resolver/0.1 (road damage reporting)"

MIN_ADDRESS_LENGTH = 3
MAX_ADDRESS_LENGTH = 500


def parse_nominatim_address(address: Mapping[str, Any] | None) -> dict[str, str | None]:
    """Pick street/district/city/province out of a Nominatim `address` object.

    Indonesian OSM data is inconsistent about which key carries the
    kecamatan or the kabupaten, so each field falls back through several keys.
    """
    address = address or {}

    def first(*keys: str) -> str | None:
        for key in keys:
            value = address.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    return {
        "street": first("road", "pedestrian"),
        "district": first("suburb", "village", "city_district", "neighbourhood"),
        "city": first("city", "regency", "county", "town"),
        "province": first("state"),
    }


def format_address(parts: Mapping[str, str | None]) -> str:
    """Join address parts as "street, district, city, province"."""
    ordered = [parts.get(k) for k in ("street", "district", "city", "province")]
    return ", ".join(p for p in ordered if p)


class NominatimGateway:
    """`GeocodingGateway` backed by the public (or a self-hosted) Nominatim."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        email: str | None = None,
        timeout: float = 5.0,
        rate_limit: float = 1.0,
        cache_ttl: float = 24 * 60 * 60,
        cache_size: int = 1024,
        max_retries: int = 2,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        if rate_limit < 0:
            raise ValueError("rate_limit must be >= 0")
        if cache_size < 1:
            raise ValueError("cache_size must be >= 1")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit = rate_limit
        self.cache_ttl = cache_ttl
        self.cache_size = cache_size
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.headers = {
            "User-Agent": user_agent,
            "Accept-Language": "id,en",
        }
        if email:
            self.headers["From"] = email

        self._clock = clock
        self._last_request_at: float | None = None
        self._rate_lock = asyncio.Lock()
        # key -> (expires_at, value)
        self._cache: dict[tuple[Any, ...], tuple[float, Any]] = {}

    async def reverse_geocode(self, coordinates: Coordinates) -> str:
        """Coordinates -> "street, district, city, province".

        Raises:
            GeocodingUnavailable: invalid input, HTTP/network failure, timeout,
                or no address at that point.
        """
        if not is_valid_coordinates(coordinates.latitude, coordinates.longitude):
            raise GeocodingUnavailable("Invalid coordinates", code="INVALID_INPUT")

        key = ("reverse", round(coordinates.latitude, 6), round(coordinates.longitude, 6))
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        data = await self._get_json(
            "/reverse",
            {
                "format": "jsonv2",
                "addressdetails": 1,
                "zoom": 18,
                "lat": coordinates.latitude,
                "lon": coordinates.longitude,
            },
        )
        if not isinstance(data, dict) or data.get("error"):
            raise GeocodingUnavailable("No address found for coordinates", code="NOT_FOUND")

        address = format_address(parse_nominatim_address(data.get("address")))
        if not address:
            address = str(data.get("display_name") or "").strip()
        if not address:
            raise GeocodingUnavailable("No address found for coordinates", code="NOT_FOUND")

        self._cache_put(key, address)
        return address

    async def forward_geocode(self, address_text: str) -> Coordinates:
        """Address text -> coordinates of the best Indonesian match.

        Raises:
            GeocodingUnavailable: invalid input, HTTP/network failure, timeout,
                or no result.
        """
        text = (address_text or "").strip()
        if not (MIN_ADDRESS_LENGTH <= len(text) <= MAX_ADDRESS_LENGTH):
            raise GeocodingUnavailable(
                f"Address must be {MIN_ADDRESS_LENGTH}..{MAX_ADDRESS_LENGTH} characters",
                code="INVALID_INPUT",
            )

        key = ("forward", text.lower())
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        data = await self._get_json(
            "/search",
            {
                "format": "jsonv2",
                "addressdetails": 1,
                "limit": 1,
                "countrycodes": "id",
                "q": text,
            },
        )
        first = data[0] if isinstance(data, list) and data else data
        if not isinstance(first, dict) or "lat" not in first or "lon" not in first:
            raise GeocodingUnavailable("No geocoding result found", code="NOT_FOUND")

        try:
            coordinates = Coordinates(float(first["lat"]), float(first["lon"]))
        except (TypeError, ValueError) as e:
            raise GeocodingUnavailable(
                f"Malformed coordinates in geocoding result: {e}", code="BAD_RESPONSE"
            ) from e

        self._cache_put(key, coordinates)
        return coordinates

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"

        for attempt in range(1, self.max_retries + 1):
            await self._wait_for_slot()
            try:
                response = await asyncio.to_thread(
                    self.session.get,
                    url,
                    params=params,
                    headers=self.headers,
                    timeout=self.timeout,
                )
            except requests.Timeout as e:
                raise GeocodingUnavailable(
                    f"Geocoding request timed out after {self.timeout}s", code="TIMEOUT"
                ) from e
            except requests.RequestException as e:
                raise GeocodingUnavailable(
                    f"Geocoding request failed: {e}", code="NETWORK_ERROR"
                ) from e

            if response.status_code == 429 and attempt < self.max_retries:
                logger.warning("Nominatim rate limited us (attempt %d), backing off", attempt)
                continue
            if response.status_code != 200:
                raise GeocodingUnavailable(
                    f"Geocoding service returned HTTP {response.status_code}",
                    code="HTTP_ERROR",
                )

            try:
                return response.json()
            except ValueError as e:
                raise GeocodingUnavailable(
                    "Geocoding service returned invalid JSON", code="BAD_RESPONSE"
                ) from e

        raise GeocodingUnavailable("Geocoding service rate limit exceeded", code="HTTP_ERROR")

    async def _wait_for_slot(self) -> None:
        async with self._rate_lock:
            if self._last_request_at is not None:
                wait = self.rate_limit - (self._clock() - self._last_request_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = self._clock()

    def _cache_get(self, key: tuple[Any, ...]) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return value

    def _cache_put(self, key: tuple[Any, ...], value: Any) -> None:
        if self.cache_ttl <= 0:
            return
        now = self._clock()
        for expired in [k for k, (expires_at, _) in self._cache.items() if now >= expires_at]:
            del self._cache[expired]
        self._cache.pop(key, None)
        # Oldest insertions go first once the cap is reached.
        while len(self._cache) >= self.cache_size:
            del self._cache[next(iter(self._cache))]
        self._cache[key] = (now + self.cache_ttl, value)
