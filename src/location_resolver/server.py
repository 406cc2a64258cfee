"""FastAPI server exposing the matcher and the reference hierarchy.

Endpoints
---------
POST /match
    Request JSON: {"text": "..."} or {"lat": -7.25, "lon": 112.75}
    Response JSON: selection codes, confidence, per-level diagnostics.

GET /administrative/provinces
GET /administrative/regencies/{province_code}
GET /administrative/districts/{regency_code}
    Option lists for the cascading selector. Codes are validated strictly
    (400 on a malformed code).

The reference CSV is loaded once at startup (see `config.Settings`), never
per request. Until startup completes every endpoint answers 503.

Run (example)
-------------
    pip install -e ".[api]"
    export LOCATION_RESOLVER_CSV="/abs/path/to/location_kemendagri_2025.csv"
    location-resolver-api

or, with explicit uvicorn flags:

    uvicorn location_resolver.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .adapters import GeocodingGateway, ReferenceStore
from .codes import is_valid_province_code, is_valid_regency_code
from .config import Settings, api_bind_from_env, load_dotenv_if_present
from .engine import MatchingEngine
from .errors import ReferenceDataUnavailable
from .models import Coordinates
from .reference import AdministrativeNode, CachedReferenceStore, InMemoryReferenceStore

logger = logging.getLogger(__name__)


class MatchRequest(BaseModel):
    """Request payload for POST /match."""

    text: str | None = Field(
        None, min_length=1, max_length=500, description="Address text to match."
    )
    lat: float | None = Field(None, ge=-90.0, le=90.0)
    lon: float | None = Field(None, ge=-180.0, le=180.0)


class LevelMatchOut(BaseModel):
    level: str
    code: str
    name: str
    score: float
    matched_text: str
    match_method: str


class MatchResponse(BaseModel):
    """Response payload for POST /match."""

    province_code: str | None
    regency_code: str | None
    district_code: str | None
    confidence: str
    matched_levels: int
    address_text: str | None
    level_matches: list[LevelMatchOut]
    error: str | None = None


class NodeOut(BaseModel):
    code: str
    name: str
    parent_code: str | None = None


class _AppState:
    """Holds long-lived objects shared across requests."""

    def __init__(self) -> None:
        self.store: ReferenceStore | None = None
        self.engine: MatchingEngine | None = None
        self.geocode_timeout: float = 5.0


def _get_state(request: Request) -> _AppState:
    state: _AppState = request.app.state.resolver
    if state.store is None or state.engine is None:
        raise HTTPException(status_code=503, detail="Server is still starting up")
    return state


router = APIRouter()


@router.post("/match", response_model=MatchResponse)
async def match_location(
    req: MatchRequest, state: _AppState = Depends(_get_state)
) -> MatchResponse:
    """Match address text (or reverse-geocoded coordinates) to admin codes."""
    text = req.text.strip() if req.text else None
    has_coords = req.lat is not None and req.lon is not None

    if not text and not has_coords:
        raise HTTPException(status_code=400, detail="Provide text or both lat and lon")
    if (req.lat is None) != (req.lon is None):
        raise HTTPException(status_code=400, detail="lat and lon must be given together")

    coordinates = Coordinates(req.lat, req.lon) if has_coords else None
    try:
        result = await asyncio.wait_for(
            state.engine.match(address_text=text, coordinates=coordinates),
            state.geocode_timeout,
        )
    except asyncio.TimeoutError as e:
        raise HTTPException(status_code=504, detail="Geocoding timed out") from e

    return MatchResponse(
        **result.selection.to_dict(),
        confidence=result.confidence.value,
        matched_levels=result.matched_levels,
        address_text=result.address_text,
        level_matches=[LevelMatchOut(**m.to_dict()) for m in result.level_matches],
        error=result.error,
    )


@router.get("/administrative/provinces", response_model=list[NodeOut])
async def list_provinces(state: _AppState = Depends(_get_state)) -> list[NodeOut]:
    return await _listing(state.store.list_provinces())


@router.get("/administrative/regencies/{province_code}", response_model=list[NodeOut])
async def list_regencies(
    province_code: str, state: _AppState = Depends(_get_state)
) -> list[NodeOut]:
    if not is_valid_province_code(province_code):
        raise HTTPException(status_code=400, detail="Invalid province code format")
    return await _listing(state.store.list_regencies(province_code))


@router.get("/administrative/districts/{regency_code}", response_model=list[NodeOut])
async def list_districts(
    regency_code: str, state: _AppState = Depends(_get_state)
) -> list[NodeOut]:
    if not is_valid_regency_code(regency_code):
        raise HTTPException(status_code=400, detail="Invalid regency code format")
    return await _listing(state.store.list_districts(regency_code))


async def _listing(pending: Any) -> list[NodeOut]:
    try:
        nodes: list[AdministrativeNode] = await pending
    except ReferenceDataUnavailable as e:
        logger.warning("Reference data unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Reference data unavailable") from e
    return [NodeOut(code=n.code, name=n.name, parent_code=n.parent_code) for n in nodes]


def create_app(
    *,
    store: ReferenceStore | None = None,
    gateway: GeocodingGateway | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API app.

    Args:
        store: Reference store to serve. Loaded from `LOCATION_RESOLVER_CSV`
            at startup when omitted.
        gateway: Geocoding gateway for coordinate-only requests. Built from
            settings (Nominatim) when omitted.
        settings: Defaults to `Settings.from_env()` at startup.
    """
    state = _AppState()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize heavy resources once and reuse them."""
        cfg = settings
        if cfg is None:
            load_dotenv_if_present()
            cfg = Settings.from_env(require_csv=store is None)

        ref_store = store
        if ref_store is None:
            ref_store = CachedReferenceStore(InMemoryReferenceStore.from_csv(cfg.csv_path))

        engine = MatchingEngine(
            ref_store,
            gateway if gateway is not None else cfg.build_gateway(),
            threshold=cfg.fuzzy_threshold,
        )
        # Build the phrase index now so the first request is not slow.
        await engine.matcher()

        state.store = ref_store
        state.engine = engine
        state.geocode_timeout = cfg.geocode_timeout
        try:
            yield
        finally:
            state.store = None
            state.engine = None

    app = FastAPI(title="Location Resolver API", version="0.1.0", lifespan=lifespan)
    app.state.resolver = state
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Console-script entry point: serve `app` with uvicorn.

    Host and port come from `LOCATION_RESOLVER_API_HOST` / `_API_PORT`
    (a local `.env` may provide them).
    """
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    load_dotenv_if_present()
    try:
        host, port = api_bind_from_env()
    except RuntimeError as e:
        raise SystemExit(str(e)) from e
    uvicorn.run(app, host=host, port=port)
