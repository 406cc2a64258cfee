"""Environment-based configuration.

All variables share the `LOCATION_RESOLVER_` prefix:

- LOCATION_RESOLVER_CSV               path to the Kemendagri-style CSV
- LOCATION_RESOLVER_NOMINATIM_URL     default: https://nominatim.openstreetmap.org
- LOCATION_RESOLVER_USER_AGENT        sent to Nominatim (set one for production)
- LOCATION_RESOLVER_NOMINATIM_EMAIL   optional `From` header
- LOCATION_RESOLVER_GEOCODE_TIMEOUT   seconds, default 5
- LOCATION_RESOLVER_RATE_LIMIT        seconds between Nominatim calls, default 1
- LOCATION_RESOLVER_CACHE_TTL         seconds, default 86400
- LOCATION_RESOLVER_FUZZY_THRESHOLD   0..100, default 88
- LOCATION_RESOLVER_API_HOST / _PORT  bind address for `location-resolver-api`

A local `.env` file may fill in missing variables; real environment variables
always win.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .geocoding import DEFAULT_BASE_URL, DEFAULT_USER_AGENT, NominatimGateway
from .matching import DEFAULT_FUZZY_THRESHOLD

ENV_PREFIX = "LOCATION_RESOLVER_"


def load_dotenv_if_present(path: str | Path | None = None) -> Path | None:
    """Load a local `.env` file if present.

    Behavior:
    - If `path` is given, load that file.
    - Else if `LOCATION_RESOLVER_ENV_FILE` is set, load that file.
    - Otherwise try `.env` in the current working directory.

    Precedence:
    - Real environment variables always win.
    - `.env` only fills missing variables.

    Returns:
        The file that was loaded, or None.
    """

    def parse_line(line: str) -> tuple[str, str] | None:
        line = line.strip()
        if not line or line.startswith("#"):
            return None
        if "=" not in line:
            return None
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()

        # Remove simple quotes.
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        if not key:
            return None
        return key, value

    if path is not None:
        env_path = Path(path).expanduser()
    elif os.getenv(f"{ENV_PREFIX}ENV_FILE"):
        env_path = Path(os.environ[f"{ENV_PREFIX}ENV_FILE"]).expanduser()
    else:
        env_path = Path.cwd() / ".env"

    if not env_path.is_file():
        return None

    for raw in env_path.read_text(encoding="utf-8").splitlines():
        parsed = parse_line(raw)
        if parsed is None:
            continue
        key, value = parsed
        if key in os.environ:
            continue
        os.environ[key] = value
    return env_path


def _get_env_required(env: Mapping[str, str], name: str) -> str:
    """Read a required environment variable."""
    value = env.get(name, "").strip()
    if not value:
        raise RuntimeError(f"Missing required env var: {name}")
    return value


def _get_env_str(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(name, "").strip() or default


def _get_env_float(env: Mapping[str, str], name: str, default: float) -> float:
    """Read an environment variable as float with a default."""
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid float env var {name}={raw!r}") from e


def api_bind_from_env(env: Mapping[str, str] | None = None) -> tuple[str, int]:
    """Host and port for the API server (defaults: 0.0.0.0:8000)."""
    env = os.environ if env is None else env
    host = _get_env_str(env, f"{ENV_PREFIX}API_HOST", "0.0.0.0")

    raw = env.get(f"{ENV_PREFIX}API_PORT", "8000").strip() or "8000"
    try:
        port = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {ENV_PREFIX}API_PORT={raw!r}") from e
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{ENV_PREFIX}API_PORT must be in range [1, 65535]")
    return host, port


@dataclass(frozen=True)
class Settings:
    csv_path: str | None = None
    nominatim_url: str = DEFAULT_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    nominatim_email: str | None = None
    geocode_timeout: float = 5.0
    rate_limit: float = 1.0
    cache_ttl: float = 24 * 60 * 60
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD

    def __post_init__(self) -> None:
        if not (0.0 <= self.fuzzy_threshold <= 100.0):
            raise RuntimeError(f"{ENV_PREFIX}FUZZY_THRESHOLD must be in range [0, 100]")
        if self.geocode_timeout <= 0:
            raise RuntimeError(f"{ENV_PREFIX}GEOCODE_TIMEOUT must be > 0")
        if self.rate_limit < 0:
            raise RuntimeError(f"{ENV_PREFIX}RATE_LIMIT must be >= 0")

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, *, require_csv: bool = False
    ) -> "Settings":
        """Build settings from `env` (defaults to `os.environ`).

        Raises:
            RuntimeError: missing required or malformed variables.
        """
        env = os.environ if env is None else env
        p = ENV_PREFIX

        csv_path = (
            _get_env_required(env, f"{p}CSV")
            if require_csv
            else (env.get(f"{p}CSV", "").strip() or None)
        )
        return cls(
            csv_path=csv_path,
            nominatim_url=_get_env_str(env, f"{p}NOMINATIM_URL", DEFAULT_BASE_URL),
            user_agent=_get_env_str(env, f"{p}USER_AGENT", DEFAULT_USER_AGENT),
            nominatim_email=env.get(f"{p}NOMINATIM_EMAIL", "").strip() or None,
            geocode_timeout=_get_env_float(env, f"{p}GEOCODE_TIMEOUT", 5.0),
            rate_limit=_get_env_float(env, f"{p}RATE_LIMIT", 1.0),
            cache_ttl=_get_env_float(env, f"{p}CACHE_TTL", 24 * 60 * 60),
            fuzzy_threshold=_get_env_float(
                env, f"{p}FUZZY_THRESHOLD", DEFAULT_FUZZY_THRESHOLD
            ),
        )

    def build_gateway(self) -> NominatimGateway:
        return NominatimGateway(
            self.nominatim_url,
            user_agent=self.user_agent,
            email=self.nominatim_email,
            timeout=self.geocode_timeout,
            rate_limit=self.rate_limit,
            cache_ttl=self.cache_ttl,
        )
