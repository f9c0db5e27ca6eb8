from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from .config_schema import GeocodingConfig
from .errors import GeocodingError
from .provider_retry import is_retryable_http_exception
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

# Keeps "UK" and "United Kingdom" from showing up as two countries.
COUNTRY_CANONICAL_NAMES: dict[str, str] = {
    "uk": "United Kingdom",
    "usa": "United States",
    "us": "United States",
    "uae": "United Arab Emirates",
}

_PLACE_TYPES = "place,locality,neighborhood,region,country"
_DEFAULT_HTTP_RETRY = RetryConfig(max_attempts=3)


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    normalized_location: str
    country: str | None
    city: str | None
    neighborhood: str | None = None


def normalize_query(location: str) -> str:
    return (location or "").strip().lower()


def canonical_country(name: str | None) -> str | None:
    if not name:
        return None
    return COUNTRY_CANONICAL_NAMES.get(name.strip().lower(), name.strip())


def is_geocodable(location: str | None) -> bool:
    q = normalize_query(location or "")
    return len(q) >= 2 and q not in ("<unknown>", "unknown")


def parse_mapbox_feature(feature: Mapping[str, Any]) -> GeocodeResult | None:
    """Pull coordinates and the country/city/neighborhood hierarchy out of one Mapbox feature."""
    center = feature.get("center")
    if not isinstance(center, (list, tuple)) or len(center) != 2:
        return None

    country = city = neighborhood = ""
    for ctx in feature.get("context") or []:
        ctx_id = str(ctx.get("id") or "")
        text = str(ctx.get("text") or "")
        if ctx_id.startswith("country"):
            country = text
        elif ctx_id.startswith(("place", "city")):
            city = text
        elif ctx_id.startswith(("locality", "neighborhood")):
            if neighborhood and not city:
                city = text
            elif not neighborhood:
                neighborhood = text
        elif ctx_id.startswith("region") and not city:
            city = text

    main_text = str(feature.get("text") or "")
    place_types = feature.get("place_type") or []
    place_type = str(place_types[0]) if place_types else ""
    if place_type == "country":
        country = main_text
    elif place_type in ("place", "city"):
        city = main_text
    elif place_type in ("locality", "neighborhood"):
        neighborhood = main_text
    elif not city:
        city = main_text

    if neighborhood and not city:
        city, neighborhood = neighborhood, ""

    lng, lat = center
    return GeocodeResult(
        latitude=float(lat),
        longitude=float(lng),
        normalized_location=str(feature.get("place_name") or main_text),
        country=canonical_country(country),
        city=city or None,
        neighborhood=neighborhood or None,
    )


class MapboxGeocoder:
    """
    Forward geocoding against the Mapbox Places API with an in-memory cache.

    Misses are cached too, so a location is looked up at most once per process.
    """

    def __init__(
        self,
        access_token: str,
        *,
        geocoding_cfg: GeocodingConfig,
        client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        token = (access_token or "").strip()
        if not token:
            raise ValueError("access_token must be a non-empty string")

        self._token = token
        self._cfg = geocoding_cfg
        self._client = client or httpx.AsyncClient(timeout=geocoding_cfg.timeout_seconds)
        self._owns_client = client is None
        self._retry = retry or _DEFAULT_HTTP_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        self._cache: dict[str, GeocodeResult | None] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MapboxGeocoder":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def geocode(self, location: str) -> GeocodeResult | None:
        if not is_geocodable(location):
            return None

        key = normalize_query(location)
        if key in self._cache:
            return self._cache[key]

        url = f"{self._cfg.base_url.rstrip('/')}/{quote(key, safe='')}.json"
        params = {"access_token": self._token, "limit": "1", "types": _PLACE_TYPES}

        async def _do_get() -> httpx.Response:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            return response

        try:
            response = await call_with_retries(
                _do_get,
                cfg=self._retry,
                is_retryable=is_retryable_http_exception,
                operation="mapbox.geocode",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
            )
            payload = response.json()
        except httpx.HTTPError as e:
            raise GeocodingError(f"Geocoding request failed for {location!r}: {e}") from e
        except ValueError as e:
            raise GeocodingError(f"Geocoding response was not JSON for {location!r}") from e

        features = payload.get("features") if isinstance(payload, dict) else None
        result = parse_mapbox_feature(features[0]) if features else None
        self._cache[key] = result
        return result
