"""
Distance calculation

Great-circle (haversine) distance on WGS84 with a 6371 km earth radius, and
an optional Google Distance Matrix provider for driving distance that falls
back to haversine whenever the API is unavailable or has no route.
"""
import logging
import math
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

import httpx

from checkout_engine.core.http_client import ResilientHTTPClient, RetryConfig

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
GOOGLE_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
DEFAULT_CACHE_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    """Great-circle distance between two points in kilometers."""
    lat1, lng1 = math.radians(origin.lat), math.radians(origin.lng)
    lat2, lng2 = math.radians(destination.lat), math.radians(destination.lng)
    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def round_km(distance_km: float) -> float:
    """Round to one decimal, half-up."""
    return float(Decimal(str(distance_km)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class HaversineDistanceProvider:
    """Pure, offline distance provider."""

    async def distance_km(self, origin: Coordinates, destination: Coordinates) -> float:
        return haversine_km(origin, destination)

    async def close(self) -> None:
        return None


class GoogleRouteDistanceProvider:
    """
    Driving distance via the Google Distance Matrix API.

    Results are cached in-process for `cache_ttl_seconds`, at most
    `cache_max_entries` of them (oldest evicted first). Any API error,
    non-OK status or missing route falls back to haversine so pricing never
    fails because of the maps provider.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 5.0,
        cache_ttl_seconds: int = 24 * 60 * 60,
        cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        http_client: Optional[ResilientHTTPClient] = None,
        mode: str = "driving",
    ):
        self.api_key = api_key
        self.mode = mode
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_max_entries = cache_max_entries
        self._client = http_client or ResilientHTTPClient(
            retry_config=RetryConfig(max_retries=1),
            timeout=timeout,
            default_headers={"Accept": "application/json"},
        )
        self._cache: Dict[Tuple[float, float, float, float, str], Tuple[float, float]] = {}

    def _cache_key(self, origin: Coordinates, destination: Coordinates):
        return (origin.lat, origin.lng, destination.lat, destination.lng, self.mode)

    async def distance_km(self, origin: Coordinates, destination: Coordinates) -> float:
        key = self._cache_key(origin, destination)
        cached = self._cache.get(key)
        if cached and time.time() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        try:
            response = await self._client.get(
                GOOGLE_DISTANCE_MATRIX_URL,
                params={
                    "origins": f"{origin.lat},{origin.lng}",
                    "destinations": f"{destination.lat},{destination.lng}",
                    "mode": self.mode,
                    "units": "metric",
                    "key": self.api_key,
                },
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Distance Matrix request failed, using haversine fallback: {e}")
            return haversine_km(origin, destination)

        if not isinstance(data, dict) or data.get("status") != "OK" or not data.get("rows"):
            status = data.get("status") if isinstance(data, dict) else type(data).__name__
            logger.warning(f"Distance Matrix returned {status}, using haversine fallback")
            return haversine_km(origin, destination)

        elements = data["rows"][0].get("elements") or []
        element = elements[0] if elements else None
        if not element or element.get("status") != "OK":
            logger.warning("Distance Matrix found no route, using haversine fallback")
            return haversine_km(origin, destination)

        distance = element["distance"]["value"] / 1000
        self._store(key, distance)
        return distance

    def _store(self, key, distance: float) -> None:
        now = time.time()
        expired = [k for k, (_, stored_at) in self._cache.items() if now - stored_at >= self.cache_ttl_seconds]
        for k in expired:
            del self._cache[k]

        # Re-insert so dict order stays oldest-first
        self._cache.pop(key, None)
        self._cache[key] = (distance, now)
        while len(self._cache) > self.cache_max_entries:
            del self._cache[next(iter(self._cache))]

    async def close(self) -> None:
        await self._client.close()
