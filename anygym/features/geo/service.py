"""
Geo ranking.

- haversine_km(a, b): great-circle distance on a 6371 km sphere
- rank_by_distance(origin, points, key): nearest first, ties keep input order
- Geocoder: postcode -> Coordinate via Geoapify, None on any failure
"""

import logging
import math
from typing import Callable, Iterable, List, Optional, TypeVar

import httpx

from anygym.core.config import settings
from anygym.core.errors import DegradedResult
from anygym.models.gym import Coordinate

logger = logging.getLogger("anygym.geo")

EARTH_RADIUS_KM = 6371.0

T = TypeVar("T")


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, h)))


def rank_by_distance(
    origin: Coordinate,
    points: Iterable[T],
    key: Callable[[T], Coordinate] = lambda p: p,
) -> List[T]:
    """Order points by distance from origin. sorted() is stable, so equal distances keep their order."""
    return sorted(points, key=lambda p: haversine_km(origin, key(p)))


class Geocoder:
    """Postcode geocoding with a bounded timeout; absence means 'unknown location'."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEOAPIFY_API_KEY
        self.base_url = base_url or settings.GEOCODING_URL
        self.timeout = timeout if timeout is not None else settings.GEOCODING_TIMEOUT_SECONDS
        self._transport = transport

    def geocode(self, postcode: Optional[str]) -> Optional[Coordinate]:
        if not postcode or not postcode.strip():
            return None
        if not self.api_key:
            logger.info("geo.geocode_skipped: no API key configured")
            return None
        try:
            return self._lookup(postcode.strip())
        except DegradedResult as e:
            logger.warning(f"geo.geocode_degraded: {e}", extra={"error_code": "degraded_result"})
            return None

    def _lookup(self, postcode: str) -> Optional[Coordinate]:
        """First match, None when there is none. Raises DegradedResult when the service misbehaves."""
        params = {"text": postcode, "format": "json", "apiKey": self.api_key}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(self.base_url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise DegradedResult(f"timeout after {self.timeout}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise DegradedResult(str(e)) from e

        results = data.get("results") if isinstance(data, dict) else None
        if not results:
            return None
        first = results[0]
        try:
            return Coordinate(latitude=float(first["lat"]), longitude=float(first["lon"]))
        except (KeyError, TypeError, ValueError) as e:
            raise DegradedResult(f"bad payload: {e!r}") from e
