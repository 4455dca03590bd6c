"""
route_deviation.py — Route planning and off-route detection for Guardian escorts.

Provides:
    • RoutePlanner capability (straight-line default, OSRM over HTTP)
    • RouteDeviationDetector — deterministic point-to-polyline check

═══════════════════════════════════════════════════════════════════════════
DEVIATION RULE
═══════════════════════════════════════════════════════════════════════════

    distance = min over segments S of route: dist(location, S)
    deviated = distance > threshold_m          (default 500 m)

The planned route is the polyline returned by the planner at session
start. A straight-line planner yields [origin, destination], so the check
becomes "distance from the direct path", which is what a walking escort on
a compact campus needs. Exactly on the threshold counts as on-route.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from backend.app.core.errors import RouteCalculationError
from backend.app.spatial.radius_utils import Coordinate, distance_to_route_m

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Route Planning
# ═══════════════════════════════════════════════════════════════════════════

class RoutePlanner(abc.ABC):
    """Produces a walking polyline between two points."""

    name: str = "abstract"

    @abc.abstractmethod
    async def plan(self, origin: Any, destination: Any) -> List[Coordinate]:
        """Return the planned route, origin first and destination last."""

    async def close(self) -> None:
        return None


class StraightLineRoutePlanner(RoutePlanner):
    """Direct path: the route is just [origin, destination]."""

    name = "straight_line"

    async def plan(self, origin: Any, destination: Any) -> List[Coordinate]:
        return [
            Coordinate(origin.latitude, origin.longitude),
            Coordinate(destination.latitude, destination.longitude),
        ]


class OsrmRoutePlanner(RoutePlanner):
    """
    Walking route from an OSRM server.

    GET {base}/route/v1/foot/{lon},{lat};{lon},{lat}?overview=full&geometries=geojson
    """

    name = "osrm"

    def __init__(self, base_url: str, *, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def plan(self, origin: Any, destination: Any) -> List[Coordinate]:
        url = (
            f"{self.base_url}/route/v1/foot/"
            f"{origin.longitude},{origin.latitude};"
            f"{destination.longitude},{destination.latitude}"
        )
        client = await self._get_client()

        try:
            response = await client.get(
                url, params={"overview": "full", "geometries": "geojson"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Route API error: %s", e)
            raise RouteCalculationError(
                f"HTTP {e.response.status_code}", provider=self.name,
            ) from e
        except httpx.HTTPError as e:
            logger.error("Route request failed: %s", e)
            raise RouteCalculationError(str(e), provider=self.name) from e

        return self._parse_route(data)

    def _parse_route(self, data: Dict[str, Any]) -> List[Coordinate]:
        routes = data.get("routes") or []
        if data.get("code") not in (None, "Ok") or not routes:
            raise RouteCalculationError(
                f"No route found ({data.get('code', 'unknown')})",
                provider=self.name,
            )
        coords = routes[0].get("geometry", {}).get("coordinates") or []
        try:
            route = [Coordinate(lat, lon) for lon, lat in coords]
        except (TypeError, ValueError) as e:
            raise RouteCalculationError(f"Malformed geometry: {e}", provider=self.name) from e
        if not route:
            raise RouteCalculationError("Empty route geometry", provider=self.name)
        return route


def build_route_planner(provider: str, *, base_url: str = "", timeout_seconds: float = 10.0) -> RoutePlanner:
    if provider == "straight_line":
        return StraightLineRoutePlanner()
    if provider == "osrm":
        return OsrmRoutePlanner(base_url, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown route provider: {provider}")


# ═══════════════════════════════════════════════════════════════════════════
# Deviation Detection
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeviationCheck:
    """Outcome of a single off-route check."""
    deviated: bool
    distance_m: float
    threshold_m: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviated": self.deviated,
            "distance_m": self.distance_m,
            "threshold_m": self.threshold_m,
        }


class RouteDeviationDetector:
    """Flags a location as off-route when it is farther than the threshold."""

    def __init__(self, threshold_m: float = 500.0):
        if threshold_m <= 0:
            raise ValueError(f"Threshold must be positive, got {threshold_m}")
        self.threshold_m = threshold_m

    def check(self, location: Any, route: Sequence[Any]) -> DeviationCheck:
        if not route:
            return DeviationCheck(False, 0.0, self.threshold_m)
        distance = distance_to_route_m(location, route)
        return DeviationCheck(distance > self.threshold_m, distance, self.threshold_m)
