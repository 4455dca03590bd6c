"""
radius_utils.py — Great-circle distance, radius queries and route distance.

Provides:
    - Haversine distance between two (lat, lon) points (km and metres)
    - Bounding-box pre-filter for radius queries at scale
    - Deterministic radius search over arbitrary items
    - Point-to-segment / point-to-polyline distance for route deviation

Coordinates are in **decimal degrees**. ``haversine`` returns kilometres,
the ``*_m`` helpers return metres. Any object exposing ``latitude`` and
``longitude`` attributes is accepted as a point.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = Earth's mean radius ≈ 6,371 km

Route distance — local equirectangular projection
=================================================
Campus routes span at most a few kilometres, so distance from a point to a
route segment is computed on a flat projection centred on the point:

    x = Δλ · cos(φ₀) · R
    y = Δφ · R

The closest point on segment AB is A + t·(B − A) with t clamped to [0, 1].
Error against the true great-circle cross-track distance is well below a
metre at these scales.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Sequence, Tuple, TypeVar


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius
EARTH_RADIUS_M: float = EARTH_RADIUS_KM * 1000.0

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        validate_coordinates(self.latitude, self.longitude)

    def to_list(self) -> List[float]:
        """GeoJSON order: [longitude, latitude]."""
        return [self.longitude, self.latitude]


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not (-90.0 <= latitude <= 90.0):
        raise ValueError(f"Latitude must be in [-90, 90], got {latitude}")
    if not (-180.0 <= longitude <= 180.0):
        raise ValueError(f"Longitude must be in [-180, 180], got {longitude}")


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def _central_angle(point1: Any, point2: Any) -> float:
    lat1 = math.radians(point1.latitude)
    lat2 = math.radians(point2.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(point2.longitude - point1.longitude)

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2.0) ** 2
    )
    return 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def haversine(point1: Any, point2: Any) -> float:
    """
    Great-circle distance between two points using the Haversine formula.

    Returns
    -------
    float
        Distance in kilometers, rounded to 4 decimal places.

    Examples
    --------
    >>> round(haversine(Coordinate(13.0827, 80.2707), Coordinate(12.9716, 77.5946)))
    290

    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    return round(EARTH_RADIUS_KM * _central_angle(point1, point2), 4)


def haversine_m(point1: Any, point2: Any) -> float:
    """Great-circle distance in metres, rounded to 0.1 m."""
    return round(EARTH_RADIUS_M * _central_angle(point1, point2), 1)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Any, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Lat/lon box that fully contains the circle (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. Stores use it
    as a cheap rectangular pre-filter before the precise distance check.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Longitude delta shrinks toward the poles
    lat_rad = math.radians(center.latitude)
    if math.cos(lat_rad) > 1e-10:
        delta_lon = math.degrees(angular / math.cos(lat_rad))
    else:
        delta_lon = 180.0

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon

    return (
        max(min_lat, -90.0),
        min(max_lat, 90.0),
        max(min_lon, -180.0),
        min(max_lon, 180.0),
    )


def inside_bbox(
    lat: float, lon: float,
    min_lat: float, max_lat: float,
    min_lon: float, max_lon: float,
) -> bool:
    """Quick rectangular check."""
    return min_lat <= lat <= max_lat and min_lon <= lon <= max_lon


# ---------------------------------------------------------------------------
# Radius filtering
# ---------------------------------------------------------------------------

def is_inside_radius(center: Any, point: Any, radius_km: float) -> Tuple[bool, float]:
    """
    Check whether ``point`` falls within ``radius_km`` of ``center``.

    >>> is_inside_radius(Coordinate(13.0827, 80.2707), Coordinate(13.10, 80.30), 5.0)[0]
    True
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    dist = haversine(center, point)
    return (dist <= radius_km, dist)


def find_within_radius(
    center: Any,
    items: Iterable[T],
    radius_km: float,
    *,
    location_of: Callable[[T], Any],
    key_of: Callable[[T], str],
) -> List[Tuple[T, float]]:
    """
    Items whose location lies within ``radius_km`` of ``center``.

    Applies the bounding-box pre-filter, then the precise Haversine check.
    Items whose ``location_of`` returns None are ignored.

    Returns
    -------
    list of (item, distance_km)
        Ordered by increasing distance; ties broken by ``key_of(item)`` so the
        order is stable for a fixed data set.
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    bbox = bounding_box(center, radius_km)
    matched: List[Tuple[T, float]] = []

    for item in items:
        loc = location_of(item)
        if loc is None:
            continue
        if not inside_bbox(loc.latitude, loc.longitude, *bbox):
            continue
        dist = haversine(center, loc)
        if dist <= radius_km:
            matched.append((item, dist))

    matched.sort(key=lambda pair: (pair[1], key_of(pair[0])))
    return matched


# ---------------------------------------------------------------------------
# Point-to-route distance
# ---------------------------------------------------------------------------

def _project(origin: Any, point: Any) -> Tuple[float, float]:
    """Project ``point`` to metres on a plane tangent at ``origin``."""
    d_lon = point.longitude - origin.longitude
    # Shortest way round the antimeridian
    if d_lon > 180.0:
        d_lon -= 360.0
    elif d_lon < -180.0:
        d_lon += 360.0
    x = math.radians(d_lon) * math.cos(math.radians(origin.latitude)) * EARTH_RADIUS_M
    y = math.radians(point.latitude - origin.latitude) * EARTH_RADIUS_M
    return x, y


def distance_to_segment_m(point: Any, seg_start: Any, seg_end: Any) -> float:
    """Shortest distance in metres from ``point`` to segment [start, end]."""
    ax, ay = _project(point, seg_start)
    bx, by = _project(point, seg_end)
    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy

    if length_sq == 0.0:
        return round(math.hypot(ax, ay), 1)

    # Point sits at the projection origin
    t = -(ax * dx + ay * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return round(math.hypot(ax + t * dx, ay + t * dy), 1)


def distance_to_route_m(point: Any, route: Sequence[Any]) -> float:
    """
    Minimum distance in metres from ``point`` to a polyline.

    A single-point route degenerates to the point-to-point distance.
    """
    if not route:
        raise ValueError("Route must contain at least one point")
    if len(route) == 1:
        return haversine_m(point, route[0])
    return min(
        distance_to_segment_m(point, route[i], route[i + 1])
        for i in range(len(route) - 1)
    )


# ---------------------------------------------------------------------------
# Utility: Human-readable distance
# ---------------------------------------------------------------------------

def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.73 km'
    """
    if km < 1.0:
        return f"{int(round(km * 1000))} m"
    return f"{km:.2f} km"
