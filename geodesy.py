"""Geodesy helpers shared by every navigation component.

Coordinates are ``(lng, lat)`` pairs in WGS84 degrees, matching the GeoJSON
ordering used by the routing providers.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional, Sequence

# Mean Earth radius used by the haversine formula (meters)
EARTH_RADIUS_M = 6371000.0


class Coordinate(NamedTuple):
    """Immutable ``(lng, lat)`` position in degrees."""
    lng: float
    lat: float


@dataclass(frozen=True)
class PolylineProjection:
    """Closest point on a polyline and its distance from the query point."""
    point: Coordinate
    distance_m: float
    segment_index: int


def coordinate(value: Any) -> Coordinate:
    """Coerce ``[lng, lat]``, ``{"lng", "lat"}`` or a ``Coordinate`` into a ``Coordinate``."""

    if isinstance(value, Coordinate):
        return value
    if isinstance(value, dict):
        lng = value.get("lng", value.get("lon"))
        lat = value.get("lat")
        if lng is None or lat is None:
            raise ValueError(f"coordinate mapping requires lng and lat: {value!r}")
        return Coordinate(float(lng), float(lat))
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        return Coordinate(float(value[0]), float(value[1]))
    raise ValueError(f"unsupported coordinate value: {value!r}")


def distance_m(a: Sequence[float], b: Sequence[float]) -> float:
    """Great-circle distance in meters between two ``(lng, lat)`` points."""

    lon1, lat1 = a[0], a[1]
    lon2, lat2 = b[0], b[1]
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    h = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def closest_point_on_segment(
    point: Sequence[float],
    seg_start: Sequence[float],
    seg_end: Sequence[float],
) -> Coordinate:
    """Project ``point`` onto the segment, clamping to its endpoints.

    The projection is done in planar degree space, which is adequate over the
    few hundred meters a single route segment usually spans.
    """

    x1, y1 = seg_start[0], seg_start[1]
    x2, y2 = seg_end[0], seg_end[1]
    dx = x2 - x1
    dy = y2 - y1
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return Coordinate(x1, y1)

    t = ((point[0] - x1) * dx + (point[1] - y1) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return Coordinate(x1 + t * dx, y1 + t * dy)


def closest_point_on_polyline(
    point: Sequence[float],
    polyline: Sequence[Sequence[float]],
) -> Optional[PolylineProjection]:
    """Return the nearest projection of ``point`` onto ``polyline``.

    Returns ``None`` when the polyline has fewer than two points.
    """

    if len(polyline) < 2:
        return None

    best: Optional[PolylineProjection] = None
    for idx in range(len(polyline) - 1):
        candidate = closest_point_on_segment(point, polyline[idx], polyline[idx + 1])
        dist = distance_m(point, candidate)
        if best is None or dist < best.distance_m:
            best = PolylineProjection(point=candidate, distance_m=dist, segment_index=idx)
    return best


def path_length_m(points: Sequence[Sequence[float]]) -> float:
    """Sum of haversine distances along consecutive points."""

    total = 0.0
    for a, b in zip(points[:-1], points[1:]):
        total += distance_m(a, b)
    return total


__all__ = [
    "Coordinate",
    "EARTH_RADIUS_M",
    "PolylineProjection",
    "closest_point_on_polyline",
    "closest_point_on_segment",
    "coordinate",
    "distance_m",
    "path_length_m",
]
