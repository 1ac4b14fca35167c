"""Snap raw GPS positions onto the reference route polyline."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Sequence

from geodesy import Coordinate, closest_point_on_polyline

# Maximum distance from the polyline at which a fix is still drawn on it (meters)
SNAP_THRESHOLD_M = float(os.getenv("SNAP_THRESHOLD_M", "50"))


@dataclass(frozen=True)
class SnapResult:
    position: Coordinate
    is_on_route: bool
    distance_to_route_m: Optional[float] = None


def snap_to_route(
    raw: Optional[Coordinate],
    polyline: Sequence[Coordinate],
    *,
    navigating: bool = True,
    threshold_m: float = SNAP_THRESHOLD_M,
) -> Optional[SnapResult]:
    """Return the position to display for ``raw``.

    Outside navigation, or when the polyline is degenerate, the raw point is
    passed through unchanged. Returns ``None`` only when there is no fix.
    """

    if raw is None:
        return None
    if not navigating:
        return SnapResult(position=raw, is_on_route=False)

    projection = closest_point_on_polyline(raw, polyline)
    if projection is None:
        return SnapResult(position=raw, is_on_route=False)
    if projection.distance_m > threshold_m:
        return SnapResult(position=raw, is_on_route=False, distance_to_route_m=projection.distance_m)
    return SnapResult(
        position=projection.point,
        is_on_route=True,
        distance_to_route_m=projection.distance_m,
    )


__all__ = ["SNAP_THRESHOLD_M", "SnapResult", "snap_to_route"]
