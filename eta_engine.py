"""
Per-stop distance and arrival estimates.

Two strategies:
- ``estimate_straight_line``: cumulative haversine distance from the current
  fix through every remaining stop divided by the current (or default)
  speed. Cheap, recomputed every few seconds for display.
- ``AccurateETAUpdater``: asks the routing provider for per-leg distance and
  duration. Throttled by elapsed time, distance travelled and off-route
  transitions; only one request is ever in flight.

Stops before the current pointer report ``distance_remaining_m == 0`` and no
ETA in both strategies.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from directions_client import DirectionsResult
from geodesy import Coordinate, distance_m
from location_source import PositionFix
from proximity_notifier import effective_speed_mps
from route_models import Stop
from tick_schedule import seconds_since


# Fast path refresh cadence (seconds)
FAST_ETA_TICK_S = float(os.getenv("FAST_ETA_TICK_S", "5"))

# Accurate path: refresh at least this often (seconds)
ETA_UPDATE_INTERVAL_S = float(os.getenv("ETA_UPDATE_INTERVAL_S", "60"))

# Accurate path: refresh after travelling this far since the last update (meters)
ETA_UPDATE_DISTANCE_M = float(os.getenv("ETA_UPDATE_DISTANCE_M", "200"))


DirectionsFn = Callable[[List[Coordinate]], Awaitable[Optional[DirectionsResult]]]


@dataclass(frozen=True)
class StopETA:
    stop_id: str
    distance_remaining_m: int
    eta_minutes: Optional[int]
    eta_time: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopId": self.stop_id,
            "distanceRemaining": self.distance_remaining_m,
            "etaMinutes": self.eta_minutes,
            "etaTime": self.eta_time.isoformat() if self.eta_time else None,
        }


@dataclass(frozen=True)
class ETASummary:
    next_stop_eta: Optional[StopETA]
    total_distance_remaining_m: int
    total_eta_minutes: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nextStopETA": self.next_stop_eta.to_dict() if self.next_stop_eta else None,
            "totalDistanceRemaining": self.total_distance_remaining_m,
            "totalETAMinutes": self.total_eta_minutes,
        }


def _passed(stop: Stop) -> StopETA:
    return StopETA(stop_id=stop.stop_id, distance_remaining_m=0, eta_minutes=None, eta_time=None)


def estimate_straight_line(
    position: Optional[Coordinate],
    stops: Sequence[Stop],
    current_index: int,
    speed_mps: Optional[float],
    now: datetime,
) -> List[StopETA]:
    """Straight-line cumulative estimate for every stop on the route."""

    if position is None or not stops:
        return []

    speed = effective_speed_mps(speed_mps)
    etas: List[StopETA] = []
    cumulative = 0.0
    previous: Coordinate = position
    for index, stop in enumerate(stops):
        if index < current_index:
            etas.append(_passed(stop))
            continue
        cumulative += distance_m(previous, stop.coordinate)
        previous = stop.coordinate
        seconds = cumulative / speed
        etas.append(
            StopETA(
                stop_id=stop.stop_id,
                distance_remaining_m=int(round(cumulative)),
                eta_minutes=int(round(seconds / 60)),
                eta_time=now + timedelta(seconds=seconds),
            )
        )
    return etas


def etas_from_directions(
    result: DirectionsResult,
    stops: Sequence[Stop],
    current_index: int,
    now: datetime,
) -> List[StopETA]:
    """Accumulate per-leg distance/duration into per-stop estimates.

    Leg ``i`` of ``result`` ends at ``stops[current_index + i]``. Stops without
    a matching leg report no ETA.
    """

    etas: List[StopETA] = []
    cumulative_distance = 0.0
    cumulative_duration = 0.0
    for index, stop in enumerate(stops):
        if index < current_index:
            etas.append(_passed(stop))
            continue
        leg_index = index - current_index
        if leg_index >= len(result.legs):
            etas.append(_passed(stop))
            continue
        leg = result.legs[leg_index]
        cumulative_distance += leg.distance_m
        cumulative_duration += leg.duration_s
        etas.append(
            StopETA(
                stop_id=stop.stop_id,
                distance_remaining_m=int(round(cumulative_distance)),
                eta_minutes=int(round(cumulative_duration / 60)),
                eta_time=now + timedelta(seconds=cumulative_duration),
            )
        )
    return etas


def summarize(etas: Sequence[StopETA], current_index: int) -> ETASummary:
    next_eta = etas[current_index] if 0 <= current_index < len(etas) else None
    last = etas[-1] if etas else None
    return ETASummary(
        next_stop_eta=next_eta,
        total_distance_remaining_m=last.distance_remaining_m if last else 0,
        total_eta_minutes=last.eta_minutes if last else None,
    )


class AccurateETAUpdater:
    """Provider-backed ETAs refreshed on time, distance and deviation triggers."""

    def __init__(
        self,
        directions_fn: Optional[DirectionsFn] = None,
        *,
        update_interval_s: float = ETA_UPDATE_INTERVAL_S,
        update_distance_m: float = ETA_UPDATE_DISTANCE_M,
    ) -> None:
        self._directions_fn = directions_fn
        self.update_interval_s = update_interval_s
        self.update_distance_m = update_distance_m
        self.etas: List[StopETA] = []
        self.is_updating = False
        self.last_update_at: Optional[datetime] = None
        self.last_update_position: Optional[Coordinate] = None
        self._was_off_route = False
        self._generation = 0
        self.failures = 0

    def observe_off_route(self, is_off_route: bool) -> None:
        """Record the latest deviation flag once it has been acted upon."""

        self._was_off_route = is_off_route

    def should_update(self, position: Optional[Coordinate], is_off_route: bool, now: datetime) -> bool:
        if self._directions_fn is None or position is None or self.is_updating:
            return False
        if self.last_update_at is None:
            return True
        if seconds_since(self.last_update_at, now) >= self.update_interval_s:
            return True
        if is_off_route and not self._was_off_route:
            return True
        if self.last_update_position is not None:
            if distance_m(self.last_update_position, position) >= self.update_distance_m:
                return True
        return False

    async def maybe_update(
        self,
        fix: Optional[PositionFix],
        stops: Sequence[Stop],
        current_index: int,
        is_off_route: bool,
        now: datetime,
    ) -> bool:
        """Check the triggers, record the deviation flag, then update if due."""

        due = self.should_update(fix.coordinate if fix else None, is_off_route, now)
        self.observe_off_route(is_off_route)
        if not due:
            return False
        return await self.update(fix, stops, current_index, now)

    async def update(
        self,
        fix: Optional[PositionFix],
        stops: Sequence[Stop],
        current_index: int,
        now: datetime,
    ) -> bool:
        """Refresh ``etas`` from the provider. Returns True when values changed.

        A failed or empty response keeps the previous estimates. A response
        that arrives after ``reset()`` or ``invalidate()`` is discarded.
        """

        if fix is None or self._directions_fn is None or self.is_updating:
            return False
        remaining = list(stops[current_index:])
        if not remaining:
            return False
        position = fix.coordinate

        generation = self._generation
        self.is_updating = True
        waypoints = [position, *(s.coordinate for s in remaining)]
        try:
            result = await self._directions_fn(waypoints)
        except Exception as exc:
            print(f"[eta] directions request failed: {exc}")
            result = None
        finally:
            if generation == self._generation:
                self.is_updating = False

        if generation != self._generation:
            return False
        if result is None or not result.legs:
            self.failures += 1
            return False

        self.etas = etas_from_directions(result, stops, current_index, now)
        self.last_update_at = now
        self.last_update_position = position
        return True

    def summary(self, current_index: int) -> ETASummary:
        return summarize(self.etas, current_index)

    def invalidate(self) -> None:
        """Discard any in-flight response; used when the stop pointer moves."""

        self._generation += 1
        self.is_updating = False
        self.last_update_at = None

    def reset(self) -> None:
        self._generation += 1
        self.etas = []
        self.is_updating = False
        self.last_update_at = None
        self.last_update_position = None
        self._was_off_route = False
