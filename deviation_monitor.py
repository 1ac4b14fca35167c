from __future__ import annotations

import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from geodesy import Coordinate, closest_point_on_polyline
from location_source import PositionFix
from tick_schedule import Cadence, seconds_since


# Distance from the polyline beyond which the bus is considered off route (meters)
OFF_ROUTE_THRESHOLD_M = float(os.getenv("OFF_ROUTE_THRESHOLD_M", "50"))

# Distance at which an off-route bus counts as back on route (meters)
ON_ROUTE_THRESHOLD_M = float(os.getenv("ON_ROUTE_THRESHOLD_M", str(OFF_ROUTE_THRESHOLD_M / 2)))

# Minimum time between two reroute requests (seconds)
REROUTE_COOLDOWN_S = float(os.getenv("REROUTE_COOLDOWN_S", "10"))

# Recompute cadence (seconds)
DEVIATION_TICK_S = float(os.getenv("DEVIATION_TICK_S", "2"))


RerouteFn = Callable[[List[Coordinate]], Awaitable[Any]]


@dataclass
class DeviationState:
    is_off_route: bool = False
    distance_from_route_m: int = 0
    is_recalculating: bool = False


class DeviationMonitor:
    """
    Two-state ON_ROUTE / OFF_ROUTE tracker with hysteresis.

    - ON -> OFF when the fix is more than ``off_route_threshold_m`` from the
      polyline and the reroute cooldown has elapsed.
    - OFF -> ON when the fix comes back within ``on_route_threshold_m``, or when
      a reroute request completes (success or failure).
    """

    def __init__(
        self,
        reroute_fn: Optional[RerouteFn] = None,
        *,
        off_route_threshold_m: float = OFF_ROUTE_THRESHOLD_M,
        on_route_threshold_m: float = ON_ROUTE_THRESHOLD_M,
        cooldown_s: float = REROUTE_COOLDOWN_S,
        tick_interval_s: float = DEVIATION_TICK_S,
    ) -> None:
        self._reroute_fn = reroute_fn
        self.off_route_threshold_m = off_route_threshold_m
        self.on_route_threshold_m = on_route_threshold_m
        self.cooldown_s = cooldown_s
        self._cadence = Cadence(tick_interval_s)
        self.state = DeviationState()
        self._last_reroute_at: Optional[datetime] = None
        self._last_fix_at: Optional[datetime] = None
        self._generation = 0
        self.reroute_count = 0
        self._recent_reroutes: Deque[Dict[str, Any]] = deque(maxlen=20)

    # Evaluation ---------------------------------------------------------
    def evaluate(
        self,
        fix: Optional[PositionFix],
        polyline: Sequence[Coordinate],
        navigating: bool,
        now: datetime,
    ) -> DeviationState:
        if not navigating:
            self.state.is_off_route = False
            self.state.distance_from_route_m = 0
            return self.state
        if fix is None:
            return self.state
        if len(polyline) < 2:
            self.state.is_off_route = False
            self.state.distance_from_route_m = 0
            return self.state
        if self._last_fix_at is not None and fix.timestamp <= self._last_fix_at:
            return self.state
        if not self._cadence.consume(now):
            return self.state
        self._last_fix_at = fix.timestamp

        projection = closest_point_on_polyline(fix.coordinate, polyline)
        if projection is None:
            return self.state
        distance = projection.distance_m

        if distance > self.off_route_threshold_m:
            if seconds_since(self._last_reroute_at, now) > self.cooldown_s:
                self.state.is_off_route = True
        elif distance <= self.on_route_threshold_m:
            self.state.is_off_route = False
        self.state.distance_from_route_m = int(round(distance))
        return self.state

    # Reroute ------------------------------------------------------------
    def should_reroute(
        self,
        fix: Optional[PositionFix],
        remaining_stops: Sequence[Coordinate],
        now: datetime,
    ) -> bool:
        return (
            self._reroute_fn is not None
            and self.state.is_off_route
            and not self.state.is_recalculating
            and fix is not None
            and len(remaining_stops) > 0
            and seconds_since(self._last_reroute_at, now) > self.cooldown_s
        )

    async def reroute(
        self,
        fix: Optional[PositionFix],
        remaining_stops: Sequence[Coordinate],
        now: datetime,
    ) -> Optional[Any]:
        """Request a new route from the current fix through the remaining stops.

        Returns the provider result, or ``None`` when no request was made, the
        request failed, or navigation was reset while it was in flight.
        """

        if not self.should_reroute(fix, remaining_stops, now):
            return None
        assert fix is not None and self._reroute_fn is not None

        generation = self._generation
        self._last_reroute_at = now
        self.state.is_recalculating = True
        self.reroute_count += 1
        waypoints = [fix.coordinate, *remaining_stops]
        entry: Dict[str, Any] = {
            "requested_at": now.isoformat(),
            "distance_m": self.state.distance_from_route_m,
            "waypoints": len(waypoints),
            "ok": False,
        }
        self._recent_reroutes.append(entry)
        print(
            f"[deviation] off route by {self.state.distance_from_route_m}m, "
            f"rerouting through {len(remaining_stops)} stops"
        )

        result: Optional[Any] = None
        try:
            result = await self._reroute_fn(waypoints)
            entry["ok"] = result is not None
        except Exception as exc:
            print(f"[deviation] reroute failed: {exc}")
            result = None
        finally:
            if generation == self._generation:
                self.state.is_recalculating = False
                self.state.is_off_route = False

        if generation != self._generation:
            print("[deviation] discarding reroute result from a finished session")
            return None
        return result

    def reset(self) -> None:
        """Forget all per-session state; in-flight reroutes become stale."""

        self._generation += 1
        self.state = DeviationState()
        self._last_reroute_at = None
        self._last_fix_at = None
        self._cadence.reset()

    def recent_reroutes(self) -> List[Dict[str, Any]]:
        return list(self._recent_reroutes)
