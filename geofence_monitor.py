from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Set

from geodesy import distance_m
from location_source import PositionFix
from route_models import Stop
from tick_schedule import Cadence


# Radius inside which the bus is considered at the stop (meters)
ARRIVAL_RADIUS_M = float(os.getenv("ARRIVAL_RADIUS_M", "50"))

# Radius inside which the bus is approaching the stop (meters)
APPROACHING_RADIUS_M = float(os.getenv("APPROACHING_RADIUS_M", "200"))

# Minimum spacing between two distance checks (seconds)
GEOFENCE_THROTTLE_S = float(os.getenv("GEOFENCE_THROTTLE_S", "2"))

# Poll cadence used by the session loop (seconds)
GEOFENCE_POLL_S = float(os.getenv("GEOFENCE_POLL_S", "1"))


@dataclass
class GeofenceState:
    is_near_stop: bool = False
    has_arrived: bool = False  # waiting for the driver to confirm or dismiss
    stop_id: Optional[str] = None
    stop_name: Optional[str] = None
    distance_to_stop_m: Optional[int] = None


class GeofenceMonitor:
    """
    Approaching / arrived detection for the current target stop.

    Each stop fires the auto-arrival callback at most once per navigation
    session, even if GPS jitter carries the bus in and out of the radius.
    ``visited`` holds stops the driver confirmed; both sets clear only when
    navigation stops.
    """

    def __init__(
        self,
        on_auto_arrival: Optional[Callable[[str, str], None]] = None,
        *,
        arrival_radius_m: float = ARRIVAL_RADIUS_M,
        approaching_radius_m: float = APPROACHING_RADIUS_M,
        throttle_s: float = GEOFENCE_THROTTLE_S,
    ) -> None:
        self._on_auto_arrival = on_auto_arrival
        self.arrival_radius_m = arrival_radius_m
        self.approaching_radius_m = approaching_radius_m
        self._throttle = Cadence(throttle_s)
        self.state = GeofenceState()
        self.confirmed = False
        self.visited: Set[str] = set()
        self._auto_fired: Set[str] = set()
        self._last_fix_at: Optional[datetime] = None

    def set_target(self, stop: Optional[Stop]) -> None:
        """Point the monitor at a new stop, clearing any pending arrival."""

        self.state = GeofenceState(
            stop_id=stop.stop_id if stop else None,
            stop_name=stop.name if stop else None,
        )
        self.confirmed = False
        self._throttle.reset()
        self._last_fix_at = None

    def evaluate(
        self,
        fix: Optional[PositionFix],
        stop: Optional[Stop],
        navigating: bool,
        now: datetime,
    ) -> GeofenceState:
        if not navigating:
            if self.state.stop_id is not None or self.visited or self._auto_fired:
                self.reset()
            return self.state

        target_id = stop.stop_id if stop else None
        if target_id != self.state.stop_id:
            self.set_target(stop)
        if stop is None or fix is None:
            return self.state
        if self._last_fix_at is not None and fix.timestamp <= self._last_fix_at:
            return self.state
        if not self._throttle.consume(now):
            return self.state
        self._last_fix_at = fix.timestamp

        distance = distance_m(fix.coordinate, stop.coordinate)
        self.state.distance_to_stop_m = int(round(distance))
        self.state.is_near_stop = distance <= self.approaching_radius_m

        if (
            distance <= self.arrival_radius_m
            and stop.stop_id not in self.visited
            and stop.stop_id not in self._auto_fired
        ):
            self._auto_fired.add(stop.stop_id)
            self.state.has_arrived = True
            print(f"[geofence] arrived at {stop.name} ({stop.stop_id}) {distance:.0f}m")
            if self._on_auto_arrival is not None:
                self._on_auto_arrival(stop.stop_id, stop.name)
        return self.state

    def confirm_arrival(self) -> Optional[str]:
        stop_id = self.state.stop_id
        if stop_id is None:
            return None
        self.visited.add(stop_id)
        self.confirmed = True
        self.state.has_arrived = False
        return stop_id

    def dismiss_arrival(self) -> None:
        self.state.has_arrived = False

    def reset(self) -> None:
        self.state = GeofenceState()
        self.confirmed = False
        self.visited.clear()
        self._auto_fired.clear()
        self._throttle.reset()
        self._last_fix_at = None
