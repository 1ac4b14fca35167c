"""One-shot "bus is close" notifications for the current target stop.

Independent from the arrival geofence: this fires once per stop when the bus
first comes within ``PROXIMITY_RADIUS_M`` so parents can be told to get ready.
"""
from __future__ import annotations

import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from geodesy import distance_m
from location_source import PositionFix
from route_models import Stop
from tick_schedule import Cadence


# Radius that triggers a proximity notification (meters)
PROXIMITY_RADIUS_M = float(os.getenv("PROXIMITY_RADIUS_M", "5000"))

# Minimum spacing between evaluations (seconds)
PROXIMITY_THROTTLE_S = float(os.getenv("PROXIMITY_THROTTLE_S", "10"))

# Session loop cadence (seconds)
PROXIMITY_TICK_S = float(os.getenv("PROXIMITY_TICK_S", "5"))

# Speeds below this are treated as unknown (meters per second)
MIN_RELIABLE_SPEED_MPS = 0.5

# Fallback speed when the device reports none, ~30 km/h (meters per second)
DEFAULT_SPEED_MPS = 8.33


@dataclass(frozen=True)
class ProximityNotification:
    stop_id: str
    stop_name: str
    distance_m: int
    eta_minutes: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "distance": self.distance_m,
            "etaMinutes": self.eta_minutes,
            "createdAt": self.created_at.isoformat(),
        }


def effective_speed_mps(speed_mps: Optional[float]) -> float:
    if speed_mps is None or speed_mps <= MIN_RELIABLE_SPEED_MPS:
        return DEFAULT_SPEED_MPS
    return speed_mps


class ProximityNotifier:
    def __init__(
        self,
        on_notify: Optional[Callable[[ProximityNotification], None]] = None,
        *,
        radius_m: float = PROXIMITY_RADIUS_M,
        throttle_s: float = PROXIMITY_THROTTLE_S,
    ) -> None:
        self._on_notify = on_notify
        self.radius_m = radius_m
        self._throttle = Cadence(throttle_s)
        self.notified: Set[str] = set()
        self.notifications: Deque[ProximityNotification] = deque(maxlen=50)
        self._last_fix_at: Optional[datetime] = None

    def evaluate(
        self,
        fix: Optional[PositionFix],
        stop: Optional[Stop],
        navigating: bool,
        now: datetime,
    ) -> Optional[ProximityNotification]:
        if not navigating:
            if self.notified:
                self.reset()
            return None
        if fix is None or stop is None:
            return None
        if stop.stop_id in self.notified:
            return None
        if self._last_fix_at is not None and fix.timestamp <= self._last_fix_at:
            return None
        if not self._throttle.consume(now):
            return None
        self._last_fix_at = fix.timestamp

        distance = distance_m(fix.coordinate, stop.coordinate)
        if distance > self.radius_m:
            return None

        speed = effective_speed_mps(fix.speed_mps)
        notification = ProximityNotification(
            stop_id=stop.stop_id,
            stop_name=stop.name,
            distance_m=int(round(distance)),
            eta_minutes=int(round(distance / speed / 60)),
            created_at=now,
        )
        self.notified.add(stop.stop_id)
        self.notifications.append(notification)
        print(
            f"[proximity] {stop.name}: {notification.distance_m}m, "
            f"~{notification.eta_minutes} min"
        )
        if self._on_notify is not None:
            self._on_notify(notification)
        return notification

    def recent(self) -> List[ProximityNotification]:
        return list(self.notifications)

    def reset(self) -> None:
        self.notified.clear()
        self._throttle.reset()
        self._last_fix_at = None
