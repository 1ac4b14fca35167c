"""Raw position fixes pushed by the device location source."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from geodesy import Coordinate

LOCATION_ERROR_CODES = {"permission_denied", "position_unavailable", "timeout", "unsupported"}


@dataclass(frozen=True)
class PositionFix:
    """A single reading from the location source."""
    coordinate: Coordinate
    timestamp: datetime
    accuracy_m: Optional[float] = None
    heading_deg: Optional[float] = None
    speed_mps: Optional[float] = None  # None when the device does not report speed


@dataclass(frozen=True)
class LocationError:
    code: str
    message: str
    timestamp: datetime


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_fix(payload: Dict[str, Any], *, received_at: Optional[datetime] = None) -> PositionFix:
    """Build a ``PositionFix`` from ``{lng, lat, accuracy, heading, speed}``."""

    lng = _optional_float(payload.get("lng", payload.get("lon")))
    lat = _optional_float(payload.get("lat"))
    if lng is None or lat is None:
        raise ValueError("fix requires numeric lng and lat")
    if not (-180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
        raise ValueError(f"fix out of range: lng={lng} lat={lat}")

    timestamp = received_at or datetime.now(timezone.utc)
    return PositionFix(
        coordinate=Coordinate(lng, lat),
        timestamp=timestamp,
        accuracy_m=_optional_float(payload.get("accuracy")),
        heading_deg=_optional_float(payload.get("heading")),
        speed_mps=_optional_float(payload.get("speed")),
    )


class LocationTracker:
    """Holds the latest fix; an error means no fix is available."""

    def __init__(self) -> None:
        self.fix: Optional[PositionFix] = None
        self.error: Optional[LocationError] = None
        self.fix_count = 0

    def push_fix(self, fix: PositionFix) -> None:
        # Out-of-order fixes are dropped so consumers see arrival order.
        if self.fix is not None and fix.timestamp < self.fix.timestamp:
            return
        self.fix = fix
        self.error = None
        self.fix_count += 1

    def push_error(self, code: str, message: str, now: datetime) -> LocationError:
        if code not in LOCATION_ERROR_CODES:
            code = "position_unavailable"
        self.error = LocationError(code=code, message=message, timestamp=now)
        self.fix = None
        print(f"[location] {code}: {message}")
        return self.error

    @property
    def coordinate(self) -> Optional[Coordinate]:
        return self.fix.coordinate if self.fix else None

    @property
    def speed_mps(self) -> Optional[float]:
        return self.fix.speed_mps if self.fix else None

    def reset(self) -> None:
        self.fix = None
        self.error = None
        self.fix_count = 0
