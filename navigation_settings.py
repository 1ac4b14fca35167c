from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import deviation_monitor
import eta_engine
import geofence_monitor
import proximity_notifier
import route_snapper
import trip_ledger

DEFAULT_SETTINGS_PATH = Path(os.getenv("NAVIGATION_SETTINGS_PATH", "config/navigation.json"))


@dataclass(frozen=True)
class NavigationSettings:
    """Thresholds and cadences for one navigation session."""

    snap_threshold_m: float = route_snapper.SNAP_THRESHOLD_M

    off_route_threshold_m: float = deviation_monitor.OFF_ROUTE_THRESHOLD_M
    on_route_threshold_m: float = deviation_monitor.ON_ROUTE_THRESHOLD_M
    reroute_cooldown_s: float = deviation_monitor.REROUTE_COOLDOWN_S
    deviation_tick_s: float = deviation_monitor.DEVIATION_TICK_S

    arrival_radius_m: float = geofence_monitor.ARRIVAL_RADIUS_M
    approaching_radius_m: float = geofence_monitor.APPROACHING_RADIUS_M
    geofence_throttle_s: float = geofence_monitor.GEOFENCE_THROTTLE_S
    geofence_poll_s: float = geofence_monitor.GEOFENCE_POLL_S

    proximity_radius_m: float = proximity_notifier.PROXIMITY_RADIUS_M
    proximity_throttle_s: float = proximity_notifier.PROXIMITY_THROTTLE_S
    proximity_tick_s: float = proximity_notifier.PROXIMITY_TICK_S

    fast_eta_tick_s: float = eta_engine.FAST_ETA_TICK_S
    eta_update_interval_s: float = eta_engine.ETA_UPDATE_INTERVAL_S
    eta_update_distance_m: float = eta_engine.ETA_UPDATE_DISTANCE_M

    ledger_sample_s: float = trip_ledger.LEDGER_SAMPLE_S
    ledger_max_jump_km: float = trip_ledger.LEDGER_MAX_JUMP_KM

    @classmethod
    def from_env(cls) -> "NavigationSettings":
        """Defaults, overridden by ``NAV_<FIELD>`` environment variables (upper case)."""

        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"NAV_{f.name.upper()}")
            value = _parse_float(raw)
            if value is not None:
                overrides[f.name] = value
        return cls(**overrides)

    def with_overrides(self, values: Dict[str, Any]) -> "NavigationSettings":
        known = {f.name for f in fields(self)}
        clean: Dict[str, float] = {}
        for key, raw in values.items():
            if key not in known:
                continue
            value = _parse_float(raw)
            if value is None or value < 0:
                print(f"[settings] ignoring invalid value for {key}: {raw!r}")
                continue
            clean[key] = value
        return replace(self, **clean)

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_navigation_settings(
    path: Path = DEFAULT_SETTINGS_PATH,
    *,
    base: Optional[NavigationSettings] = None,
) -> NavigationSettings:
    """Load settings from JSON, falling back to ``base`` (or defaults) per key."""

    settings = base or NavigationSettings()
    if not path.exists():
        return settings
    try:
        raw = json.loads(path.read_text())
    except Exception as exc:
        print(f"[settings] failed to load config {path}: {exc}")
        return settings
    if not isinstance(raw, dict):
        print(f"[settings] ignoring {path}: expected a JSON object")
        return settings
    return settings.with_overrides(raw)


def _parse_float(value: Optional[object]) -> Optional[float]:
    """Parse a value as a float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
