import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from navigation_settings import NavigationSettings, load_navigation_settings


def test_defaults():
    settings = NavigationSettings()
    assert settings.off_route_threshold_m == 50.0
    assert settings.on_route_threshold_m == 25.0
    assert settings.arrival_radius_m == 50.0
    assert settings.approaching_radius_m == 200.0
    assert settings.proximity_radius_m == 5000.0
    assert settings.ledger_max_jump_km == 0.5


def test_missing_file_returns_defaults(tmp_path):
    assert load_navigation_settings(tmp_path / "nope.json") == NavigationSettings()


def test_json_overrides_and_bad_values_ignored(tmp_path):
    path = tmp_path / "navigation.json"
    path.write_text(
        json.dumps({"arrival_radius_m": 80, "reroute_cooldown_s": "abc", "unknown": 1, "proximity_radius_m": -5})
    )
    settings = load_navigation_settings(path)
    assert settings.arrival_radius_m == 80.0
    assert settings.reroute_cooldown_s == 10.0
    assert settings.proximity_radius_m == 5000.0


def test_malformed_file_returns_base(tmp_path):
    path = tmp_path / "navigation.json"
    path.write_text("{not json")
    base = NavigationSettings(arrival_radius_m=70.0)
    assert load_navigation_settings(path, base=base) is base


def test_from_env(monkeypatch):
    monkeypatch.setenv("NAV_GEOFENCE_THROTTLE_S", "3")
    monkeypatch.setenv("NAV_PROXIMITY_RADIUS_M", "")
    settings = NavigationSettings.from_env()
    assert settings.geofence_throttle_s == 3.0
    assert settings.proximity_radius_m == 5000.0
