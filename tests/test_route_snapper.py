import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geodesy import Coordinate
from route_snapper import snap_to_route

POLYLINE = [Coordinate(0, 0), Coordinate(0, 0.01), Coordinate(0, 0.02)]
M_PER_DEG = 111195.0


def test_point_on_polyline_snaps_to_itself():
    raw = Coordinate(0, 0.015)
    result = snap_to_route(raw, POLYLINE)
    assert result.is_on_route is True
    assert result.position.lng == pytest.approx(raw.lng)
    assert result.position.lat == pytest.approx(raw.lat)


def test_nearby_point_is_projected():
    raw = Coordinate(30 / M_PER_DEG, 0.005)
    result = snap_to_route(raw, POLYLINE)
    assert result.is_on_route is True
    assert result.position.lng == pytest.approx(0)
    assert result.distance_to_route_m == pytest.approx(30, abs=0.5)


def test_far_point_is_passed_through():
    raw = Coordinate(80 / M_PER_DEG, 0.005)
    result = snap_to_route(raw, POLYLINE)
    assert result.is_on_route is False
    assert result.position == raw


def test_degenerate_polyline_passes_raw_through():
    raw = Coordinate(0, 0.005)
    result = snap_to_route(raw, [Coordinate(0, 0)])
    assert result.is_on_route is False
    assert result.position == raw


def test_not_navigating_skips_snapping():
    raw = Coordinate(30 / M_PER_DEG, 0.005)
    result = snap_to_route(raw, POLYLINE, navigating=False)
    assert result.position == raw
    assert result.is_on_route is False


def test_no_fix_returns_none():
    assert snap_to_route(None, POLYLINE) is None
