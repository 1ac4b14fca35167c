import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geodesy import (
    Coordinate,
    closest_point_on_polyline,
    closest_point_on_segment,
    coordinate,
    distance_m,
    path_length_m,
)


class TestDistance:
    """Tests for the haversine distance."""

    def test_zero_for_same_point(self):
        a = Coordinate(-74.8, 10.98)
        assert distance_m(a, a) == 0

    def test_symmetric(self):
        a = Coordinate(-74.80, 10.98)
        b = Coordinate(-74.79, 11.00)
        assert distance_m(a, b) == pytest.approx(distance_m(b, a))

    def test_one_hundredth_degree_of_latitude(self):
        # 0.01 deg of arc on a 6371 km sphere
        assert distance_m(Coordinate(0, 0), Coordinate(0, 0.01)) == pytest.approx(1111.95, abs=0.1)

    def test_known_city_distance(self):
        # Barranquilla to Cartagena is roughly 100 km great-circle
        barranquilla = Coordinate(-74.7813, 10.9685)
        cartagena = Coordinate(-75.4794, 10.3910)
        assert distance_m(barranquilla, cartagena) == pytest.approx(99_600, rel=0.02)


class TestClosestPointOnSegment:
    def test_projects_onto_interior(self):
        point = closest_point_on_segment((0.001, 0.005), (0, 0), (0, 0.01))
        assert point.lng == pytest.approx(0)
        assert point.lat == pytest.approx(0.005)

    def test_clamps_before_start(self):
        point = closest_point_on_segment((0, -0.01), (0, 0), (0, 0.01))
        assert point == Coordinate(0, 0)

    def test_clamps_after_end(self):
        point = closest_point_on_segment((0.002, 0.05), (0, 0), (0, 0.01))
        assert point == Coordinate(0, 0.01)

    def test_degenerate_segment_returns_start(self):
        point = closest_point_on_segment((1, 1), (0.5, 0.5), (0.5, 0.5))
        assert point == Coordinate(0.5, 0.5)


class TestClosestPointOnPolyline:
    def test_none_for_short_polyline(self):
        assert closest_point_on_polyline((0, 0), []) is None
        assert closest_point_on_polyline((0, 0), [Coordinate(0, 0)]) is None

    def test_picks_nearest_segment(self):
        polyline = [Coordinate(0, 0), Coordinate(0, 0.01), Coordinate(0.01, 0.01)]
        result = closest_point_on_polyline((0.005, 0.0101), polyline)
        assert result is not None
        assert result.segment_index == 1
        assert result.point.lat == pytest.approx(0.01)
        assert result.distance_m == pytest.approx(11.1, abs=0.5)

    def test_point_on_line_has_zero_distance(self):
        polyline = [Coordinate(0, 0), Coordinate(0, 0.01)]
        result = closest_point_on_polyline((0, 0.004), polyline)
        assert result.distance_m == pytest.approx(0, abs=1e-6)


def test_coordinate_coercion():
    assert coordinate([1, 2]) == Coordinate(1.0, 2.0)
    assert coordinate({"lat": 2, "lng": 1}) == Coordinate(1.0, 2.0)
    with pytest.raises(ValueError):
        coordinate({"lat": 2})


def test_path_length_sums_segments():
    points = [Coordinate(0, 0), Coordinate(0, 0.01), Coordinate(0, 0.02)]
    assert path_length_m(points) == pytest.approx(2 * 1111.95, abs=0.5)
