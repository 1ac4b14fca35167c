import asyncio
import sys
from pathlib import Path

import networkx as nx
import osmnx as ox
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geodesy import Coordinate
from osm_router import LocalOSMRouter


def _graph() -> nx.MultiDiGraph:
    graph = nx.MultiDiGraph(crs="epsg:4326")
    graph.add_node(1, x=0.0, y=0.0)
    graph.add_node(2, x=0.0, y=0.01)
    graph.add_node(3, x=0.0, y=0.02)
    graph.add_node(4, x=0.01, y=0.01)
    graph.add_edge(1, 2, length=1112.0, travel_time=100.0)
    graph.add_edge(2, 3, length=1112.0)
    graph.add_edge(1, 4, length=5000.0, travel_time=400.0)
    graph.add_edge(4, 3, length=5000.0, travel_time=400.0)
    return graph


def test_routes_through_waypoints_leg_by_leg(tmp_path):
    router = LocalOSMRouter(tmp_path / "graph.graphml", graph=_graph())
    waypoints = [Coordinate(0.0001, 0.0), Coordinate(0.0, 0.0101), Coordinate(0.0, 0.0199)]

    result = asyncio.run(router.fetch_route(waypoints))

    assert [leg.distance_m for leg in result.legs] == [1112.0, 1112.0]
    assert result.legs[0].duration_s == 100.0
    # No travel_time on the second edge: derived from the fallback speed
    assert result.legs[1].duration_s == pytest.approx(1112.0 / 8.33)
    assert result.coordinates == [Coordinate(0.0, 0.0), Coordinate(0.0, 0.01), Coordinate(0.0, 0.02)]
    assert result.distance_m == 2224.0


def test_no_path_is_value_error(tmp_path):
    graph = _graph()
    graph.add_node(9, x=1.0, y=1.0)
    router = LocalOSMRouter(tmp_path / "graph.graphml", graph=graph)
    with pytest.raises(ValueError):
        router.route_through([Coordinate(0.0, 0.0), Coordinate(1.0, 1.0)])


def test_waypoints_snap_in_one_osmnx_lookup(tmp_path, monkeypatch):
    calls = []
    real_nearest_nodes = ox.distance.nearest_nodes

    def recording_nearest_nodes(graph, X, Y, *args, **kwargs):
        calls.append((list(X), list(Y)))
        return real_nearest_nodes(graph, X, Y, *args, **kwargs)

    monkeypatch.setattr(ox.distance, "nearest_nodes", recording_nearest_nodes)
    router = LocalOSMRouter(tmp_path / "graph.graphml", graph=_graph())

    nodes = router.nearest_nodes(router.graph, [Coordinate(0.009, 0.011), Coordinate(0.0, 0.0199)])

    assert nodes == [4, 3]
    assert calls == [([0.009, 0.0], [0.011, 0.0199])]


def test_snap_failure_is_value_error(tmp_path, monkeypatch):
    def broken_nearest_nodes(graph, X, Y, *args, **kwargs):
        raise ImportError("scikit-learn must be installed to search an unprojected graph")

    monkeypatch.setattr(ox.distance, "nearest_nodes", broken_nearest_nodes)
    router = LocalOSMRouter(tmp_path / "graph.graphml", graph=_graph())

    with pytest.raises(ValueError, match="failed to snap to road network"):
        router.route_through([Coordinate(0.0, 0.0), Coordinate(0.0, 0.02)])
