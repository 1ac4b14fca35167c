"""OSMnx-based local routing provider.

Offline fallback for the hosted directions APIs: builds (or loads) a drivable
OpenStreetMap graph for the service area and chains shortest paths between
consecutive waypoints. Graph data is cached on disk so startup does not
repeatedly hit the Overpass/OSM APIs.
"""
from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import networkx as nx
import osmnx as ox

from directions_client import DirectionsResult, RouteLeg, RoutingProvider, require_waypoints
from geodesy import Coordinate

# ---------------------------
# Configuration
# ---------------------------
# Bounds roughly cover Barranquilla's metropolitan area.
BBOX_NORTH = float(os.getenv("OSM_ROUTER_BBOX_NORTH", "11.05"))
BBOX_SOUTH = float(os.getenv("OSM_ROUTER_BBOX_SOUTH", "10.90"))
BBOX_EAST = float(os.getenv("OSM_ROUTER_BBOX_EAST", "-74.74"))
BBOX_WEST = float(os.getenv("OSM_ROUTER_BBOX_WEST", "-74.88"))

DATA_DIR = Path(os.getenv("OSM_ROUTER_DATA_DIR", "/data"))
GRAPH_FILENAME = os.getenv("OSM_ROUTER_GRAPH_FILENAME", "osmnx_drive.graphml")
GRAPH_PATH = DATA_DIR / GRAPH_FILENAME

# Travel speed assumed for edges without a travel_time attribute (meters per second)
FALLBACK_EDGE_SPEED_MPS = 8.33


class LocalOSMRouter(RoutingProvider):
    """Thin wrapper around an OSMnx drive graph."""

    def __init__(
        self,
        graph_path: Path = GRAPH_PATH,
        *,
        graph: Optional[nx.MultiDiGraph] = None,
    ) -> None:
        self.graph_path = graph_path
        self.graph: Optional[nx.MultiDiGraph] = graph

    # Public API -----------------------------------------------------
    def ensure_graph(self) -> nx.MultiDiGraph:
        """Load the cached graph or build it once from OSM."""

        if self.graph is not None:
            return self.graph
        if self.graph_path.exists():
            self.graph = ox.load_graphml(self.graph_path)
            return self.graph

        self.graph_path.parent.mkdir(parents=True, exist_ok=True)
        self.graph = self._build_graph()
        ox.save_graphml(self.graph, self.graph_path)
        return self.graph

    async def fetch_route(self, waypoints: Sequence[Coordinate]) -> DirectionsResult:
        points = require_waypoints(waypoints)
        return await asyncio.to_thread(self.route_through, points)

    def route_through(self, waypoints: Sequence[Coordinate]) -> DirectionsResult:
        graph = self.ensure_graph()
        if graph is None:
            raise RuntimeError("routing graph unavailable")

        nodes = self.nearest_nodes(graph, waypoints)
        coords: List[Coordinate] = []
        legs: List[RouteLeg] = []
        for origin, dest in zip(nodes[:-1], nodes[1:]):
            try:
                path = nx.shortest_path(graph, origin, dest, weight="length")
            except nx.NetworkXNoPath as exc:
                raise ValueError(f"no route found: {exc}")
            leg_coords, leg_distance, leg_duration = self._path_coordinates(graph, path)
            legs.append(RouteLeg(distance_m=leg_distance, duration_s=leg_duration))
            if not coords:
                coords.extend(leg_coords)
            else:
                coords.extend(leg_coords[1:])

        if len(coords) < 2:
            # All waypoints snapped to one node; fall back to the raw points.
            coords = list(waypoints)
        return DirectionsResult(
            coordinates=coords,
            distance_m=sum(leg.distance_m for leg in legs),
            duration_s=sum(leg.duration_s for leg in legs),
            legs=legs,
        )

    # Internal helpers ----------------------------------------------
    def nearest_nodes(self, graph: nx.MultiDiGraph, points: Sequence[Coordinate]) -> list:
        try:
            nodes = ox.distance.nearest_nodes(
                graph, [p.lng for p in points], [p.lat for p in points]
            )
        except Exception as exc:
            raise ValueError(f"failed to snap to road network: {exc}")
        return list(nodes)

    def _build_graph(self) -> nx.MultiDiGraph:
        """Fetch a fresh drivable graph covering the configured bounding box."""

        graph = ox.graph_from_bbox(
            bbox=(BBOX_WEST, BBOX_SOUTH, BBOX_EAST, BBOX_NORTH),
            network_type="drive",
            simplify=True,
        )
        graph = ox.add_edge_speeds(graph)
        graph = ox.add_edge_travel_times(graph)
        return graph

    def _path_coordinates(
        self, graph: nx.MultiDiGraph, path: Sequence[int]
    ) -> Tuple[List[Coordinate], float, float]:
        coords: List[Coordinate] = []
        distance = 0.0
        duration = 0.0

        if len(path) == 1:
            data = graph.nodes[path[0]]
            return [Coordinate(float(data["x"]), float(data["y"]))], 0.0, 0.0

        for u, v in zip(path[:-1], path[1:]):
            edge_data = graph.get_edge_data(u, v, default={})
            segment = self._choose_edge(edge_data)
            length = float(segment.get("length", 0.0) or 0.0)
            distance += length
            travel_time = segment.get("travel_time")
            if travel_time:
                duration += float(travel_time)
            else:
                duration += length / FALLBACK_EDGE_SPEED_MPS
            segment_coords = self._edge_coordinates(graph, u, v, segment)
            if not coords:
                coords.extend(segment_coords)
            else:
                coords.extend(segment_coords[1:])

        return coords, distance, duration

    def _choose_edge(self, edge_data: dict) -> dict:
        if not edge_data:
            return {}
        if len(edge_data) == 1:
            return next(iter(edge_data.values()))
        return min(edge_data.values(), key=lambda d: d.get("length", float("inf")))

    def _edge_coordinates(
        self, graph: nx.MultiDiGraph, u: int, v: int, data: dict
    ) -> List[Coordinate]:
        geometry = data.get("geometry") if isinstance(data, dict) else None
        if geometry is not None:
            return [Coordinate(float(lon), float(lat)) for lon, lat in geometry.coords]

        return [
            Coordinate(float(graph.nodes[u]["x"]), float(graph.nodes[u]["y"])),
            Coordinate(float(graph.nodes[v]["x"]), float(graph.nodes[v]["y"])),
        ]


__all__ = [
    "LocalOSMRouter",
    "GRAPH_PATH",
    "DATA_DIR",
]
