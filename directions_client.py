"""
Routing providers

The navigation engine never computes road geometry itself. It asks a routing
provider for a path through an ordered list of waypoints and receives the
polyline plus per-leg distance and duration.

Example usage:
    provider = MapboxDirectionsClient.from_env()
    result = await provider.fetch_route([Coordinate(-74.80, 10.98), Coordinate(-74.81, 10.99)])
    # result.coordinates, result.distance_m, result.legs[0].duration_s
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from geodesy import Coordinate, coordinate

# ---------------------------
# Configuration
# ---------------------------
MAPBOX_DIRECTIONS_URL = os.getenv(
    "MAPBOX_DIRECTIONS_URL", "https://api.mapbox.com/directions/v5/mapbox/driving"
)
ORS_DIRECTIONS_URL = os.getenv(
    "ORS_DIRECTIONS_URL",
    "https://api.openrouteservice.org/v2/directions/driving-car/geojson",
)
DIRECTIONS_HTTP_TIMEOUT_S = float(os.getenv("DIRECTIONS_HTTP_TIMEOUT_S", "10"))


@dataclass(frozen=True)
class RouteLeg:
    """Travel between two consecutive waypoints."""
    distance_m: float
    duration_s: float


@dataclass(frozen=True)
class DirectionsResult:
    coordinates: List[Coordinate]
    distance_m: float
    duration_s: float
    legs: List[RouteLeg] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinates": [[c.lng, c.lat] for c in self.coordinates],
            "distance": self.distance_m,
            "duration": self.duration_s,
            "legs": [{"distance": leg.distance_m, "duration": leg.duration_s} for leg in self.legs],
        }


class RoutingProvider(ABC):
    """Computes a drivable path through ordered waypoints."""

    @abstractmethod
    async def fetch_route(self, waypoints: Sequence[Coordinate]) -> DirectionsResult:
        """
        Return the route visiting ``waypoints`` in order.

        Raises:
            ValueError: fewer than two waypoints, or an unusable response.
            httpx.HTTPError: transport or HTTP status failure.
        """
        pass

    async def aclose(self) -> None:
        return None


def require_waypoints(waypoints: Sequence[Coordinate]) -> List[Coordinate]:
    points = [coordinate(wp) for wp in waypoints]
    if len(points) < 2:
        raise ValueError("at least two waypoints are required")
    return points


def _parse_legs(raw_legs: Any) -> List[RouteLeg]:
    legs: List[RouteLeg] = []
    if not isinstance(raw_legs, list):
        return legs
    for leg in raw_legs:
        if not isinstance(leg, dict):
            continue
        legs.append(
            RouteLeg(
                distance_m=float(leg.get("distance") or 0.0),
                duration_s=float(leg.get("duration") or 0.0),
            )
        )
    return legs


def _parse_line(raw: Any) -> List[Coordinate]:
    coords: List[Coordinate] = []
    if not isinstance(raw, list):
        return coords
    for pair in raw:
        if isinstance(pair, (list, tuple)) and len(pair) >= 2:
            try:
                coords.append(Coordinate(float(pair[0]), float(pair[1])))
            except (TypeError, ValueError):
                continue
    return coords


def parse_mapbox_route(data: Any) -> DirectionsResult:
    routes = data.get("routes") if isinstance(data, dict) else None
    if not routes:
        code = data.get("code") if isinstance(data, dict) else None
        raise ValueError(f"no route found ({code or 'empty response'})")
    route = routes[0]
    geometry = route.get("geometry") or {}
    coords = _parse_line(geometry.get("coordinates"))
    if len(coords) < 2:
        raise ValueError("route geometry missing")
    return DirectionsResult(
        coordinates=coords,
        distance_m=float(route.get("distance") or 0.0),
        duration_s=float(route.get("duration") or 0.0),
        legs=_parse_legs(route.get("legs")),
    )


def parse_ors_route(data: Any) -> DirectionsResult:
    features = data.get("features") if isinstance(data, dict) else None
    if not features:
        raise ValueError("no route found (empty response)")
    feature = features[0]
    geometry = feature.get("geometry") or {}
    coords = _parse_line(geometry.get("coordinates"))
    if len(coords) < 2:
        raise ValueError("route geometry missing")
    properties = feature.get("properties") or {}
    summary = properties.get("summary") or {}
    return DirectionsResult(
        coordinates=coords,
        distance_m=float(summary.get("distance") or 0.0),
        duration_s=float(summary.get("duration") or 0.0),
        legs=_parse_legs(properties.get("segments")),
    )


class _HTTPRoutingProvider(RoutingProvider):
    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=DIRECTIONS_HTTP_TIMEOUT_S, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MapboxDirectionsClient(_HTTPRoutingProvider):
    """Mapbox Directions API (driving profile)."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = MAPBOX_DIRECTIONS_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "MapboxDirectionsClient":
        """Build a client from ``MAPBOX_ACCESS_TOKEN``."""

        token = (os.getenv("MAPBOX_ACCESS_TOKEN") or "").strip()
        if not token:
            raise RuntimeError("Missing required environment variables: MAPBOX_ACCESS_TOKEN")
        return cls(access_token=token)

    async def fetch_route(self, waypoints: Sequence[Coordinate]) -> DirectionsResult:
        points = require_waypoints(waypoints)
        path = ";".join(f"{p.lng},{p.lat}" for p in points)
        params = {
            "geometries": "geojson",
            "overview": "full",
            "annotations": "duration,distance",
            "access_token": self._access_token,
        }
        client = await self._ensure_client()
        response = await client.get(f"{self._base_url}/{path}", params=params)
        response.raise_for_status()
        return parse_mapbox_route(response.json())


class OpenRouteServiceClient(_HTTPRoutingProvider):
    """openrouteservice directions (driving-car, GeoJSON output)."""

    def __init__(
        self,
        api_key: str,
        *,
        url: str = ORS_DIRECTIONS_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self._api_key = api_key
        self._url = url

    @classmethod
    def from_env(cls) -> "OpenRouteServiceClient":
        """Build a client from ``ORS_KEY``."""

        key = (os.getenv("ORS_KEY") or "").strip()
        if not key:
            raise RuntimeError("Missing required environment variables: ORS_KEY")
        return cls(api_key=key)

    async def fetch_route(self, waypoints: Sequence[Coordinate]) -> DirectionsResult:
        points = require_waypoints(waypoints)
        body = {"coordinates": [[p.lng, p.lat] for p in points]}
        headers = {"Authorization": self._api_key}
        client = await self._ensure_client()
        response = await client.post(self._url, json=body, headers=headers)
        response.raise_for_status()
        return parse_ors_route(response.json())


def build_routing_provider_from_env() -> Optional[RoutingProvider]:
    """Select a provider from ``ROUTING_PROVIDER`` (mapbox, ors or osm)."""

    name = (os.getenv("ROUTING_PROVIDER") or "").strip().lower()
    if not name:
        return None
    if name == "mapbox":
        return MapboxDirectionsClient.from_env()
    if name == "ors":
        return OpenRouteServiceClient.from_env()
    if name == "osm":
        from osm_router import LocalOSMRouter

        return LocalOSMRouter()
    raise RuntimeError(f"Unknown ROUTING_PROVIDER: {name}")


__all__ = [
    "DirectionsResult",
    "MapboxDirectionsClient",
    "OpenRouteServiceClient",
    "RouteLeg",
    "RoutingProvider",
    "build_routing_provider_from_env",
    "parse_mapbox_route",
    "parse_ors_route",
]
