"""Load trip data from a JSON file or the route API."""
from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from geodesy import coordinate
from route_models import (
    DIRECTION_OUTBOUND,
    DIRECTION_RETURN,
    ROUTE_NOT_STARTED,
    ROUTE_STATUSES,
    STOP_PENDING,
    STUDENT_STATUSES,
    STUDENT_WAITING,
    Route,
    Stop,
    Student,
)

DEFAULT_ROUTE_PATH = Path(os.getenv("ROUTE_FILE", "config/route.json"))
ROUTE_API_HTTP_TIMEOUT_S = float(os.getenv("ROUTE_API_HTTP_TIMEOUT_S", "30"))

# API direction labels
_DIRECTION_ALIASES = {
    "to_school": DIRECTION_OUTBOUND,
    "from_school": DIRECTION_RETURN,
    DIRECTION_OUTBOUND: DIRECTION_OUTBOUND,
    DIRECTION_RETURN: DIRECTION_RETURN,
}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_student(raw: Dict[str, Any]) -> Student:
    student_id = raw.get("id")
    if student_id is None:
        raise ValueError("student entry missing id")
    status = str(raw.get("status") or STUDENT_WAITING)
    if status not in STUDENT_STATUSES:
        status = STUDENT_WAITING
    return Student(
        student_id=str(student_id),
        name=str(raw.get("name") or ""),
        status=status,
        grade=raw.get("grade"),
        parent_phone=raw.get("parentPhone"),
    )


def parse_stop(raw: Dict[str, Any]) -> Stop:
    stop_id = raw.get("id")
    if stop_id is None:
        raise ValueError("stop entry missing id")
    coords = raw.get("coordinates")
    if coords is None:
        raise ValueError(f"stop {stop_id} missing coordinates")
    students = [parse_student(s) for s in raw.get("students") or [] if isinstance(s, dict)]
    return Stop(
        stop_id=str(stop_id),
        name=str(raw.get("name") or ""),
        coordinate=coordinate(coords),
        address=str(raw.get("address") or ""),
        status=str(raw.get("status") or STOP_PENDING),
        students=students,
        completed_at=_parse_datetime(raw.get("completedAt")),
        is_terminal=bool(raw.get("isTerminal", False)),
        estimated_arrival=raw.get("estimatedArrival"),
    )


def parse_route(raw: Dict[str, Any]) -> Route:
    """Build a ``Route`` from the route API payload.

    Raises ``ValueError`` for payloads that cannot describe a trip.
    """

    if not isinstance(raw, dict):
        raise ValueError("route payload must be an object")
    route_id = raw.get("id")
    if route_id is None:
        raise ValueError("route payload missing id")
    direction_raw = str(raw.get("direction") or "to_school")
    direction = _DIRECTION_ALIASES.get(direction_raw)
    if direction is None:
        raise ValueError(f"unknown route direction: {direction_raw}")

    status = str(raw.get("status") or ROUTE_NOT_STARTED)
    if status not in ROUTE_STATUSES:
        raise ValueError(f"unknown route status: {status}")

    stops = [parse_stop(s) for s in raw.get("stops") or [] if isinstance(s, dict)]
    if not stops:
        raise ValueError(f"route {route_id} has no stops")
    for inner in stops[1:-1]:
        if inner.is_terminal:
            raise ValueError(f"stop {inner.stop_id} is terminal but not at either end")
    for stop in stops:
        if stop.is_terminal and stop.students:
            raise ValueError(f"terminal stop {stop.stop_id} cannot carry students")

    try:
        current_index = int(raw.get("currentStopIndex") or 0)
    except (TypeError, ValueError):
        current_index = 0
    current_index = max(0, min(current_index, len(stops)))

    return Route(
        route_id=str(route_id),
        name=str(raw.get("name") or ""),
        stops=stops,
        direction=direction,
        status=status,
        current_stop_index=current_index,
        estimated_start_time=raw.get("estimatedStartTime"),
        estimated_end_time=raw.get("estimatedEndTime"),
    )


def load_route_file(path: Path = DEFAULT_ROUTE_PATH) -> Route:
    with path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    return parse_route(raw)


class RouteSourceClient:
    """Bearer-token client for the driver route API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "RouteSourceClient":
        """Build a client from ``ROUTE_API_BASE_URL`` and ``ROUTE_API_TOKEN``."""

        base_url = (os.getenv("ROUTE_API_BASE_URL") or "").strip()
        token = (os.getenv("ROUTE_API_TOKEN") or "").strip()

        missing: List[str] = []
        if not base_url:
            missing.append("ROUTE_API_BASE_URL")
        if not token:
            missing.append("ROUTE_API_TOKEN")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
        return cls(base_url=base_url, token=token)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=ROUTE_API_HTTP_TIMEOUT_S,
                headers={"Authorization": f"Bearer {self._token}"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_active_route(self) -> Optional[Route]:
        client = await self._ensure_client()
        response = await client.get("/api/routes/active")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        if not data:
            return None
        return parse_route(data)

    async def start_route(self, route_id: str) -> Dict[str, Any]:
        client = await self._ensure_client()
        response = await client.post(f"/api/routes/{route_id}/start")
        response.raise_for_status()
        return response.json()

    async def finish_route(self, route_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        client = await self._ensure_client()
        body: Dict[str, Any] = {}
        if notes:
            body["notes"] = notes
        response = await client.post(f"/api/routes/{route_id}/finish", json=body)
        response.raise_for_status()
        return response.json()
