import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geodesy import Coordinate
from route_models import DIRECTION_OUTBOUND, DIRECTION_RETURN
from route_source import RouteSourceClient, load_route_file, parse_route


def _payload(direction="to_school"):
    return {
        "id": "route-7",
        "name": "Ruta Norte - Mañana",
        "direction": direction,
        "status": "not_started",
        "currentStopIndex": 0,
        "estimatedStartTime": "06:15",
        "estimatedEndTime": "07:30",
        "stops": [
            {
                "id": "start",
                "name": "Terminal",
                "address": "Cra 46 #72",
                "coordinates": {"lat": 10.9878, "lng": -74.7889},
                "status": "pending",
                "isTerminal": True,
                "students": [],
            },
            {
                "id": "stop-1",
                "name": "Parque Venezuela",
                "address": "Calle 79",
                "coordinates": {"lat": 10.9950, "lng": -74.8010},
                "estimatedArrival": "06:30",
                "status": "pending",
                "isTerminal": False,
                "students": [
                    {"id": "s1", "name": "Sofía", "grade": "3A", "parentPhone": "300", "status": "waiting"},
                ],
            },
            {
                "id": "end",
                "name": "Colegio",
                "address": "Km 5",
                "coordinates": {"lat": 11.0100, "lng": -74.8200},
                "status": "pending",
                "isTerminal": True,
                "students": [],
            },
        ],
    }


def test_parse_route_maps_fields():
    route = parse_route(_payload())
    assert route.route_id == "route-7"
    assert route.direction == DIRECTION_OUTBOUND
    assert route.stops[1].coordinate == Coordinate(-74.8010, 10.9950)
    assert route.stops[1].students[0].name == "Sofía"
    assert route.stops[0].is_terminal and route.stops[-1].is_terminal
    assert route.estimated_start_time == "06:15"


def test_from_school_is_return_leg():
    assert parse_route(_payload("from_school")).direction == DIRECTION_RETURN


def test_rejects_terminal_with_students():
    payload = _payload()
    payload["stops"][0]["students"] = [{"id": "x", "name": "X"}]
    with pytest.raises(ValueError):
        parse_route(payload)


def test_rejects_terminal_in_the_middle():
    payload = _payload()
    payload["stops"][1]["isTerminal"] = True
    payload["stops"][1]["students"] = []
    with pytest.raises(ValueError):
        parse_route(payload)


def test_rejects_empty_route():
    payload = _payload()
    payload["stops"] = []
    with pytest.raises(ValueError):
        parse_route(payload)


def test_rejects_unknown_route_status():
    payload = _payload()
    payload["status"] = "paused"
    with pytest.raises(ValueError, match="unknown route status"):
        parse_route(payload)


def test_in_progress_status_is_kept():
    payload = _payload()
    payload["status"] = "in_progress"
    payload["currentStopIndex"] = 1
    route = parse_route(payload)
    assert route.status == "in_progress"
    assert route.current_stop.stop_id == "stop-1"


def test_load_route_file(tmp_path):
    path = tmp_path / "route.json"
    path.write_text(json.dumps(_payload()), encoding="utf-8")
    route = load_route_file(path)
    assert len(route.stops) == 3


def test_client_fetches_active_route_with_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_payload())

    client = RouteSourceClient("https://api.example.com", "tok", transport=httpx.MockTransport(handler))

    async def main():
        try:
            return await client.get_active_route()
        finally:
            await client.aclose()

    route = asyncio.run(main())
    assert route.route_id == "route-7"
    assert seen[0].url.path == "/api/routes/active"
    assert seen[0].headers["Authorization"] == "Bearer tok"


def test_client_returns_none_when_no_active_route():
    client = RouteSourceClient(
        "https://api.example.com",
        "tok",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    assert asyncio.run(client.get_active_route()) is None


def test_client_finish_sends_notes():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.url.path, json.loads(request.content or b"{}")))
        return httpx.Response(200, json={"success": True})

    client = RouteSourceClient("https://api.example.com", "tok", transport=httpx.MockTransport(handler))
    result = asyncio.run(client.finish_route("route-7", notes="ok"))
    assert result == {"success": True}
    assert bodies == [("/api/routes/route-7/finish", {"notes": "ok"})]


def test_from_env_reports_missing(monkeypatch):
    monkeypatch.delenv("ROUTE_API_BASE_URL", raising=False)
    monkeypatch.delenv("ROUTE_API_TOKEN", raising=False)
    with pytest.raises(RuntimeError) as exc:
        RouteSourceClient.from_env()
    assert "ROUTE_API_BASE_URL" in str(exc.value)
    assert "ROUTE_API_TOKEN" in str(exc.value)
