"""
School Bus Navigation Service (FastAPI)

Purpose
=======
Run the live navigation engine for one bus and expose its observable state
to the driver's device: snapped position, off-route and recalculating flags,
pending arrival, proximity notifications, per-stop ETAs and the final trip
report.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- ROUTE_FILE or ROUTE_API_BASE_URL + ROUTE_API_TOKEN: where the trip is loaded from
- ROUTING_PROVIDER (mapbox | ors | osm) plus that provider's credentials
- REPORT_API_URL: where finished reports are posted
- NAV_TICK_S: engine tick period in seconds (0 disables the background loop)
"""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request

from directions_client import build_routing_provider_from_env
from location_source import parse_fix
from navigation_session import NavigationSession
from navigation_settings import NavigationSettings, load_navigation_settings
from report_transport import ReportTransport
from route_source import RouteSourceClient, load_route_file
from route_state import RouteStateError

# ---------------------------
# Config
# ---------------------------
ROUTE_FILE = os.getenv("ROUTE_FILE", "").strip()
NAV_TICK_S = float(os.getenv("NAV_TICK_S", "1"))


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="School Bus Navigation")
app.state.session = None


def _get_session(request: Request) -> NavigationSession:
    session: Optional[NavigationSession] = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="no route loaded")
    return session


def _now() -> datetime:
    return datetime.now(timezone.utc)


@app.on_event("startup")
async def init_session() -> None:
    if getattr(app.state, "session", None) is not None:
        return
    settings = load_navigation_settings(base=NavigationSettings.from_env())

    route = None
    route_source: Optional[RouteSourceClient] = None
    if ROUTE_FILE:
        try:
            route = load_route_file(Path(ROUTE_FILE))
        except (OSError, ValueError) as exc:
            print(f"[route] failed to load {ROUTE_FILE}: {exc}")
    else:
        try:
            client = RouteSourceClient.from_env()
        except RuntimeError as exc:
            print(f"[route] route API not configured: {exc}")
        else:
            try:
                route = await client.get_active_route()
            except Exception as exc:
                print(f"[route] failed to fetch active route: {exc}")
            if route is None:
                await client.aclose()
            else:
                route_source = client
    if route is None:
        return

    try:
        provider = build_routing_provider_from_env()
    except RuntimeError as exc:
        print(f"[directions] provider not configured: {exc}")
        provider = None
    try:
        transport = ReportTransport.from_env()
    except RuntimeError as exc:
        print(f"[report] transport not configured: {exc}")
        transport = None

    app.state.session = NavigationSession(
        route,
        routing_provider=provider,
        report_transport=transport,
        route_source=route_source,
        settings=settings,
    )


@app.on_event("startup")
async def start_tick_loop() -> None:
    if NAV_TICK_S <= 0:
        return

    async def _loop():
        while True:
            session = getattr(app.state, "session", None)
            if session is not None:
                try:
                    await session.tick()
                except Exception as exc:
                    print(f"[session] tick failed: {exc}")
            await asyncio.sleep(NAV_TICK_S)

    app.state.tick_task = asyncio.create_task(_loop())


@app.on_event("shutdown")
async def shutdown_session() -> None:
    task = getattr(app.state, "tick_task", None)
    if task is not None:
        task.cancel()
    session: Optional[NavigationSession] = getattr(app.state, "session", None)
    if session is None:
        return
    session.stop_navigation()
    if session.routing_provider is not None:
        await session.routing_provider.aclose()
    if session.report_transport is not None:
        await session.report_transport.aclose()
    if session.route_source is not None:
        await session.route_source.aclose()


# ---------------------------
# Endpoints
# ---------------------------
@app.get("/api/navigation")
async def api_navigation_state(request: Request):
    return _get_session(request).snapshot()


@app.post("/api/navigation/start")
async def api_start_navigation(request: Request):
    session = _get_session(request)
    try:
        await session.start_navigation(_now())
    except RouteStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return session.snapshot()


@app.post("/api/navigation/fix")
async def api_push_fix(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    session = _get_session(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")
    try:
        fix = parse_fix(payload, received_at=_now())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    snapped = session.handle_fix(fix)
    return {
        "position": list(snapped.position) if snapped else None,
        "isOnRoute": snapped.is_on_route if snapped else False,
    }


@app.post("/api/navigation/location-error")
async def api_location_error(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    session = _get_session(request)
    payload = payload if isinstance(payload, dict) else {}
    code = str(payload.get("code") or "position_unavailable")
    message = str(payload.get("message") or "")
    session.handle_location_error(code, message, _now())
    return {"ok": True}


@app.post("/api/navigation/arrival/confirm")
async def api_confirm_arrival(request: Request):
    stop_id = _get_session(request).confirm_arrival()
    return {"stopId": stop_id}


@app.post("/api/navigation/arrival/dismiss")
async def api_dismiss_arrival(request: Request):
    _get_session(request).dismiss_arrival()
    return {"ok": True}


@app.post("/api/navigation/stops/complete")
async def api_complete_stop(request: Request):
    session = _get_session(request)
    try:
        report = session.complete_current_stop(_now())
    except RouteStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "currentStopIndex": session.route.current_stop_index,
        "status": session.route.status,
        "report": report.to_dict() if report else None,
    }


@app.post("/api/navigation/stops/reorder")
async def api_reorder_stops(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    session = _get_session(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")
    try:
        from_index = int(payload["from"])
        to_index = int(payload["to"])
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="from and to are required integers") from exc
    try:
        session.state_machine.reorder_stops(from_index, to_index)
    except RouteStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"stops": [stop.stop_id for stop in session.route.stops]}


@app.post("/api/navigation/students/{student_id}")
async def api_student_action(
    student_id: str, request: Request, payload: Optional[Dict[str, Any]] = Body(None)
):
    session = _get_session(request)
    action = str((payload or {}).get("action") or "").strip().lower()
    if not action:
        raise HTTPException(status_code=400, detail="action is required")
    try:
        student = session.record_student_action(student_id, action, _now())
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="student not found") from exc
    except RouteStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "student": student.to_dict(),
        "canCompleteStop": session.state_machine.can_complete_current_stop(),
    }


@app.post("/api/navigation/incidents")
async def api_report_incident(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    session = _get_session(request)
    kind = str((payload or {}).get("type") or "other")
    if not session.record_incident(kind):
        raise HTTPException(status_code=409, detail="route is not being tracked")
    return {"incidents": session.ledger.incidents}


@app.post("/api/navigation/finish")
async def api_finish_route(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    session = _get_session(request)
    notes = (payload or {}).get("notes")
    try:
        report = session.finish_route(_now(), driver_notes=str(notes) if notes else None)
    except RouteStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"report": report.to_dict() if report else None}


@app.post("/api/navigation/report/submit")
async def api_submit_report(request: Request):
    session = _get_session(request)
    if session.report is None:
        raise HTTPException(status_code=409, detail="no report available")
    ok = await session.submit_report(_now())
    return {"ok": ok, "report": session.report.to_dict()}
