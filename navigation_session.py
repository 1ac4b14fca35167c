"""
Navigation session orchestrator.

Owns every per-trip component and serializes their side effects:

- ``handle_fix`` / ``handle_location_error`` are called as the location source
  pushes readings; snapping happens immediately.
- ``tick`` is called on a steady clock (about once per second). Each monitor
  runs on its own cadence and network-bound work (reroute, accurate ETA) is
  scheduled as an asyncio task so fix processing never waits on it.
- ``stop_navigation`` cancels in-flight tasks and bumps the session
  generation so late responses cannot touch state.
"""
from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import httpx

from directions_client import DirectionsResult, RoutingProvider
from deviation_monitor import DeviationMonitor
from eta_engine import AccurateETAUpdater, StopETA, estimate_straight_line, summarize
from geodesy import Coordinate
from geofence_monitor import GeofenceMonitor
from location_source import LocationTracker, PositionFix
from navigation_settings import NavigationSettings
from proximity_notifier import ProximityNotification, ProximityNotifier
from report_transport import ReportTransport
from route_models import ROUTE_IN_PROGRESS, Route, Stop
from route_snapper import SnapResult, snap_to_route
from route_source import RouteSourceClient
from route_state import RouteStateMachine
from tick_schedule import Cadence
from trip_ledger import RouteReport, TripLedger

INCIDENT_KINDS = {"traffic", "road_closed", "mechanical", "weather", "other"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NavigationSession:
    """Live tracking state for one vehicle on one trip."""

    def __init__(
        self,
        route: Route,
        *,
        routing_provider: Optional[RoutingProvider] = None,
        report_transport: Optional[ReportTransport] = None,
        route_source: Optional[RouteSourceClient] = None,
        settings: Optional[NavigationSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_auto_arrival: Optional[Callable[[str, str], None]] = None,
        on_proximity: Optional[Callable[[ProximityNotification], None]] = None,
    ) -> None:
        self.settings = settings or NavigationSettings()
        self.clock = clock or _utcnow
        self.route = route
        self.routing_provider = routing_provider
        self.report_transport = report_transport
        self.route_source = route_source
        self._on_auto_arrival = on_auto_arrival
        self._on_proximity = on_proximity

        s = self.settings
        directions_fn = self._fetch_directions if routing_provider is not None else None
        self.location = LocationTracker()
        self.ledger = TripLedger(max_jump_km=s.ledger_max_jump_km)
        self.state_machine = RouteStateMachine(
            route, self.ledger, on_stop_changed=self._handle_stop_changed
        )
        self.deviation = DeviationMonitor(
            directions_fn,
            off_route_threshold_m=s.off_route_threshold_m,
            on_route_threshold_m=s.on_route_threshold_m,
            cooldown_s=s.reroute_cooldown_s,
            tick_interval_s=s.deviation_tick_s,
        )
        self.geofence = GeofenceMonitor(
            self._handle_auto_arrival,
            arrival_radius_m=s.arrival_radius_m,
            approaching_radius_m=s.approaching_radius_m,
            throttle_s=s.geofence_throttle_s,
        )
        self.proximity = ProximityNotifier(
            self._handle_proximity,
            radius_m=s.proximity_radius_m,
            throttle_s=s.proximity_throttle_s,
        )
        self.accurate_eta = AccurateETAUpdater(
            directions_fn,
            update_interval_s=s.eta_update_interval_s,
            update_distance_m=s.eta_update_distance_m,
        )

        self._geofence_cadence = Cadence(s.geofence_poll_s)
        self._proximity_cadence = Cadence(s.proximity_tick_s)
        self._fast_eta_cadence = Cadence(s.fast_eta_tick_s)
        self._ledger_cadence = Cadence(s.ledger_sample_s)

        self.navigating = False
        self.polyline: Tuple[Coordinate, ...] = tuple(stop.coordinate for stop in route.stops)
        self.snapped: Optional[SnapResult] = None
        self.fast_etas: List[StopETA] = []
        self.report: Optional[RouteReport] = None
        self.report_submitted = False
        self.events: Deque[Dict[str, Any]] = deque(maxlen=100)

        self._generation = 0
        self._stop_generation = 0
        self._last_ledger_fix_at: Optional[datetime] = None
        self._reroute_task: Optional[asyncio.Task] = None
        self._eta_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # Collaborator adapters ------------------------------------------
    async def _fetch_directions(self, waypoints: List[Coordinate]) -> Optional[DirectionsResult]:
        if self.routing_provider is None:
            return None
        return await self.routing_provider.fetch_route(waypoints)

    def _handle_auto_arrival(self, stop_id: str, stop_name: str) -> None:
        self.events.append(
            {"type": "arrival", "stopId": stop_id, "stopName": stop_name, "at": self.clock().isoformat()}
        )
        if self._on_auto_arrival is not None:
            self._on_auto_arrival(stop_id, stop_name)

    def _handle_proximity(self, notification: ProximityNotification) -> None:
        self.events.append({"type": "proximity", **notification.to_dict()})
        if self._on_proximity is not None:
            self._on_proximity(notification)

    def _handle_stop_changed(self, stop: Optional[Stop]) -> None:
        self._stop_generation += 1
        self.geofence.set_target(stop)
        self.accurate_eta.invalidate()
        self._fast_eta_cadence.reset()

    # Location input -------------------------------------------------
    def handle_fix(self, fix: PositionFix) -> Optional[SnapResult]:
        self.location.push_fix(fix)
        self.snapped = snap_to_route(
            self.location.coordinate,
            self.polyline,
            navigating=self.navigating,
            threshold_m=self.settings.snap_threshold_m,
        )
        return self.snapped

    def handle_location_error(self, code: str, message: str, now: Optional[datetime] = None) -> None:
        self.location.push_error(code, message, now or self.clock())
        self.snapped = None

    # Lifecycle ------------------------------------------------------
    async def start_navigation(self, now: Optional[datetime] = None) -> None:
        """Start the trip and fetch the initial reference polyline.

        A trip loaded already in progress is resumed from its current stop
        instead of restarted.
        """

        now = now or self.clock()
        resuming = self.route.status == ROUTE_IN_PROGRESS
        if resuming:
            self.state_machine.resume_route(now, self.location.coordinate)
        else:
            self.state_machine.start_route(now, self.location.coordinate)
        self.navigating = True
        self.report = None
        self.report_submitted = False
        generation = self._generation
        if not resuming:
            await self._notify_route_started()
        await self._load_initial_polyline(generation)

    async def _notify_route_started(self) -> bool:
        if self.route_source is None:
            return False
        try:
            await self.route_source.start_route(self.route.route_id)
        except httpx.HTTPError as exc:
            print(f"[session] route API start for {self.route.route_id} failed: {exc}")
            return False
        return True

    async def _notify_route_finished(self, driver_notes: Optional[str]) -> bool:
        if self.route_source is None:
            return False
        try:
            await self.route_source.finish_route(self.route.route_id, notes=driver_notes)
        except httpx.HTTPError as exc:
            print(f"[session] route API finish for {self.route.route_id} failed: {exc}")
            return False
        return True

    async def _load_initial_polyline(self, generation: int) -> None:
        waypoints = [stop.coordinate for stop in self.route.remaining_stops()]
        self.polyline = tuple(waypoints)
        if self.routing_provider is None:
            return
        if self.location.coordinate is not None:
            waypoints = [self.location.coordinate, *waypoints]
        if len(waypoints) < 2:
            return
        try:
            result = await self.routing_provider.fetch_route(waypoints)
        except Exception as exc:
            print(f"[session] initial route request failed, using straight segments: {exc}")
            return
        if generation == self._generation and self.navigating:
            self.polyline = tuple(result.coordinates)

    def stop_navigation(self) -> None:
        """Drop every piece of per-session state and ignore late responses."""

        self.navigating = False
        self._generation += 1
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._reroute_task = None
        self._eta_task = None
        self.deviation.reset()
        self.geofence.reset()
        self.proximity.reset()
        self.accurate_eta.reset()
        for cadence in (
            self._geofence_cadence,
            self._proximity_cadence,
            self._fast_eta_cadence,
            self._ledger_cadence,
        ):
            cadence.reset()
        self.fast_etas = []
        self._last_ledger_fix_at = None
        print(f"[session] navigation stopped for {self.route.route_id}")

    # Periodic work --------------------------------------------------
    async def tick(self, now: Optional[datetime] = None) -> None:
        now = now or self.clock()
        fix = self.location.fix
        navigating = self.navigating
        stop = self.route.current_stop if navigating else None

        if self._geofence_cadence.consume(now):
            self.geofence.evaluate(fix, stop, navigating, now)

        deviation_state = self.deviation.evaluate(fix, self.polyline, navigating, now)

        if self._proximity_cadence.consume(now):
            self.proximity.evaluate(fix, stop, navigating, now)

        if not navigating:
            return

        if self._fast_eta_cadence.consume(now):
            self.fast_etas = estimate_straight_line(
                self.location.coordinate,
                self.route.stops,
                self.route.current_stop_index,
                self.location.speed_mps,
                now,
            )

        if self.ledger.is_tracking and self._ledger_cadence.is_due(now):
            if fix is not None and (self._last_ledger_fix_at is None or fix.timestamp > self._last_ledger_fix_at):
                self._ledger_cadence.mark(now)
                self._last_ledger_fix_at = fix.timestamp
                self.ledger.record_sample(fix, now)

        self._schedule_reroute(fix, now)
        self._schedule_eta_update(fix, deviation_state.is_off_route, now)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_reroute(self, fix: Optional[PositionFix], now: datetime) -> None:
        if self._reroute_task is not None and not self._reroute_task.done():
            return
        remaining = [stop.coordinate for stop in self.route.remaining_stops()]
        if not self.deviation.should_reroute(fix, remaining, now):
            return
        self._reroute_task = self._spawn(
            self._run_reroute(fix, remaining, now, self._generation, self._stop_generation)
        )

    async def _run_reroute(
        self,
        fix: Optional[PositionFix],
        remaining: List[Coordinate],
        now: datetime,
        generation: int,
        stop_generation: int,
    ) -> None:
        result = await self.deviation.reroute(fix, remaining, now)
        if result is None:
            return
        if generation != self._generation or stop_generation != self._stop_generation:
            print("[session] discarding reroute issued for a previous stop")
            return
        self.polyline = tuple(result.coordinates)
        self.events.append({"type": "reroute", "at": now.isoformat(), "points": len(self.polyline)})
        if self.location.coordinate is not None:
            self.snapped = snap_to_route(
                self.location.coordinate,
                self.polyline,
                navigating=self.navigating,
                threshold_m=self.settings.snap_threshold_m,
            )

    def _schedule_eta_update(self, fix: Optional[PositionFix], is_off_route: bool, now: datetime) -> None:
        in_flight = self._eta_task is not None and not self._eta_task.done()
        due = not in_flight and self.accurate_eta.should_update(
            fix.coordinate if fix else None, is_off_route, now
        )
        self.accurate_eta.observe_off_route(is_off_route)
        if not due:
            return
        self._eta_task = self._spawn(
            self.accurate_eta.update(fix, self.route.stops, self.route.current_stop_index, now)
        )

    async def drain(self) -> None:
        """Wait for in-flight provider requests (used by tests and shutdown)."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Driver actions -------------------------------------------------
    def confirm_arrival(self) -> Optional[str]:
        return self.geofence.confirm_arrival()

    def dismiss_arrival(self) -> None:
        self.geofence.dismiss_arrival()

    def complete_current_stop(self, now: Optional[datetime] = None) -> Optional[RouteReport]:
        report = self.state_machine.complete_current_stop(now or self.clock())
        if report is not None:
            self._finalize(report, None)
        return report

    def finish_route(self, now: Optional[datetime] = None, driver_notes: Optional[str] = None) -> Optional[RouteReport]:
        report = self.state_machine.finish_route(now or self.clock(), driver_notes=driver_notes)
        self._finalize(report, driver_notes)
        return report

    def _finalize(self, report: Optional[RouteReport], driver_notes: Optional[str]) -> None:
        self.report = report
        self.stop_navigation()
        # Must follow stop_navigation, which cancels every tracked task.
        if self.route_source is not None:
            self._spawn(self._notify_route_finished(driver_notes))

    def record_student_action(self, student_id: str, action: str, now: Optional[datetime] = None):
        return self.state_machine.record_student_action(
            student_id, action, now or self.clock(), self.location.coordinate
        )

    def record_incident(self, kind: str = "other") -> bool:
        if kind not in INCIDENT_KINDS:
            kind = "other"
        recorded = self.ledger.record_incident()
        if recorded:
            print(f"[session] incident reported on {self.route.route_id}: {kind}")
        return recorded

    async def submit_report(self, now: Optional[datetime] = None) -> bool:
        """Send the final report; the report stays available for a retry."""

        if self.report is None:
            return False
        if self.report_transport is None:
            print("[session] no report transport configured")
            return False
        ok = await self.report_transport.submit(self.report, submitted_at=now or self.clock())
        self.report_submitted = self.report_submitted or ok
        return ok

    # Observable state -----------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        current_index = self.route.current_stop_index
        fix = self.location.fix
        snapped = self.snapped
        return {
            "route": self.route.to_dict(),
            "navigating": self.navigating,
            "inProgress": self.route.status == ROUTE_IN_PROGRESS,
            "position": {
                "raw": list(fix.coordinate) if fix else None,
                "snapped": list(snapped.position) if snapped else None,
                "isOnRoute": snapped.is_on_route if snapped else False,
                "speed": fix.speed_mps if fix else None,
                "heading": fix.heading_deg if fix else None,
                "error": self.location.error.code if self.location.error else None,
            },
            "deviation": {
                "isOffRoute": self.deviation.state.is_off_route,
                "distanceFromRoute": self.deviation.state.distance_from_route_m,
                "isRecalculating": self.deviation.state.is_recalculating,
            },
            "geofence": {
                "isNearStop": self.geofence.state.is_near_stop,
                "hasArrived": self.geofence.state.has_arrived,
                "stopId": self.geofence.state.stop_id,
                "stopName": self.geofence.state.stop_name,
                "distanceToStop": self.geofence.state.distance_to_stop_m,
            },
            "eta": {
                "fast": [e.to_dict() for e in self.fast_etas],
                "fastSummary": summarize(self.fast_etas, current_index).to_dict(),
                "accurate": [e.to_dict() for e in self.accurate_eta.etas],
                "accurateSummary": self.accurate_eta.summary(current_index).to_dict(),
                "isUpdating": self.accurate_eta.is_updating,
            },
            "ledger": {
                "isTracking": self.ledger.is_tracking,
                "distanceKm": round(self.ledger.total_distance_km, 2),
                "averageSpeedKmh": round(self.ledger.average_speed_kmh, 1),
                "incidents": self.ledger.incidents,
            },
            "canCompleteStop": self.state_machine.can_complete_current_stop(),
            "polyline": [list(c) for c in self.polyline],
            "notifications": [n.to_dict() for n in self.proximity.recent()],
            "report": self.report.to_dict() if self.report else None,
            "reportSubmitted": self.report_submitted,
        }
