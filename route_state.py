from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from geodesy import Coordinate
from route_models import (
    ALLOWED_STUDENT_ACTIONS,
    ROUTE_COMPLETED,
    ROUTE_IN_PROGRESS,
    ROUTE_NOT_STARTED,
    STOP_ACTIVE,
    STOP_COMPLETED,
    STOP_PENDING,
    STUDENT_WAITING,
    Route,
    Stop,
    Student,
)
from trip_ledger import RouteReport, TripLedger


class RouteStateError(RuntimeError):
    """Raised when an operation is not valid for the route's current state."""


class RouteStateMachine:
    """
    NOT_STARTED -> IN_PROGRESS -> COMPLETED, driving the trip ledger.

    Every transition validates first and mutates second, so a rejected call
    leaves stop statuses and ``current_stop_index`` untouched.
    """

    def __init__(
        self,
        route: Route,
        ledger: Optional[TripLedger] = None,
        *,
        on_stop_changed: Optional[Callable[[Optional[Stop]], None]] = None,
    ) -> None:
        self.route = route
        self.ledger = ledger or TripLedger()
        self.report: Optional[RouteReport] = None
        self._on_stop_changed = on_stop_changed

    @property
    def status(self) -> str:
        return self.route.status

    @property
    def current_stop(self) -> Optional[Stop]:
        return self.route.current_stop

    def _require(self, status: str, operation: str) -> None:
        if self.route.status != status:
            raise RouteStateError(f"{operation} not allowed while route is {self.route.status}")

    def _require_tracking(self, operation: str) -> None:
        self._require(ROUTE_IN_PROGRESS, operation)
        if not self.ledger.is_tracking:
            raise RouteStateError(f"{operation} not allowed before the route is started or resumed")

    def _notify_stop_changed(self) -> None:
        if self._on_stop_changed is not None:
            self._on_stop_changed(self.route.current_stop)

    # Transitions ----------------------------------------------------
    def start_route(self, now: datetime, position: Optional[Coordinate] = None) -> None:
        self._require(ROUTE_NOT_STARTED, "start_route")
        if not self.route.stops:
            raise RouteStateError("route has no stops")

        self.route.status = ROUTE_IN_PROGRESS
        self.route.current_stop_index = 0
        self.route.stops[0].status = STOP_ACTIVE
        self.ledger.start(now, position)
        print(f"[route] {self.route.name} started with {len(self.route.stops)} stops")
        self._notify_stop_changed()

    def resume_route(self, now: datetime, position: Optional[Coordinate] = None) -> None:
        """Pick up a trip that was loaded already in progress.

        Stops before ``current_stop_index`` keep their status; the ledger only
        covers the part of the trip driven from here on.
        """

        self._require(ROUTE_IN_PROGRESS, "resume_route")
        if self.ledger.is_tracking:
            raise RouteStateError("route is already being tracked")
        stop = self.route.current_stop
        if stop is None:
            raise RouteStateError("route has no remaining stops")

        stop.status = STOP_ACTIVE
        self.ledger.start(now, position)
        print(
            f"[route] {self.route.name} resumed at stop "
            f"{self.route.current_stop_index + 1}/{len(self.route.stops)}"
        )
        self._notify_stop_changed()

    def can_complete_current_stop(self) -> bool:
        stop = self.route.current_stop
        return (
            self.ledger.is_tracking
            and self.route.status == ROUTE_IN_PROGRESS
            and stop is not None
            and stop.all_students_processed()
        )

    def complete_current_stop(self, now: datetime) -> Optional[RouteReport]:
        """Complete the current stop and advance by exactly one.

        Returns the final report when the last stop is completed.
        """

        self._require_tracking("complete_current_stop")
        stop = self.route.current_stop
        if stop is None:
            raise RouteStateError("no current stop")
        pending = [s.name for s in stop.students if s.status == STUDENT_WAITING]
        if pending:
            raise RouteStateError(f"students still waiting at {stop.name}: {', '.join(pending)}")

        index = self.route.current_stop_index
        self.ledger.record_stop_completion(stop, now)
        stop.status = STOP_COMPLETED
        stop.completed_at = now
        print(f"[route] completed stop {index + 1}/{len(self.route.stops)} {stop.name}")

        if index + 1 >= len(self.route.stops):
            self.route.current_stop_index = len(self.route.stops)
            self.route.status = ROUTE_COMPLETED
            self.report = self.ledger.stop(self.route, now)
            self._notify_stop_changed()
            return self.report

        self.route.current_stop_index = index + 1
        self.route.stops[index + 1].status = STOP_ACTIVE
        self._notify_stop_changed()
        return None

    def finish_route(self, now: datetime, driver_notes: Optional[str] = None) -> Optional[RouteReport]:
        """Force-complete the trip from any point while in progress."""

        self._require_tracking("finish_route")
        for stop in self.route.stops:
            if stop.status != STOP_COMPLETED:
                stop.status = STOP_COMPLETED
                stop.completed_at = stop.completed_at or now
        self.route.status = ROUTE_COMPLETED
        self.report = self.ledger.stop(self.route, now, driver_notes=driver_notes)
        print(f"[route] {self.route.name} finished early at stop {self.route.current_stop_index + 1}")
        self._notify_stop_changed()
        return self.report

    # Students -------------------------------------------------------
    def record_student_action(
        self,
        student_id: str,
        action: str,
        now: datetime,
        position: Optional[Coordinate] = None,
    ) -> Student:
        self._require_tracking("record_student_action")
        found = self.route.find_student(student_id)
        if found is None:
            raise KeyError(student_id)
        stop, student = found

        allowed = ALLOWED_STUDENT_ACTIONS.get(self.route.direction, set())
        if action not in allowed:
            raise RouteStateError(f"{action} is not valid on a {self.route.direction} trip")
        if student.status != STUDENT_WAITING:
            raise RouteStateError(f"student {student.name} already {student.status}")

        # A student may be listed on more than one stop; keep every entry in sync.
        for other_stop in self.route.stops:
            for entry in other_stop.students:
                if entry.student_id == student_id:
                    entry.status = action
        self.ledger.record_student_action(student, stop, action, now, position)
        return student

    # Planning -------------------------------------------------------
    def _movable_range(self) -> range:
        stops = self.route.stops
        start = 1 if stops and stops[0].is_terminal else 0
        end = len(stops) - 1 if len(stops) > 1 and stops[-1].is_terminal else len(stops)
        return range(start, end)

    def reorder_stops(self, from_index: int, to_index: int) -> None:
        self._require(ROUTE_NOT_STARTED, "reorder_stops")
        movable = self._movable_range()
        if from_index not in movable or to_index not in movable:
            raise RouteStateError(
                f"stops can only be moved within positions {movable.start}..{movable.stop - 1}"
            )
        stop = self.route.stops.pop(from_index)
        self.route.stops.insert(to_index, stop)

    def add_stop(self, stop: Stop, index: Optional[int] = None) -> None:
        """Insert a stop before the terminal end anchor (or at ``index``)."""

        self._require(ROUTE_NOT_STARTED, "add_stop")
        if stop.is_terminal:
            raise RouteStateError("terminal stops cannot be added")
        if any(s.stop_id == stop.stop_id for s in self.route.stops):
            raise RouteStateError(f"duplicate stop id {stop.stop_id}")
        movable = self._movable_range()
        position = movable.stop if index is None else index
        if not (movable.start <= position <= movable.stop):
            raise RouteStateError(f"stop must be inserted within positions {movable.start}..{movable.stop}")
        stop.status = STOP_PENDING
        self.route.stops.insert(position, stop)
