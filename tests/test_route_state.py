import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geodesy import Coordinate
from route_models import (
    DIRECTION_OUTBOUND,
    DIRECTION_RETURN,
    ROUTE_COMPLETED,
    ROUTE_IN_PROGRESS,
    STOP_ACTIVE,
    STOP_COMPLETED,
    STOP_PENDING,
    Route,
    Stop,
    Student,
)
from route_state import RouteStateError, RouteStateMachine

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _route(direction=DIRECTION_OUTBOUND, students=None) -> Route:
    return Route(
        route_id="R1",
        name="Ruta 1",
        direction=direction,
        stops=[
            Stop(stop_id="T0", name="Depot", coordinate=Coordinate(0, 0), is_terminal=True),
            Stop(
                stop_id="S1",
                name="Parada 1",
                coordinate=Coordinate(0, 0.01),
                students=students if students is not None else [],
            ),
            Stop(stop_id="S2", name="Parada 2", coordinate=Coordinate(0, 0.015)),
            Stop(stop_id="T1", name="Colegio", coordinate=Coordinate(0, 0.02), is_terminal=True),
        ],
    )


def test_start_marks_first_stop_active():
    machine = RouteStateMachine(_route())
    machine.start_route(BASE)
    assert machine.status == ROUTE_IN_PROGRESS
    assert machine.route.stops[0].status == STOP_ACTIVE
    assert machine.ledger.is_tracking

    with pytest.raises(RouteStateError):
        machine.start_route(BASE)


def test_complete_advances_exactly_one_stop():
    machine = RouteStateMachine(_route())
    machine.start_route(BASE)
    indexes = [machine.route.current_stop_index]
    for i in range(3):
        assert machine.complete_current_stop(BASE + timedelta(minutes=i + 1)) is None
        indexes.append(machine.route.current_stop_index)
    assert indexes == [0, 1, 2, 3]
    assert machine.route.stops[0].status == STOP_COMPLETED
    assert machine.route.stops[0].completed_at == BASE + timedelta(minutes=1)
    assert machine.route.stops[3].status == STOP_ACTIVE


def test_completing_last_stop_produces_report():
    machine = RouteStateMachine(_route())
    machine.start_route(BASE)
    report = None
    for i in range(4):
        report = machine.complete_current_stop(BASE + timedelta(minutes=i + 1))
    assert machine.status == ROUTE_COMPLETED
    assert machine.route.current_stop_index == 4
    assert report is not None
    assert report.stops_completed == report.total_stops == 4

    with pytest.raises(RouteStateError):
        machine.complete_current_stop(BASE + timedelta(minutes=10))
    assert machine.route.current_stop_index == 4


def test_complete_before_start_is_rejected_without_changes():
    machine = RouteStateMachine(_route())
    with pytest.raises(RouteStateError):
        machine.complete_current_stop(BASE)
    assert machine.route.current_stop_index == 0
    assert all(s.status == STOP_PENDING for s in machine.route.stops)


class TestReturnLegStudents:
    """Drop-off leg with two students at the first stop."""

    def _machine(self):
        route = _route(
            direction=DIRECTION_RETURN,
            students=[Student("st1", "Ana"), Student("st2", "Luis")],
        )
        machine = RouteStateMachine(route)
        machine.start_route(BASE)
        machine.complete_current_stop(BASE)
        return machine

    def test_waiting_students_block_completion(self):
        machine = self._machine()
        assert machine.can_complete_current_stop() is False
        with pytest.raises(RouteStateError):
            machine.complete_current_stop(BASE)
        assert machine.route.current_stop_index == 1

    def test_dropped_and_absent_unblock_completion(self):
        machine = self._machine()
        machine.record_student_action("st1", "dropped", BASE)
        assert machine.can_complete_current_stop() is False
        machine.record_student_action("st2", "absent", BASE)
        assert machine.can_complete_current_stop() is True
        machine.complete_current_stop(BASE)
        assert machine.route.current_stop_index == 2

    def test_pickup_not_allowed_on_return_leg(self):
        machine = self._machine()
        with pytest.raises(RouteStateError):
            machine.record_student_action("st1", "picked", BASE)

    def test_status_is_one_way(self):
        machine = self._machine()
        machine.record_student_action("st1", "absent", BASE)
        with pytest.raises(RouteStateError):
            machine.record_student_action("st1", "dropped", BASE)

    def test_unknown_student(self):
        machine = self._machine()
        with pytest.raises(KeyError):
            machine.record_student_action("nobody", "dropped", BASE)


def test_student_actions_feed_ledger():
    machine = RouteStateMachine(_route(students=[Student("st1", "Ana")]))
    machine.start_route(BASE)
    machine.record_student_action("st1", "picked", BASE, Coordinate(0.0001, 0.01))
    machine.complete_current_stop(BASE)
    machine.complete_current_stop(BASE)
    report = machine.finish_route(BASE + timedelta(minutes=5))
    assert report.students_picked == 1
    assert report.student_actions[0].student_id == "st1"
    assert report.student_actions[0].stop_id == "S1"


def test_finish_route_marks_everything_completed():
    machine = RouteStateMachine(_route())
    machine.start_route(BASE)
    machine.complete_current_stop(BASE)
    report = machine.finish_route(BASE + timedelta(minutes=3), driver_notes="Bus varado")
    assert machine.status == ROUTE_COMPLETED
    assert all(s.status == STOP_COMPLETED for s in machine.route.stops)
    assert report.stops_completed == 1
    assert report.driver_notes == "Bus varado"

    with pytest.raises(RouteStateError):
        machine.finish_route(BASE)


def test_reorder_only_before_start_and_not_terminals():
    machine = RouteStateMachine(_route())
    machine.reorder_stops(1, 2)
    assert [s.stop_id for s in machine.route.stops] == ["T0", "S2", "S1", "T1"]

    with pytest.raises(RouteStateError):
        machine.reorder_stops(0, 1)
    with pytest.raises(RouteStateError):
        machine.reorder_stops(1, 3)

    machine.start_route(BASE)
    with pytest.raises(RouteStateError):
        machine.reorder_stops(1, 2)


def test_add_stop_goes_before_end_terminal():
    machine = RouteStateMachine(_route())
    machine.add_stop(Stop(stop_id="S3", name="Nueva", coordinate=Coordinate(0, 0.018)))
    assert [s.stop_id for s in machine.route.stops] == ["T0", "S1", "S2", "S3", "T1"]

    with pytest.raises(RouteStateError):
        machine.add_stop(Stop(stop_id="S1", name="Dup", coordinate=Coordinate(0, 0)))

    machine.start_route(BASE)
    with pytest.raises(RouteStateError):
        machine.add_stop(Stop(stop_id="S4", name="Late", coordinate=Coordinate(0, 0)))


def test_stop_change_callback():
    seen = []
    machine = RouteStateMachine(_route(), on_stop_changed=lambda stop: seen.append(stop.stop_id if stop else None))
    machine.start_route(BASE)
    machine.complete_current_stop(BASE)
    assert seen == ["T0", "S1"]


def _loaded_in_progress(index=2) -> Route:
    route = _route()
    route.status = ROUTE_IN_PROGRESS
    route.current_stop_index = index
    for stop in route.stops[:index]:
        stop.status = STOP_COMPLETED
    return route


def test_loaded_in_progress_route_must_be_resumed():
    machine = RouteStateMachine(_loaded_in_progress())
    with pytest.raises(RouteStateError):
        machine.start_route(BASE)
    with pytest.raises(RouteStateError):
        machine.complete_current_stop(BASE)
    with pytest.raises(RouteStateError):
        machine.finish_route(BASE)
    assert machine.can_complete_current_stop() is False
    assert machine.route.current_stop_index == 2


def test_resume_starts_ledger_at_current_stop():
    seen = []
    machine = RouteStateMachine(
        _loaded_in_progress(), on_stop_changed=lambda stop: seen.append(stop.stop_id if stop else None)
    )
    machine.resume_route(BASE, Coordinate(0, 0.015))
    assert machine.ledger.is_tracking
    assert machine.route.stops[2].status == STOP_ACTIVE
    assert seen == ["S2"]

    with pytest.raises(RouteStateError):
        machine.resume_route(BASE)

    machine.complete_current_stop(BASE + timedelta(minutes=1))
    report = machine.complete_current_stop(BASE + timedelta(minutes=2))
    assert machine.status == ROUTE_COMPLETED
    assert report is not None
    assert report.stops_completed == 2
    assert report.total_stops == 4


def test_resume_rejected_for_new_or_exhausted_routes():
    with pytest.raises(RouteStateError):
        RouteStateMachine(_route()).resume_route(BASE)
    with pytest.raises(RouteStateError):
        RouteStateMachine(_loaded_in_progress(index=4)).resume_route(BASE)
