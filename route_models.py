from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from geodesy import Coordinate

# Stop statuses
STOP_PENDING = "pending"
STOP_ACTIVE = "active"
STOP_COMPLETED = "completed"

# Student statuses
STUDENT_WAITING = "waiting"
STUDENT_PICKED = "picked"
STUDENT_DROPPED = "dropped"
STUDENT_ABSENT = "absent"
STUDENT_STATUSES = {STUDENT_WAITING, STUDENT_PICKED, STUDENT_DROPPED, STUDENT_ABSENT}

# Route statuses
ROUTE_NOT_STARTED = "not_started"
ROUTE_IN_PROGRESS = "in_progress"
ROUTE_COMPLETED = "completed"
ROUTE_STATUSES = {ROUTE_NOT_STARTED, ROUTE_IN_PROGRESS, ROUTE_COMPLETED}

# Travel direction
DIRECTION_OUTBOUND = "outbound"  # towards school, students are picked up
DIRECTION_RETURN = "return"  # from school, students are dropped off

# Statuses a waiting student may move to on each leg
ALLOWED_STUDENT_ACTIONS = {
    DIRECTION_OUTBOUND: {STUDENT_PICKED, STUDENT_ABSENT},
    DIRECTION_RETURN: {STUDENT_DROPPED, STUDENT_ABSENT},
}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass
class Student:
    student_id: str
    name: str
    status: str = STUDENT_WAITING
    grade: Optional[str] = None
    parent_phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.student_id,
            "name": self.name,
            "status": self.status,
            "grade": self.grade,
            "parentPhone": self.parent_phone,
        }


@dataclass
class Stop:
    stop_id: str
    name: str
    coordinate: Coordinate
    address: str = ""
    status: str = STOP_PENDING
    students: List[Student] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    is_terminal: bool = False
    estimated_arrival: Optional[str] = None  # "HH:MM" from the schedule

    def all_students_processed(self) -> bool:
        return all(s.status != STUDENT_WAITING for s in self.students)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.stop_id,
            "name": self.name,
            "address": self.address,
            "coordinates": {"lng": self.coordinate.lng, "lat": self.coordinate.lat},
            "status": self.status,
            "completedAt": _iso(self.completed_at),
            "isTerminal": self.is_terminal,
            "estimatedArrival": self.estimated_arrival,
            "students": [s.to_dict() for s in self.students],
        }


@dataclass
class Route:
    route_id: str
    name: str
    stops: List[Stop]
    direction: str = DIRECTION_OUTBOUND
    status: str = ROUTE_NOT_STARTED
    current_stop_index: int = 0
    estimated_start_time: Optional[str] = None
    estimated_end_time: Optional[str] = None

    @property
    def current_stop(self) -> Optional[Stop]:
        if 0 <= self.current_stop_index < len(self.stops):
            return self.stops[self.current_stop_index]
        return None

    def remaining_stops(self) -> List[Stop]:
        return list(self.stops[self.current_stop_index:])

    def find_student(self, student_id: str) -> Optional[tuple]:
        """Return ``(stop, student)`` for the first stop listing ``student_id``."""

        for stop in self.stops:
            for student in stop.students:
                if student.student_id == student_id:
                    return stop, student
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.route_id,
            "name": self.name,
            "direction": self.direction,
            "status": self.status,
            "currentStopIndex": self.current_stop_index,
            "estimatedStartTime": self.estimated_start_time,
            "estimatedEndTime": self.estimated_end_time,
            "stops": [s.to_dict() for s in self.stops],
        }
