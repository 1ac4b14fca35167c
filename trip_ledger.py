from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from geodesy import Coordinate, distance_m
from location_source import PositionFix
from route_models import (
    Route,
    Stop,
    Student,
    STUDENT_ABSENT,
    STUDENT_DROPPED,
    STUDENT_PICKED,
)


# Consecutive samples further apart than this are GPS artifacts (kilometers)
LEDGER_MAX_JUMP_KM = float(os.getenv("LEDGER_MAX_JUMP_KM", "0.5"))

# Session loop cadence for speed/distance samples (seconds)
LEDGER_SAMPLE_S = float(os.getenv("LEDGER_SAMPLE_S", "5"))


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SpeedSample:
    timestamp: datetime
    speed_kmh: float
    coordinate: Coordinate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _isoformat(self.timestamp),
            "speed": self.speed_kmh,
            "coordinates": [self.coordinate.lng, self.coordinate.lat],
        }


@dataclass(frozen=True)
class StudentActionRecord:
    student_id: str
    student_name: str
    stop_id: str
    stop_name: str
    action: str
    timestamp: datetime
    coordinate: Coordinate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "action": self.action,
            "timestamp": _isoformat(self.timestamp),
            "coordinates": [self.coordinate.lng, self.coordinate.lat],
        }


@dataclass(frozen=True)
class StopCompletionRecord:
    stop_id: str
    stop_name: str
    arrived_at: datetime
    students_processed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "arrivedAt": _isoformat(self.arrived_at),
            "studentsProcessed": self.students_processed,
        }


@dataclass(frozen=True)
class RouteReport:
    """Immutable end-of-trip summary."""
    route_id: str
    route_name: str
    direction: str
    start_time: datetime
    end_time: datetime
    total_duration_minutes: int
    total_distance_km: float
    average_speed_kmh: float
    max_speed_kmh: float
    min_speed_kmh: float
    speed_samples: Tuple[SpeedSample, ...]
    stops_completed: int
    total_stops: int
    stop_completions: Tuple[StopCompletionRecord, ...]
    students_total: int
    students_picked: int
    students_dropped: int
    students_absent: int
    student_actions: Tuple[StudentActionRecord, ...]
    incidents_reported: int
    generated_at: datetime
    driver_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "routeId": self.route_id,
            "routeName": self.route_name,
            "direction": self.direction,
            "startTime": _isoformat(self.start_time),
            "endTime": _isoformat(self.end_time),
            "totalDurationMinutes": self.total_duration_minutes,
            "totalDistanceKm": self.total_distance_km,
            "averageSpeedKmh": self.average_speed_kmh,
            "maxSpeedKmh": self.max_speed_kmh,
            "minSpeedKmh": self.min_speed_kmh,
            "speedSamples": [s.to_dict() for s in self.speed_samples],
            "stopsCompleted": self.stops_completed,
            "totalStops": self.total_stops,
            "stopCompletions": [c.to_dict() for c in self.stop_completions],
            "studentsTotal": self.students_total,
            "studentsPicked": self.students_picked,
            "studentsDropped": self.students_dropped,
            "studentsAbsent": self.students_absent,
            "studentActions": [a.to_dict() for a in self.student_actions],
            "incidentsReported": self.incidents_reported,
            "generatedAt": _isoformat(self.generated_at),
        }
        if self.driver_notes:
            payload["driverNotes"] = self.driver_notes
        return payload


@dataclass
class _LedgerSession:
    start_time: datetime
    last_position: Optional[Coordinate]
    total_distance_km: float = 0.0
    speed_samples: List[SpeedSample] = field(default_factory=list)
    student_actions: List[StudentActionRecord] = field(default_factory=list)
    stop_completions: List[StopCompletionRecord] = field(default_factory=list)
    incidents: int = 0
    average_speed_kmh: float = 0.0
    rejected_jumps: int = 0


class TripLedger:
    """
    Session-scoped accumulator for one trip.

    Created at route start, fed while navigating, and consumed once by
    ``stop()`` which materializes a ``RouteReport``. Every recording method is
    a no-op while no session is active.
    """

    def __init__(self, *, max_jump_km: float = LEDGER_MAX_JUMP_KM) -> None:
        self.max_jump_km = max_jump_km
        self._session: Optional[_LedgerSession] = None

    @property
    def is_tracking(self) -> bool:
        return self._session is not None

    @property
    def total_distance_km(self) -> float:
        return self._session.total_distance_km if self._session else 0.0

    @property
    def average_speed_kmh(self) -> float:
        return self._session.average_speed_kmh if self._session else 0.0

    @property
    def incidents(self) -> int:
        return self._session.incidents if self._session else 0

    def start(self, now: datetime, position: Optional[Coordinate] = None) -> None:
        self._session = _LedgerSession(start_time=now, last_position=position)
        print(f"[ledger] tracking started at {_isoformat(now)}")

    def record_sample(self, fix: Optional[PositionFix], now: Optional[datetime] = None) -> bool:
        """Integrate distance since the last sample and append a speed sample.

        Returns False when nothing was recorded.
        """

        session = self._session
        if session is None or fix is None or fix.speed_mps is None:
            return False

        position = fix.coordinate
        if session.last_position is not None:
            step_km = distance_m(session.last_position, position) / 1000.0
            if step_km < self.max_jump_km:
                session.total_distance_km += step_km
            else:
                session.rejected_jumps += 1
                print(f"[ledger] rejected {step_km:.2f}km jump between samples")
        session.last_position = position

        speed_kmh = fix.speed_mps * 3.6
        session.speed_samples.append(
            SpeedSample(timestamp=now or fix.timestamp, speed_kmh=speed_kmh, coordinate=position)
        )
        moving = [s.speed_kmh for s in session.speed_samples if s.speed_kmh > 0]
        if moving:
            session.average_speed_kmh = sum(moving) / len(moving)
        return True

    def record_student_action(
        self,
        student: Student,
        stop: Stop,
        action: str,
        now: datetime,
        position: Optional[Coordinate] = None,
    ) -> bool:
        session = self._session
        if session is None:
            return False
        session.student_actions.append(
            StudentActionRecord(
                student_id=student.student_id,
                student_name=student.name,
                stop_id=stop.stop_id,
                stop_name=stop.name,
                action=action,
                timestamp=now,
                coordinate=position or stop.coordinate,
            )
        )
        return True

    def record_stop_completion(self, stop: Stop, now: datetime) -> bool:
        session = self._session
        if session is None:
            return False
        session.stop_completions.append(
            StopCompletionRecord(
                stop_id=stop.stop_id,
                stop_name=stop.name,
                arrived_at=now,
                students_processed=len(stop.students),
            )
        )
        return True

    def record_incident(self) -> bool:
        session = self._session
        if session is None:
            return False
        session.incidents += 1
        return True

    def stop(self, route: Route, now: datetime, driver_notes: Optional[str] = None) -> Optional[RouteReport]:
        """Finalize the session and return its report, or None if never started."""

        session = self._session
        if session is None:
            return None
        self._session = None

        duration_minutes = int(round((now - session.start_time).total_seconds() / 60))
        moving = [s.speed_kmh for s in session.speed_samples if s.speed_kmh > 0]
        if moving:
            avg_speed = round(sum(moving) / len(moving), 1)
            max_speed = round(max(moving), 1)
            min_speed = round(min(moving), 1)
        else:
            avg_speed = max_speed = min_speed = 0.0

        students = [student for stop in route.stops for student in stop.students]
        report = RouteReport(
            route_id=route.route_id,
            route_name=route.name,
            direction=route.direction,
            start_time=session.start_time,
            end_time=now,
            total_duration_minutes=duration_minutes,
            total_distance_km=round(session.total_distance_km, 1),
            average_speed_kmh=avg_speed,
            max_speed_kmh=max_speed,
            min_speed_kmh=min_speed,
            speed_samples=tuple(session.speed_samples),
            stops_completed=len(session.stop_completions),
            total_stops=len(route.stops),
            stop_completions=tuple(session.stop_completions),
            students_total=len(students),
            students_picked=sum(1 for s in students if s.status == STUDENT_PICKED),
            students_dropped=sum(1 for s in students if s.status == STUDENT_DROPPED),
            students_absent=sum(1 for s in students if s.status == STUDENT_ABSENT),
            student_actions=tuple(session.student_actions),
            incidents_reported=session.incidents,
            generated_at=now,
            driver_notes=driver_notes or None,
        )
        print(
            f"[ledger] trip {route.route_id} closed: {report.total_distance_km}km, "
            f"{report.total_duration_minutes} min, {report.stops_completed}/{report.total_stops} stops"
        )
        return report
