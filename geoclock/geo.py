import math
from dataclasses import dataclass
from typing import Optional

from geoclock.models import (
    EVENT_ENTERED,
    EVENT_EXITED,
    STATUS_INSIDE,
    STATUS_OUTSIDE,
    Position,
    WorkLocation,
)

EARTH_RADIUS_KM = 6371.0
DEFAULT_BUFFER_KM = 0.05


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (math.sin(dphi / 2.0) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2.0) ** 2)
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


@dataclass(frozen=True)
class GeofenceEvaluation:
    distance_km: float
    inside: bool

    @property
    def status(self) -> str:
        return STATUS_INSIDE if self.inside else STATUS_OUTSIDE


@dataclass(frozen=True)
class GeofenceTransition:
    event: str
    evaluation: GeofenceEvaluation
    position: Position


@dataclass
class GeofenceState:
    work_location: Optional[WorkLocation] = None
    last_status: Optional[str] = None
    last_known_position: Optional[Position] = None


def evaluate(
    position: Position,
    work_location: Optional[WorkLocation],
    buffer_km: float = DEFAULT_BUFFER_KM,
) -> GeofenceEvaluation:
    if work_location is None:
        return GeofenceEvaluation(distance_km=math.inf, inside=False)

    distance_km = haversine_km(position.lat, position.lng, work_location.lat, work_location.lng)
    return GeofenceEvaluation(
        distance_km=distance_km,
        inside=distance_km <= (work_location.radius_km + buffer_km),
    )


class GeofenceEvaluator:
    """Edge-triggered perimeter check for one tracking session.

    The first sample after construction (or after the work location changes)
    only primes ``last_status``. Later samples produce a transition only when
    the inside/outside status flips.
    """

    def __init__(self, work_location: Optional[WorkLocation] = None, *, buffer_km: float = DEFAULT_BUFFER_KM) -> None:
        self.buffer_km = buffer_km
        self.state = GeofenceState(work_location=work_location)

    @property
    def work_location(self) -> Optional[WorkLocation]:
        return self.state.work_location

    @property
    def last_status(self) -> Optional[str]:
        return self.state.last_status

    def set_work_location(self, work_location: Optional[WorkLocation]) -> None:
        if work_location != self.state.work_location:
            self.state.work_location = work_location
            self.state.last_status = None

    def reset(self) -> None:
        self.state.last_status = None
        self.state.last_known_position = None

    def evaluate(self, position: Position) -> GeofenceEvaluation:
        return evaluate(position, self.state.work_location, self.buffer_km)

    def update(self, position: Position) -> Optional[GeofenceTransition]:
        evaluation = self.evaluate(position)
        previous = self.state.last_status
        current = evaluation.status

        self.state.last_known_position = position
        self.state.last_status = current

        if previous is None or previous == current:
            return None
        event = EVENT_ENTERED if current == STATUS_INSIDE else EVENT_EXITED
        return GeofenceTransition(event=event, evaluation=evaluation, position=position)
