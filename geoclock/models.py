import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from geoclock.errors import InvalidActionError

CLOCK_IN = "CLOCK_IN"
CLOCK_OUT = "CLOCK_OUT"
ACTION_KINDS = (CLOCK_IN, CLOCK_OUT)

STATUS_INSIDE = "inside"
STATUS_OUTSIDE = "outside"

EVENT_ENTERED = "ENTERED"
EVENT_EXITED = "EXITED"

OFFLINE_REF_PREFIX = "offline_"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def offline_ref(now_ts: float | None = None) -> str:
    now = time.time() if now_ts is None else now_ts
    return f"{OFFLINE_REF_PREFIX}{int(now * 1000)}"


def _as_float(value, name: str) -> float:
    try:
        result = float(value if value is not None else 0)
    except (TypeError, ValueError) as exc:
        raise InvalidActionError(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(result):
        raise InvalidActionError(f"{name} must be finite, got {value!r}")
    return result


@dataclass(frozen=True)
class ClockPayload:
    note: str = ""
    lat: float = 0.0
    lng: float = 0.0
    manual_override: bool = False
    background: bool = False

    def __post_init__(self) -> None:
        lat = _as_float(self.lat, "lat")
        lng = _as_float(self.lng, "lng")
        if not -90.0 <= lat <= 90.0:
            raise InvalidActionError(f"lat out of range: {lat}")
        if not -180.0 <= lng <= 180.0:
            raise InvalidActionError(f"lng out of range: {lng}")
        object.__setattr__(self, "lat", lat)
        object.__setattr__(self, "lng", lng)
        object.__setattr__(self, "note", str(self.note or ""))
        object.__setattr__(self, "manual_override", bool(self.manual_override))
        object.__setattr__(self, "background", bool(self.background))

    def to_dict(self) -> dict:
        return {
            "note": self.note,
            "lat": self.lat,
            "lng": self.lng,
            "manualOverride": self.manual_override,
            "background": self.background,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClockPayload":
        if not isinstance(data, dict):
            raise InvalidActionError(f"payload must be a mapping, got {type(data).__name__}")
        for name in ("lat", "lng"):
            if data.get(name) is None:
                raise InvalidActionError(f"payload is missing {name}")
        return cls(
            note=data.get("note") or "",
            lat=data.get("lat"),
            lng=data.get("lng"),
            manual_override=data.get("manualOverride", data.get("manual_override", False)),
            background=data.get("background", False),
        )

    def mutation_variables(self) -> dict:
        return {
            "note": self.note,
            "lat": self.lat,
            "lng": self.lng,
            "manualOverride": self.manual_override,
        }


@dataclass
class PendingAction:
    id: int
    kind: str
    payload: ClockPayload
    created_at: str
    synced: bool = False
    synced_at: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[str] = None
    local_ref: Optional[str] = None
    server_ref: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in ACTION_KINDS:
            raise InvalidActionError(f"unknown action kind: {self.kind!r}")
        if not isinstance(self.payload, ClockPayload):
            raise InvalidActionError("payload must be a ClockPayload")


@dataclass(frozen=True)
class WorkLocation:
    lat: float
    lng: float
    radius_km: float = 0.1
    name: str = "Work Location"


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy_m: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ShiftRef:
    id: str
    timestamp: Optional[str]
    provisional: bool = False

    @property
    def is_offline(self) -> bool:
        return str(self.id).startswith(OFFLINE_REF_PREFIX)


@dataclass(frozen=True)
class SubmitResult:
    kind: str
    ref: ShiftRef
    offline: bool = False
    fallback: bool = False
    action_id: Optional[int] = None


@dataclass(frozen=True)
class Shift:
    id: str
    clock_in_at: Optional[str] = None
    clock_out_at: Optional[str] = None
    clock_in_lat: Optional[float] = None
    clock_in_lng: Optional[float] = None
    clock_out_lat: Optional[float] = None
    clock_out_lng: Optional[float] = None
    clock_in_note: Optional[str] = None
    clock_out_note: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.clock_out_at is None

    @classmethod
    def from_api(cls, raw: dict) -> "Shift":
        return cls(
            id=str(raw.get("id")),
            clock_in_at=raw.get("clockInAt"),
            clock_out_at=raw.get("clockOutAt"),
            clock_in_lat=raw.get("clockInLat"),
            clock_in_lng=raw.get("clockInLng"),
            clock_out_lat=raw.get("clockOutLat"),
            clock_out_lng=raw.get("clockOutLng"),
            clock_in_note=raw.get("clockInNote"),
            clock_out_note=raw.get("clockOutNote"),
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "clockInAt": self.clock_in_at,
            "clockOutAt": self.clock_out_at,
            "clockInLat": self.clock_in_lat,
            "clockInLng": self.clock_in_lng,
            "clockOutLat": self.clock_out_lat,
            "clockOutLng": self.clock_out_lng,
            "clockInNote": self.clock_in_note,
            "clockOutNote": self.clock_out_note,
        }
