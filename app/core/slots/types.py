"""Time model and slot value types."""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Optional

from app.core.errors import ValidationError


class Weekday(str, Enum):
    """Day of week as stored on availability blocks."""

    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @classmethod
    def of(cls, value: datetime) -> "Weekday":
        """Weekday of a datetime (uses the datetime's own wall clock)."""
        return list(cls)[value.weekday()]


class SlotStatus(str, Enum):
    """Contact lifecycle of a single appointment slot."""

    NOT_STARTED = "NotStarted"
    NO_CONTACTED = "NoContacted"
    PENDING = "Pending"
    CONTACTED = "Contacted"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"
    FAILED = "Failed"


class ProposedBy(str, Enum):
    """Who issued a proposal."""

    CLINIC = "clinic"
    PATIENT = "patient"
    SYSTEM = "system"


class Decision(str, Enum):
    """Outcome of a patient reply."""

    CONFIRMED = "confirmed"
    DECLINED = "declined"
    RESCHEDULE = "reschedule"
    UNKNOWN = "unknown"


def parse_time_of_day(value: str) -> int:
    """Convert "HH:MM" into minutes after midnight."""
    try:
        hours, minutes = value.strip().split(":")
        parsed = time(int(hours), int(minutes))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid time of day: {value!r}") from e
    return parsed.hour * 60 + parsed.minute


def format_time_of_day(minutes: int) -> str:
    """Convert minutes after midnight into "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_of_day(value: datetime) -> int:
    """Minutes elapsed since midnight of the datetime's wall clock."""
    return value.hour * 60 + value.minute


def overlap_minutes(a_start: int, a_end: int, b_start: int, b_end: int) -> int:
    """Overlap of two [start, end) minute ranges, never negative."""
    return max(0, min(a_end, b_end) - max(a_start, b_start))


@dataclass(frozen=True)
class Interval:
    """Half-open time interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start is None or self.end is None:
            raise ValidationError("Interval requires both start and end")
        if not self.start < self.end:
            raise ValidationError(
                f"Interval start must be before end ({self.start.isoformat()} >= {self.end.isoformat()})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def intersect(self, other: "Interval") -> Optional["Interval"]:
        """Return the common part of two intervals, if any."""
        if not self.overlaps(other):
            return None
        return Interval(max(self.start, other.start), min(self.end, other.end))

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TimeBlock:
    """A named daily window ("09:00"-"11:00") on one weekday."""

    id: str
    weekday: Weekday
    start_of_day: str
    end_of_day: str
    label: str = ""

    def __post_init__(self) -> None:
        if self.start_minute >= self.end_minute:
            raise ValidationError(
                f"Time block {self.id} must start before it ends "
                f"({self.start_of_day} >= {self.end_of_day})"
            )

    @property
    def start_minute(self) -> int:
        return parse_time_of_day(self.start_of_day)

    @property
    def end_minute(self) -> int:
        return parse_time_of_day(self.end_of_day)

    @property
    def duration_minutes(self) -> int:
        return self.end_minute - self.start_minute

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "weekday": self.weekday.value,
            "from": self.start_of_day,
            "to": self.end_of_day,
            "label": self.label,
        }


@dataclass(frozen=True)
class PriorityTier:
    """Entry of an organization's ordered priority catalog."""

    id: str
    rank: int
    name: str
    duration_hours: float = 0
    color: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rank": self.rank,
            "name": self.name,
            "duration_hours": self.duration_hours,
            "color": self.color,
            "description": self.description,
        }


@dataclass
class SlotSnapshot:
    """Read-only copy of a slot, safe to hand out after the session closes."""

    id: str
    appointment_id: str
    org_id: str
    status: SlotStatus
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    position: Optional[int] = None
    priority_id: Optional[str] = None
    treatment_id: Optional[str] = None
    proposed: Optional[dict] = None
    confirmation: Optional[dict] = None
    origin: Optional[dict] = None
    contact_id: Optional[str] = None
    proposal_message_ref: Optional[str] = None
    reschedule_requested: bool = False
    diagnostics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        def _isos(data: Optional[dict]) -> Optional[dict]:
            if data is None:
                return None
            return {
                k: (_iso(v) if isinstance(v, datetime) else v)
                for k, v in data.items()
            }

        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "org_id": self.org_id,
            "status": self.status.value,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "position": self.position,
            "priority_id": self.priority_id,
            "treatment_id": self.treatment_id,
            "proposed": _isos(self.proposed),
            "confirmation": _isos(self.confirmation),
            "origin": _isos(self.origin),
            "contact_id": self.contact_id,
            "proposal_message_ref": self.proposal_message_ref,
            "reschedule_requested": self.reschedule_requested,
        }
