"""Matching input and report types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from app.core.slots.types import Interval, PriorityTier, TimeBlock, Weekday


class MatchLevel(str, Enum):
    """Quality bucket of a candidate's overlap with the request."""

    PERFECT = "Perfect Match"
    HIGH = "High Match"
    MEDIUM = "Medium Match"
    LOW = "Low Match"

    @classmethod
    def from_percentage(cls, percentage: float) -> "MatchLevel":
        """Classify a match percentage. Boundaries are inclusive."""
        if percentage >= 95:
            return cls.PERFECT
        if percentage >= 70:
            return cls.HIGH
        if percentage >= 40:
            return cls.MEDIUM
        return cls.LOW


@dataclass
class MatchCandidate:
    """
    An appointment considered by the matcher.

    ``availability`` maps each weekday to the clinic time blocks the patient
    accepts; ``slots`` are the concrete windows already booked, used when no
    block matches.
    """

    appointment_id: str
    priority_id: Optional[str]
    availability: dict[Weekday, list[TimeBlock]] = field(default_factory=dict)
    slots: list[Interval] = field(default_factory=list)
    display_name: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class OrgAvailability:
    """Everything the matcher needs for one organization."""

    org_id: str
    priorities: list[PriorityTier]
    candidates: list[MatchCandidate]


@dataclass(frozen=True)
class MatchedBlock:
    """A block (or fallback slot) that overlaps the request."""

    start_of_day: str
    end_of_day: str
    label: str
    overlap_minutes: int
    block_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.block_id,
            "from": self.start_of_day,
            "to": self.end_of_day,
            "label": self.label,
            "overlap_minutes": self.overlap_minutes,
        }


@dataclass
class CandidateMatch:
    """Score of one candidate."""

    candidate: MatchCandidate
    matched_blocks: list[MatchedBlock]
    total_overlap_minutes: int
    match_percentage: float
    match_level: MatchLevel

    def to_dict(self) -> dict[str, Any]:
        return {
            "appointment_id": self.candidate.appointment_id,
            "display_name": self.candidate.display_name,
            "matched_blocks": [b.to_dict() for b in self.matched_blocks],
            "total_overlap_minutes": self.total_overlap_minutes,
            "match_percentage": round(self.match_percentage, 2),
            "match_level": self.match_level.value,
            **({"data": self.candidate.data} if self.candidate.data else {}),
        }


@dataclass
class TierMatches:
    """Matches of one priority tier, best first."""

    priority: PriorityTier
    matches: list[CandidateMatch]

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority.to_dict(),
            "appointments": [m.to_dict() for m in self.matches],
        }


@dataclass
class MatchReport:
    """Ranked result of ``IntervalMatcher.match``."""

    requested: Interval
    weekday: Weekday
    tiers: list[TierMatches] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    @property
    def total_matches(self) -> int:
        return sum(len(t.matches) for t in self.tiers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_range": self.requested.to_dict(),
            "weekday": self.weekday.value,
            "priorities": [t.to_dict() for t in self.tiers],
            "diagnostics": list(self.diagnostics),
        }
