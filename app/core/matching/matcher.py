"""
Interval Matcher.

Scores candidate appointments against a requested interval using the
time blocks each candidate accepts on the request's weekday, then ranks
them per priority tier.

Only the weekday of the requested start is considered (single-day
matching). Times of day are compared in the clinic timezone.
"""

import logging
from datetime import datetime, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from app.config import settings
from app.core.slots.types import (
    Interval,
    Weekday,
    format_time_of_day,
    minutes_of_day,
    overlap_minutes,
)
from .types import (
    CandidateMatch,
    MatchCandidate,
    MatchedBlock,
    MatchLevel,
    MatchReport,
    OrgAvailability,
    TierMatches,
)

logger = logging.getLogger(__name__)

FALLBACK_SLOT_LABEL = "Slot"


class IntervalMatcher:
    """
    Ranks appointment candidates for a requested interval.

    Pure and deterministic: identical inputs give identical reports.
    """

    def __init__(self, timezone: Optional[Union[str, tzinfo]] = None):
        """Initialize matcher.

        Args:
            timezone: Clinic timezone (name or tzinfo, defaults to settings)
        """
        tz = timezone or settings.clinic_timezone
        self.timezone = ZoneInfo(tz) if isinstance(tz, str) else tz

    def _local(self, value: datetime) -> datetime:
        """Wall-clock time in the clinic timezone (naive values are taken as-is)."""
        if value.tzinfo is None:
            return value
        return value.astimezone(self.timezone)

    def match(self, requested: Interval, availability: OrgAvailability) -> MatchReport:
        """Score and rank candidates.

        Args:
            requested: Requested interval
            availability: Priority catalog and candidates of the organization

        Returns:
            MatchReport grouped by tier (rank order), best matches first
        """
        start = self._local(requested.start)
        weekday = Weekday.of(start)
        req_start = minutes_of_day(start)
        req_end = req_start + requested.duration_minutes
        duration = requested.duration_minutes

        report = MatchReport(requested=requested, weekday=weekday)
        if duration <= 0:
            report.diagnostics.append("Requested interval is shorter than one minute")
            return report

        known_tiers = {p.id for p in availability.priorities}
        by_tier: dict[str, list[CandidateMatch]] = {tier: [] for tier in known_tiers}

        for candidate in availability.candidates:
            if not candidate.priority_id:
                report.diagnostics.append(
                    f"Appointment {candidate.appointment_id} has no priority; excluded"
                )
                continue
            if candidate.priority_id not in known_tiers:
                report.diagnostics.append(
                    f"Appointment {candidate.appointment_id} references unknown priority "
                    f"{candidate.priority_id}; excluded"
                )
                continue

            scored = self.score(candidate, weekday, req_start, req_end, duration)
            if scored is not None:
                by_tier[candidate.priority_id].append(scored)

        for priority in sorted(availability.priorities, key=lambda p: p.rank):
            matches = by_tier.get(priority.id) or []
            if not matches:
                continue
            # Stable: ties keep input order
            matches.sort(key=lambda m: m.total_overlap_minutes, reverse=True)
            report.tiers.append(TierMatches(priority=priority, matches=matches))

        for diagnostic in report.diagnostics:
            logger.warning(diagnostic)
        logger.debug(
            f"Matched {report.total_matches} appointment(s) for {weekday.value} "
            f"{format_time_of_day(req_start)}-{format_time_of_day(req_end % 1440)}"
        )
        return report

    def score(
        self,
        candidate: MatchCandidate,
        weekday: Weekday,
        req_start: int,
        req_end: int,
        duration: int,
    ) -> Optional[CandidateMatch]:
        """Score one candidate; None when nothing overlaps."""
        matched: list[MatchedBlock] = []
        total = 0

        for block in candidate.availability.get(weekday, []):
            overlap = overlap_minutes(block.start_minute, block.end_minute, req_start, req_end)
            if overlap > 0:
                total += overlap
                matched.append(
                    MatchedBlock(
                        start_of_day=block.start_of_day,
                        end_of_day=block.end_of_day,
                        label=block.label,
                        overlap_minutes=overlap,
                        block_id=block.id,
                    )
                )

        # Fallback: concrete slots on the same weekday
        if not matched:
            for slot in candidate.slots:
                slot_start = self._local(slot.start)
                if Weekday.of(slot_start) != weekday:
                    continue
                s_min = minutes_of_day(slot_start)
                e_min = s_min + slot.duration_minutes
                overlap = overlap_minutes(s_min, e_min, req_start, req_end)
                if overlap > 0:
                    total += overlap
                    matched.append(
                        MatchedBlock(
                            start_of_day=format_time_of_day(s_min),
                            end_of_day=format_time_of_day(e_min % 1440),
                            label=FALLBACK_SLOT_LABEL,
                            overlap_minutes=overlap,
                        )
                    )

        if not matched:
            return None

        percentage = total / duration * 100
        return CandidateMatch(
            candidate=candidate,
            matched_blocks=matched,
            total_overlap_minutes=total,
            match_percentage=percentage,
            match_level=MatchLevel.from_percentage(percentage),
        )


def match(requested: Interval, availability: OrgAvailability) -> MatchReport:
    """Match with the default clinic timezone."""
    return get_interval_matcher().match(requested, availability)


# Singleton
_matcher: Optional[IntervalMatcher] = None


def get_interval_matcher() -> IntervalMatcher:
    """Get singleton IntervalMatcher."""
    global _matcher
    if _matcher is None:
        _matcher = IntervalMatcher()
    return _matcher
