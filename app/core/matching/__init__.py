"""
Matching Module

Scores appointment candidates against a requested interval and ranks them
by priority tier.

Usage:
    from app.core.matching import AvailabilityLoader, get_interval_matcher

    availability = await AvailabilityLoader().load(session, org_id, requested)
    report = get_interval_matcher().match(requested, availability)
    for tier in report.tiers:
        print(tier.priority.name, [m.match_level for m in tier.matches])
"""

# Types
from app.core.matching.types import (
    MatchLevel,
    MatchCandidate,
    OrgAvailability,
    MatchedBlock,
    CandidateMatch,
    TierMatches,
    MatchReport,
)

# Matcher
from app.core.matching.matcher import (
    IntervalMatcher,
    get_interval_matcher,
    match,
)

# Loader
from app.core.matching.loader import AvailabilityLoader

__all__ = [
    # Types
    "MatchLevel",
    "MatchCandidate",
    "OrgAvailability",
    "MatchedBlock",
    "CandidateMatch",
    "TierMatches",
    "MatchReport",
    # Matcher
    "IntervalMatcher",
    "get_interval_matcher",
    "match",
    # Loader
    "AvailabilityLoader",
]
