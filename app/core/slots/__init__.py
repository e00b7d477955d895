"""
Slots Module

Time model value types and the slot contact state machine.

The persistence layer lives in ``app.core.slots.store`` and is imported
from there directly (the ORM models depend on this package's types).

Usage:
    from app.core.slots import Interval, SlotStatus, can_transition

    window = Interval(start, end)
    can_transition(SlotStatus.PENDING, SlotStatus.CONFIRMED)  # True
"""

# Time Model
from app.core.slots.types import (
    Weekday,
    SlotStatus,
    ProposedBy,
    Decision,
    Interval,
    TimeBlock,
    PriorityTier,
    SlotSnapshot,
    parse_time_of_day,
    format_time_of_day,
    minutes_of_day,
    overlap_minutes,
)

# State Machine
from app.core.slots.state import (
    VALID_TRANSITIONS,
    PROPOSABLE_STATES,
    DECIDED_STATES,
    ACTIVE_STATES,
    can_transition,
    get_valid_transitions,
    is_decided,
    is_observation_state,
)

__all__ = [
    # Time Model
    "Weekday",
    "SlotStatus",
    "ProposedBy",
    "Decision",
    "Interval",
    "TimeBlock",
    "PriorityTier",
    "SlotSnapshot",
    "parse_time_of_day",
    "format_time_of_day",
    "minutes_of_day",
    "overlap_minutes",
    # State Machine
    "VALID_TRANSITIONS",
    "PROPOSABLE_STATES",
    "DECIDED_STATES",
    "ACTIVE_STATES",
    "can_transition",
    "get_valid_transitions",
    "is_decided",
    "is_observation_state",
]
