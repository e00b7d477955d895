"""Slot contact state machine."""

from typing import Set

from .types import SlotStatus


# Valid state transitions
VALID_TRANSITIONS: dict[SlotStatus, Set[SlotStatus]] = {
    SlotStatus.NOT_STARTED: {
        SlotStatus.NO_CONTACTED,
    },
    SlotStatus.NO_CONTACTED: {
        SlotStatus.PENDING,
    },
    SlotStatus.PENDING: {
        SlotStatus.CONFIRMED,
        SlotStatus.REJECTED,
        SlotStatus.FAILED,
        SlotStatus.CONTACTED,
        SlotStatus.PENDING,  # Supersede a resolved or expired proposal
    },
    SlotStatus.CONFIRMED: {
        SlotStatus.PENDING,
    },
    SlotStatus.REJECTED: {
        SlotStatus.PENDING,
    },
    SlotStatus.FAILED: {
        SlotStatus.PENDING,
    },
    SlotStatus.CONTACTED: {
        SlotStatus.PENDING,  # Explicit clinic re-proposal only
    },
}

# States in which a proposal may be issued
PROPOSABLE_STATES: Set[SlotStatus] = {
    status for status, targets in VALID_TRANSITIONS.items()
    if SlotStatus.PENDING in targets
}

# States carrying a final patient decision
DECIDED_STATES: Set[SlotStatus] = {
    SlotStatus.CONFIRMED,
    SlotStatus.REJECTED,
}

# States that scheduling automation treats as "still being worked on"
ACTIVE_STATES: Set[SlotStatus] = {
    SlotStatus.PENDING,
    SlotStatus.CONTACTED,
    SlotStatus.NOT_STARTED,
    SlotStatus.NO_CONTACTED,
}


def can_transition(from_state: SlotStatus, to_state: SlotStatus) -> bool:
    """Check if a state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def get_valid_transitions(state: SlotStatus) -> Set[SlotStatus]:
    """Get all valid transitions from a state."""
    return VALID_TRANSITIONS.get(state, set())


def is_decided(state: SlotStatus) -> bool:
    """Check if the slot holds a confirmed or rejected decision."""
    return state in DECIDED_STATES


def is_observation_state(state: SlotStatus) -> bool:
    """Contacted slots are left alone by automation."""
    return state == SlotStatus.CONTACTED
