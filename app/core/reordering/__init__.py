"""
Reordering Module

Batched priority/position moves with per-item outcomes.

Usage:
    from app.core.reordering import ReorderingService

    report = await ReorderingService().apply_moves(org_id, [
        {"appointmentId": "...", "slotId": "...", "position": 0},
        {"appointmentId": "...", "slotId": "...", "priority": "..."},
    ])
    print(report.status)  # success | failed | mixed | noop
"""

# Types
from app.core.reordering.types import (
    SlotMove,
    RootMove,
    Move,
    MoveRequest,
    MoveStatus,
    AggregateStatus,
    MoveResult,
    ReorderReport,
)

# Service
from app.core.reordering.service import (
    ReorderingService,
    parse_move,
    parse_moves,
    dedupe_moves,
)

__all__ = [
    # Types
    "SlotMove",
    "RootMove",
    "Move",
    "MoveRequest",
    "MoveStatus",
    "AggregateStatus",
    "MoveResult",
    "ReorderReport",
    # Service
    "ReorderingService",
    "parse_move",
    "parse_moves",
    "dedupe_moves",
]
