"""Reordering move variants, wire schema and results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing_extensions import deprecated


@dataclass(frozen=True)
class SlotMove:
    """Move one slot to a new position and/or priority tier."""

    appointment_id: str
    slot_id: str
    new_position: Optional[int] = None
    new_priority_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, Optional[str]]:
        return (self.appointment_id, self.slot_id)

    @property
    def is_empty(self) -> bool:
        return self.new_position is None and self.new_priority_id is None


@deprecated("Root-level moves only update legacy appointment fields; use SlotMove")
@dataclass(frozen=True)
class RootMove:
    """Legacy whole-appointment move (root ``priority_id``/``position``)."""

    appointment_id: str
    new_position: Optional[int] = None
    new_priority_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, Optional[str]]:
        return (self.appointment_id, None)

    @property
    def is_empty(self) -> bool:
        return self.new_position is None and self.new_priority_id is None


Move = Union[SlotMove, RootMove]


class MoveRequest(BaseModel):
    """
    Wire format of a move.

    Accepts both the legacy keys (``id``, ``position``, ``priority``) and the
    explicit ones.
    """

    model_config = ConfigDict(extra="ignore")

    appointment_id: str = Field(validation_alias=AliasChoices("appointment_id", "appointmentId", "id"))
    slot_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("slot_id", "slotId"))
    new_position: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("new_position", "newPosition", "position")
    )
    new_priority_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("new_priority_id", "newPriorityId", "priority")
    )

    @field_validator("appointment_id", "slot_id", "new_priority_id", mode="before")
    @classmethod
    def strip_ids(cls, v):
        if v is None:
            return v
        v = str(v).strip()
        return v or None

    @field_validator("new_position")
    @classmethod
    def validate_position(cls, v):
        if v is not None and v < 0:
            raise ValueError("position must be zero or positive")
        return v


class MoveStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NOOP = "noop"


class AggregateStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    MIXED = "mixed"
    NOOP = "noop"


@dataclass
class MoveResult:
    """Outcome of one move."""

    appointment_id: Optional[str]
    slot_id: Optional[str]
    status: MoveStatus
    reason: Optional[str] = None
    error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "appointment_id": self.appointment_id,
            "slot_id": self.slot_id,
            "status": self.status.value,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ReorderReport:
    """Per-item results plus the aggregate status."""

    results: list[MoveResult] = field(default_factory=list)

    def count(self, status: MoveStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def status(self) -> AggregateStatus:
        successes = self.count(MoveStatus.SUCCESS)
        failures = self.count(MoveStatus.FAILED)
        if successes and failures:
            return AggregateStatus.MIXED
        if successes:
            return AggregateStatus.SUCCESS
        if failures:
            return AggregateStatus.FAILED
        return AggregateStatus.NOOP

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
        }
