"""
Priority Reordering Service.

Applies batched slot moves (new position and/or priority tier). Each move
runs in its own transaction so one failure never rolls back another; the
caller always receives one result per (deduplicated) move, including a
FAILED result for each entry that could not be parsed.
"""

import logging
import warnings
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import SlotEngineError, ValidationError
from app.core.slots.store import SlotStore, get_slot_store
from app.core.transactions import StepTracker, run_in_transaction
from .types import Move, MoveRequest, MoveResult, MoveStatus, ReorderReport, RootMove, SlotMove

logger = logging.getLogger(__name__)

MOVE_TYPES = (SlotMove, RootMove)


def parse_move(item: Any, index: Optional[int] = None) -> Move:
    """Convert one wire dictionary into a move variant.

    Moves without a slot id become deprecated ``RootMove`` values.

    Raises:
        ValidationError: Entry is malformed
    """
    try:
        request = MoveRequest.model_validate(item)
    except PydanticValidationError as e:
        where = f" at index {index}" if index is not None else ""
        raise ValidationError(f"Invalid move{where}: {e.errors()[0]['msg']}") from e

    if request.slot_id:
        return SlotMove(
            appointment_id=request.appointment_id,
            slot_id=request.slot_id,
            new_position=request.new_position,
            new_priority_id=request.new_priority_id,
        )
    return RootMove(
        appointment_id=request.appointment_id,
        new_position=request.new_position,
        new_priority_id=request.new_priority_id,
    )


def _raw_field(item: Any, *keys: str) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    for key in keys:
        value = item.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _parse_entry(index: int, item: Any) -> Union[Move, MoveResult]:
    """Parse one entry, turning a malformed one into a FAILED result."""
    if isinstance(item, MOVE_TYPES):
        return item
    try:
        return parse_move(item, index)
    except ValidationError as e:
        logger.warning(f"Skipping move at index {index}: {e.message}")
        return MoveResult(
            appointment_id=_raw_field(item, "appointment_id", "appointmentId", "id"),
            slot_id=_raw_field(item, "slot_id", "slotId"),
            status=MoveStatus.FAILED,
            reason=e.message,
            error=e.to_dict(),
        )


def parse_moves(raw: Union[list, dict]) -> list[Union[Move, MoveResult]]:
    """Convert a wire body into move variants, in input order.

    Accepts a list of moves or ``{"moves": [...]}``. An entry that fails
    validation is returned as a FAILED ``MoveResult`` in its place.

    Raises:
        ValidationError: Body is not a list of moves
    """
    items = raw.get("moves") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ValidationError("Body must be a list of moves or {\"moves\": [...]}")
    return [_parse_entry(i, item) for i, item in enumerate(items)]


def dedupe_moves(moves: Iterable[Move]) -> list[Move]:
    """Collapse moves per (appointment, slot); later fields override earlier ones."""
    merged: dict[tuple[str, Optional[str]], Move] = {}
    for move in moves:
        previous = merged.get(move.key)
        if previous is None:
            merged[move.key] = move
            continue

        position = move.new_position if move.new_position is not None else previous.new_position
        priority = move.new_priority_id if move.new_priority_id is not None else previous.new_priority_id
        if isinstance(move, SlotMove):
            merged[move.key] = SlotMove(move.appointment_id, move.slot_id, position, priority)
        else:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DeprecationWarning)
                merged[move.key] = RootMove(move.appointment_id, position, priority)
    return list(merged.values())


class ReorderingService:
    """Applies priority/position moves with per-item outcomes."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[SlotStore] = None,
    ):
        self._session_factory = session_factory
        self.store = store or get_slot_store()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from app.infra.database import async_session_factory

            self._session_factory = async_session_factory
        return self._session_factory

    async def apply_moves(self, org_id: str, moves: Iterable[Union[Move, dict[str, Any]]]) -> ReorderReport:
        """Apply a batch of moves for one organization.

        Args:
            org_id: Claimed organization; every referenced document is re-checked
            moves: Move variants or wire dictionaries

        Returns:
            ReorderReport with one result per deduplicated move or
            malformed entry, in order of first appearance
        """
        entries = [_parse_entry(i, m) for i, m in enumerate(moves)]
        merged = {m.key: m for m in dedupe_moves(e for e in entries if isinstance(e, MOVE_TYPES))}

        report = ReorderReport()
        for entry in entries:
            if isinstance(entry, MoveResult):
                report.results.append(entry)
                continue
            move = merged.pop(entry.key, None)
            if move is not None:
                report.results.append(await self.apply_move(org_id, move))

        logger.info(
            f"Reorder for org {org_id}: {report.status.value} "
            f"({report.count(MoveStatus.SUCCESS)} success, "
            f"{report.count(MoveStatus.FAILED)} failed, "
            f"{report.count(MoveStatus.NOOP)} noop)"
        )
        return report

    async def apply_move(self, org_id: str, move: Move) -> MoveResult:
        """Apply one move in its own transaction."""
        slot_id = move.slot_id if isinstance(move, SlotMove) else None

        if move.is_empty:
            return MoveResult(move.appointment_id, slot_id, MoveStatus.NOOP, reason="Nothing to change")

        async def work(session: AsyncSession, step: StepTracker) -> MoveStatus:
            step("load")
            appointment = await self.store.get_appointment(
                session, org_id, move.appointment_id, for_update=True
            )
            priority_id = None
            if move.new_priority_id is not None:
                priority_id = (await self.store.get_priority(session, org_id, move.new_priority_id)).id

            step("slot_update")
            if isinstance(move, SlotMove):
                target = self.store.get_slot(appointment, move.slot_id)
            else:
                logger.warning(f"Deprecated root-level move on appointment {appointment.id}")
                target = appointment

            changed = False
            if priority_id is not None and target.priority_id != priority_id:
                target.priority_id = priority_id
                changed = True
            if move.new_position is not None and target.position != move.new_position:
                target.position = move.new_position
                changed = True

            if not changed:
                return MoveStatus.NOOP
            self.store.touch(appointment)
            await session.flush()
            return MoveStatus.SUCCESS

        context = {"org_id": org_id, "appointment_id": move.appointment_id, "slot_id": slot_id}
        try:
            status = await run_in_transaction(self.session_factory, work, context=context)
        except SlotEngineError as e:
            logger.warning(f"Move of {move.appointment_id}/{slot_id} failed: {e.message}")
            return MoveResult(move.appointment_id, slot_id, MoveStatus.FAILED, reason=e.message, error=e.to_dict())

        return MoveResult(move.appointment_id, slot_id, status)
