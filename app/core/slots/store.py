"""
Slot Store.

Repository over the appointment aggregate: appointments, their slots,
contact attempts and the local message log. All status writes go through
``SlotStore.transition`` so no caller can skip a state.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.models.database import (
    Appointment,
    AppointmentAvailability,
    AppointmentSlot,
    AvailabilityBlock,
    ContactAppointment,
    MessageLog,
    Priority,
)
from .state import can_transition
from .types import (
    Decision,
    Interval,
    PriorityTier,
    ProposedBy,
    SlotSnapshot,
    SlotStatus,
    TimeBlock,
    Weekday,
    parse_time_of_day,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_id(value, kind: str = "document", **context) -> uuid.UUID:
    """Parse an identifier; malformed ids are reported as not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as e:
        raise NotFoundError(f"{kind.capitalize()} {value} not found", **context) from e


class SlotStore:
    """Persistence operations for the appointment aggregate."""

    # === Lookups ===

    async def get_appointment(
        self,
        session: AsyncSession,
        org_id: str,
        appointment_id,
        for_update: bool = False,
    ) -> Appointment:
        """Load an appointment owned by ``org_id``.

        Args:
            session: Open session
            org_id: Claimed organization
            appointment_id: Appointment identifier
            for_update: Lock the row until the transaction ends

        Raises:
            NotFoundError: Missing or owned by another organization
        """
        ctx = {"org_id": org_id, "appointment_id": str(appointment_id)}
        stmt = select(Appointment).where(
            Appointment.id == parse_id(appointment_id, "appointment", **ctx),
            Appointment.org_id == org_id,
        )
        if for_update:
            stmt = stmt.with_for_update()

        appointment = (await session.execute(stmt)).scalar_one_or_none()
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found", **ctx)
        return appointment

    async def find_by_conversation(
        self,
        session: AsyncSession,
        org_id: str,
        conversation_ref: str,
        for_update: bool = False,
    ) -> Appointment:
        """Load the appointment that owns a gateway conversation."""
        stmt = select(Appointment).where(
            Appointment.org_id == org_id,
            Appointment.conversation_ref == conversation_ref,
        )
        if for_update:
            stmt = stmt.with_for_update()

        appointment = (await session.execute(stmt)).scalars().first()
        if appointment is None:
            raise NotFoundError(
                f"No appointment for conversation {conversation_ref}",
                org_id=org_id,
            )
        return appointment

    def get_slot(self, appointment: Appointment, slot_id) -> AppointmentSlot:
        """Find a slot inside a loaded appointment."""
        ctx = {
            "org_id": appointment.org_id,
            "appointment_id": str(appointment.id),
            "slot_id": str(slot_id),
        }
        wanted = parse_id(slot_id, "slot", **ctx)
        for slot in appointment.slots:
            if slot.id == wanted:
                return slot
        raise NotFoundError(f"Slot {slot_id} not found", **ctx)

    async def get_priority(self, session: AsyncSession, org_id: str, priority_id) -> Priority:
        """Load a priority tier owned by ``org_id``."""
        stmt = select(Priority).where(
            Priority.id == parse_id(priority_id, "priority", org_id=org_id),
            Priority.org_id == org_id,
        )
        priority = (await session.execute(stmt)).scalar_one_or_none()
        if priority is None:
            raise NotFoundError(f"Priority {priority_id} not found", org_id=org_id)
        return priority

    async def list_priorities(self, session: AsyncSession, org_id: str) -> list[Priority]:
        """Priority catalog of an organization, ordered by rank."""
        stmt = select(Priority).where(Priority.org_id == org_id).order_by(Priority.rank)
        return list((await session.execute(stmt)).scalars().all())

    # === Catalog management ===

    async def create_priority(
        self,
        session: AsyncSession,
        org_id: str,
        rank: int,
        name: str,
        duration_hours: float = 0,
        color: str = "",
        description: str = "",
    ) -> Priority:
        priority = Priority(
            id=uuid.uuid4(),
            org_id=org_id,
            rank=rank,
            name=name,
            duration_hours=duration_hours,
            color=color,
            description=description,
        )
        session.add(priority)
        await session.flush()
        return priority

    async def create_time_block(
        self,
        session: AsyncSession,
        org_id: str,
        weekday: Weekday,
        start_of_day: str,
        end_of_day: str,
        label: str = "",
    ) -> AvailabilityBlock:
        """Create a clinic time block after validating its bounds."""
        if parse_time_of_day(start_of_day) >= parse_time_of_day(end_of_day):
            raise ValidationError(
                f"Time block must start before it ends ({start_of_day} >= {end_of_day})",
                org_id=org_id,
            )
        block = AvailabilityBlock(
            id=uuid.uuid4(),
            org_id=org_id,
            weekday=Weekday(weekday).value,
            start_of_day=start_of_day,
            end_of_day=end_of_day,
            label=label,
        )
        session.add(block)
        await session.flush()
        return block

    async def supersede_time_block(
        self,
        session: AsyncSession,
        org_id: str,
        block_id,
        start_of_day: str,
        end_of_day: str,
        label: Optional[str] = None,
    ) -> AvailabilityBlock:
        """Replace a block without mutating the referenced row.

        Existing appointment availability keeps pointing at the old block;
        the old row is stamped with ``superseded_at``/``superseded_by_id``.
        """
        stmt = select(AvailabilityBlock).where(
            AvailabilityBlock.id == parse_id(block_id, "time block", org_id=org_id),
            AvailabilityBlock.org_id == org_id,
        )
        old = (await session.execute(stmt)).scalar_one_or_none()
        if old is None:
            raise NotFoundError(f"Time block {block_id} not found", org_id=org_id)
        if old.superseded_at is not None:
            raise ValidationError(f"Time block {block_id} was already superseded", org_id=org_id)

        new = await self.create_time_block(
            session,
            org_id,
            Weekday(old.weekday),
            start_of_day,
            end_of_day,
            label if label is not None else old.label,
        )
        old.superseded_at = _utcnow()
        old.superseded_by_id = new.id
        await session.flush()
        return new

    # === Booking ===

    async def book_appointment(
        self,
        session: AsyncSession,
        org_id: str,
        windows: Iterable[Interval],
        priority_id=None,
        treatment_id: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        conversation_ref: Optional[str] = None,
        org_name: str = "",
        availability: Optional[dict[Weekday, list]] = None,
        initial_status: SlotStatus = SlotStatus.NO_CONTACTED,
    ) -> Appointment:
        """Create an appointment with one slot per requested window.

        Args:
            session: Open session
            org_id: Owning organization
            windows: Requested date/time windows, one slot each
            priority_id: Priority tier applied to every slot
            availability: Weekly availability as weekday -> block ids
            initial_status: NoContacted, or NotStarted for drafts

        Returns:
            The new appointment (flushed)
        """
        windows = list(windows)
        if not windows:
            raise ValidationError("At least one requested window is required", org_id=org_id)
        if initial_status not in (SlotStatus.NOT_STARTED, SlotStatus.NO_CONTACTED):
            raise ValidationError(f"Slots cannot be booked as {initial_status.value}", org_id=org_id)

        priority_uuid = None
        if priority_id is not None:
            priority_uuid = (await self.get_priority(session, org_id, priority_id)).id

        appointment = Appointment(
            id=uuid.uuid4(),
            org_id=org_id,
            org_name=org_name,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            conversation_ref=conversation_ref,
            treatment_id=treatment_id,
            priority_id=priority_uuid,
            slots=[],
            availability=[],
        )

        for position, window in enumerate(windows):
            appointment.slots.append(
                AppointmentSlot(
                    id=uuid.uuid4(),
                    start_date=window.start,
                    end_date=window.end,
                    status=initial_status,
                    priority_id=priority_uuid,
                    treatment_id=treatment_id,
                    position=position,
                )
            )

        for weekday, block_ids in (availability or {}).items():
            for block_id in block_ids:
                block = await self._get_block(session, org_id, block_id)
                appointment.availability.append(
                    AppointmentAvailability(
                        id=uuid.uuid4(),
                        weekday=Weekday(weekday).value,
                        block_id=block.id,
                        block=block,
                    )
                )

        session.add(appointment)
        await session.flush()
        logger.info(f"Booked appointment {appointment.id} with {len(windows)} slot(s) for org {org_id}")
        return appointment

    async def _get_block(self, session: AsyncSession, org_id: str, block_id) -> AvailabilityBlock:
        stmt = select(AvailabilityBlock).where(
            AvailabilityBlock.id == parse_id(block_id, "time block", org_id=org_id),
            AvailabilityBlock.org_id == org_id,
        )
        block = (await session.execute(stmt)).scalar_one_or_none()
        if block is None:
            raise NotFoundError(f"Time block {block_id} not found", org_id=org_id)
        return block

    def add_slot(
        self,
        appointment: Appointment,
        window: Interval,
        priority_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> AppointmentSlot:
        """Append a slot at the end of the appointment's draw order."""
        positions = [s.position for s in appointment.slots if s.position is not None]
        slot = AppointmentSlot(
            id=uuid.uuid4(),
            start_date=window.start,
            end_date=window.end,
            status=SlotStatus.NO_CONTACTED,
            priority_id=priority_id if priority_id is not None else appointment.priority_id,
            treatment_id=appointment.treatment_id,
            position=(max(positions) + 1) if positions else 0,
        )
        appointment.slots.append(slot)
        self.touch(appointment, now)
        return slot

    def delete_slot(self, appointment: Appointment, slot_id, now: Optional[datetime] = None) -> None:
        """Explicitly remove a slot. Slots are never dropped implicitly."""
        slot = self.get_slot(appointment, slot_id)
        appointment.slots.remove(slot)
        self.touch(appointment, now)
        logger.info(f"Deleted slot {slot.id} from appointment {appointment.id}")

    # === State changes ===

    def transition(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        to_status: SlotStatus,
    ) -> SlotStatus:
        """Move a slot to ``to_status`` if the state machine allows it.

        Returns:
            The previous status

        Raises:
            InvalidTransitionError: Transition not allowed
        """
        from_status = slot.status
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError(
                from_status.value,
                to_status.value,
                org_id=appointment.org_id,
                appointment_id=str(appointment.id),
                slot_id=str(slot.id),
            )
        slot.status = to_status
        logger.info(f"Slot {slot.id}: {from_status.value} -> {to_status.value}")
        return from_status

    def is_proposal_expired(self, slot: AppointmentSlot, now: datetime, max_age: timedelta) -> bool:
        if slot.proposed_at is None:
            return True
        return slot.proposed_at < now - max_age

    def has_open_proposal(self, slot: AppointmentSlot, now: datetime, max_age: timedelta) -> bool:
        """Pending, unresolved and not expired."""
        return (
            slot.status == SlotStatus.PENDING
            and slot.decided_by_message_ref is None
            and not self.is_proposal_expired(slot, now, max_age)
        )

    def start_proposal(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        window: Interval,
        proposed_by: ProposedBy,
        reason: Optional[str],
        body: str,
        now: datetime,
        max_age: timedelta,
    ) -> None:
        """Record a new proposal and move the slot to Pending."""
        if self.has_open_proposal(slot, now, max_age):
            raise ValidationError(
                "Slot already has an open proposal",
                org_id=appointment.org_id,
                appointment_id=str(appointment.id),
                slot_id=str(slot.id),
            )
        self.transition(appointment, slot, SlotStatus.PENDING)

        if not slot.has_origin and slot.start_date is not None and slot.end_date is not None:
            slot.origin_start = slot.start_date
            slot.origin_end = slot.end_date
            slot.origin_captured_at = now

        slot.proposed_start = window.start
        slot.proposed_end = window.end
        slot.proposed_by = proposed_by
        slot.proposed_reason = reason
        slot.proposed_at = now
        slot.proposal_body = body
        slot.proposal_message_ref = None
        slot.reschedule_requested = False

        slot.decision = None
        slot.decided_at = None
        slot.decided_by_message_ref = None
        slot.late_response = False

        appointment.last_message_interaction = body
        self.touch(appointment, now)

    def apply_confirmation(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        message_ref: str,
        now: datetime,
    ) -> None:
        """Adopt the proposed dates as the slot's authoritative time."""
        if slot.proposed_start is None or slot.proposed_end is None:
            raise ValidationError(
                "Slot has no proposed dates to confirm",
                org_id=appointment.org_id,
                appointment_id=str(appointment.id),
                slot_id=str(slot.id),
            )
        self.transition(appointment, slot, SlotStatus.CONFIRMED)
        slot.late_response = bool(slot.start_date and now > slot.start_date)
        slot.start_date = slot.proposed_start
        slot.end_date = slot.proposed_end
        self._stamp_decision(slot, Decision.CONFIRMED, message_ref, now)
        appointment.reschedule = True
        self.touch(appointment, now)

    def apply_rejection(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        message_ref: str,
        now: datetime,
    ) -> list[str]:
        """Revert the slot to its origin dates.

        Returns:
            Diagnostics (non-empty when no origin was available)
        """
        diagnostics: list[str] = []
        self.transition(appointment, slot, SlotStatus.REJECTED)
        slot.late_response = bool(slot.start_date and now > slot.start_date)
        if slot.has_origin:
            slot.start_date = slot.origin_start
            slot.end_date = slot.origin_end
        else:
            diagnostics.append(
                f"Slot {slot.id} rejected without origin dates; kept current dates"
            )
            logger.warning(diagnostics[-1])
        self._stamp_decision(slot, Decision.DECLINED, message_ref, now)
        self.touch(appointment, now)
        return diagnostics

    def apply_reschedule_request(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        message_ref: str,
        now: datetime,
    ) -> None:
        """Close the proposal without a decision; the clinic must repropose."""
        slot.reschedule_requested = True
        slot.decision = Decision.RESCHEDULE
        slot.decided_by_message_ref = message_ref
        self.touch(appointment, now)

    def _stamp_decision(
        self,
        slot: AppointmentSlot,
        decision: Decision,
        message_ref: str,
        now: datetime,
    ) -> None:
        slot.decision = decision
        slot.decided_at = now
        slot.decided_by_message_ref = message_ref

    def touch(self, appointment: Appointment, now: Optional[datetime] = None) -> None:
        """Bump the aggregate so its version check guards this write."""
        appointment.updated_at = now or _utcnow()

    # === Contacts ===

    def create_contact(
        self,
        session: AsyncSession,
        appointment: Appointment,
        slot: AppointmentSlot,
        window: Interval,
        context: str,
    ) -> ContactAppointment:
        """Create the contact attempt for a new proposal and link it."""
        contact = ContactAppointment(
            id=uuid.uuid4(),
            org_id=appointment.org_id,
            appointment_id=appointment.id,
            slot_id=slot.id,
            status=SlotStatus.PENDING,
            start_date=window.start,
            end_date=window.end,
            context=context,
            conversation_ref=appointment.conversation_ref,
            participant_ref=appointment.participant_ref,
        )
        session.add(contact)
        slot.contact_id = contact.id
        return contact

    async def get_contact(
        self,
        session: AsyncSession,
        appointment: Appointment,
        slot: AppointmentSlot,
    ) -> Optional[ContactAppointment]:
        """Active contact attempt of a slot, if any."""
        if slot.contact_id is None:
            return None
        stmt = select(ContactAppointment).where(
            ContactAppointment.id == slot.contact_id,
            ContactAppointment.org_id == appointment.org_id,
            ContactAppointment.appointment_id == appointment.id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def count_contacts(self, session: AsyncSession, appointment_id) -> int:
        stmt = select(ContactAppointment.id).where(
            ContactAppointment.appointment_id == parse_id(appointment_id, "appointment")
        )
        return len((await session.execute(stmt)).scalars().all())

    # === Message log ===

    async def get_logged_messages(
        self,
        session: AsyncSession,
        org_id: str,
        message_refs: Iterable[str],
    ) -> dict[str, MessageLog]:
        refs = [r for r in message_refs if r]
        if not refs:
            return {}
        stmt = select(MessageLog).where(
            MessageLog.org_id == org_id,
            MessageLog.message_ref.in_(refs),
        )
        return {m.message_ref: m for m in (await session.execute(stmt)).scalars().all()}

    async def find_resolved_by(
        self,
        session: AsyncSession,
        org_id: str,
        source_message_ref: str,
    ) -> Optional[MessageLog]:
        """Outbound message already resolved by ``source_message_ref``."""
        stmt = select(MessageLog).where(
            MessageLog.org_id == org_id,
            MessageLog.resolved_by_ref == source_message_ref,
        )
        return (await session.execute(stmt)).scalars().first()

    async def record_message(
        self,
        session: AsyncSession,
        org_id: str,
        conversation_ref: str,
        message_ref: str,
        direction: str,
        body: str = "",
        type: str = "Message",
        index: Optional[int] = None,
        author: str = "",
        created_at: Optional[datetime] = None,
        responds_to_ref: Optional[str] = None,
    ) -> MessageLog:
        """Insert a message into the log, or return the existing row."""
        existing = (await self.get_logged_messages(session, org_id, [message_ref])).get(message_ref)
        if existing is not None:
            if responds_to_ref and not existing.responds_to_ref:
                existing.responds_to_ref = responds_to_ref
            return existing

        row = MessageLog(
            id=uuid.uuid4(),
            org_id=org_id,
            conversation_ref=conversation_ref,
            message_ref=message_ref,
            direction=direction,
            type=type,
            index=index,
            author=author,
            body=body,
            created_at=created_at or _utcnow(),
            responds_to_ref=responds_to_ref,
        )
        session.add(row)
        return row

    # === Snapshots ===

    def snapshot(
        self,
        appointment: Appointment,
        slot: AppointmentSlot,
        diagnostics: Optional[list[str]] = None,
    ) -> SlotSnapshot:
        """Detached, read-only view of a slot."""
        proposed = None
        if slot.proposed_at is not None:
            proposed = {
                "start_date": slot.proposed_start,
                "end_date": slot.proposed_end,
                "proposed_by": slot.proposed_by.value if slot.proposed_by else None,
                "reason": slot.proposed_reason,
                "created_at": slot.proposed_at,
            }
        confirmation = None
        if slot.decision is not None:
            confirmation = {
                "decision": slot.decision.value,
                "decided_at": slot.decided_at,
                "by_message_ref": slot.decided_by_message_ref,
                "late_response": slot.late_response,
            }
        origin = None
        if slot.has_origin:
            origin = {
                "start_date": slot.origin_start,
                "end_date": slot.origin_end,
                "captured_at": slot.origin_captured_at,
            }
        return SlotSnapshot(
            id=str(slot.id),
            appointment_id=str(appointment.id),
            org_id=appointment.org_id,
            status=slot.status,
            start_date=slot.start_date,
            end_date=slot.end_date,
            position=slot.position,
            priority_id=str(slot.priority_id) if slot.priority_id else None,
            treatment_id=slot.treatment_id,
            proposed=proposed,
            confirmation=confirmation,
            origin=origin,
            contact_id=str(slot.contact_id) if slot.contact_id else None,
            proposal_message_ref=slot.proposal_message_ref,
            reschedule_requested=slot.reschedule_requested,
            diagnostics=list(diagnostics or []),
        )


def to_priority_tier(priority: Priority) -> PriorityTier:
    """Denormalised snapshot of a priority row."""
    return PriorityTier(
        id=str(priority.id),
        rank=priority.rank,
        name=priority.name,
        duration_hours=priority.duration_hours or 0,
        color=priority.color or "",
        description=priority.description or "",
    )


def to_time_block(block: AvailabilityBlock) -> TimeBlock:
    return TimeBlock(
        id=str(block.id),
        weekday=Weekday(block.weekday),
        start_of_day=block.start_of_day,
        end_of_day=block.end_of_day,
        label=block.label or "",
    )


# Singleton
_store: Optional[SlotStore] = None


def get_slot_store() -> SlotStore:
    """Get singleton SlotStore."""
    global _store
    if _store is None:
        _store = SlotStore()
    return _store
