"""
Transactional Orchestrator.

Applies proposal and decision side effects to a slot, its contact record
and the message log as one atomic unit, then notifies the organization.

Flow of a slot:
    propose()              NoContacted/Confirmed/Rejected/Failed -> Pending
    handle_inbound_reply() correlate the reply, then resolve()
    resolve()              Pending -> Confirmed | Rejected (or reschedule flag)
    expire_stale_proposals() Pending (too old, undecided) -> Contacted
    advance()              one automation step for the active slot
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.errors import (
    CorrelationAmbiguousError,
    GatewayReadError,
    GatewaySendError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.slots.store import SlotStore, get_slot_store
from app.core.slots.types import Decision, Interval, ProposedBy, SlotSnapshot, SlotStatus
from app.core.transactions import StepTracker, run_in_transaction
from app.infra.messaging import INBOUND, OUTBOUND, TYPE_CONFIRMATION, MessagingGateway
from app.infra.notifications import (
    REPLY_NEEDS_ATTENTION,
    SLOT_CONFIRMED,
    SLOT_DECLINED,
    SLOT_RESCHEDULE_REQUESTED,
    NotificationChannel,
    org_room,
)
from app.models.database import Appointment, AppointmentSlot
from .classifier import ReplyClassifier, get_reply_classifier
from .correlator import ConfirmationCorrelator, pick_active_slot, pick_last_modified_pending_slot

logger = logging.getLogger(__name__)

DECISION_EVENTS = {
    Decision.CONFIRMED: SLOT_CONFIRMED,
    Decision.DECLINED: SLOT_DECLINED,
    Decision.RESCHEDULE: SLOT_RESCHEDULE_REQUESTED,
}

UNKNOWN_REPLY = "unknown_reply"

ProposalRenderer = Callable[[Appointment, Interval], str]


def format_date_range(window: Interval, tz: Optional[str] = None) -> str:
    """Human readable range in the clinic timezone, e.g. "Wednesday 16 July 2025, 9:30 AM - 10:30 AM"."""
    zone = ZoneInfo(tz or settings.clinic_timezone)
    start = window.start.astimezone(zone)
    end = window.end.astimezone(zone)

    def clock(value: datetime) -> str:
        return value.strftime("%I:%M %p").lstrip("0")

    return f"{start.strftime('%A')} {start.day} {start.strftime('%B %Y')}, {clock(start)} - {clock(end)}"


def default_proposal_body(appointment: Appointment, window: Interval) -> str:
    """Proposal SMS sent when the caller supplies no body."""
    return (
        f"Hi {appointment.full_name}, this is {appointment.org_name or appointment.org_id}. "
        f"We have a proposed appointment for you on {format_date_range(window)}. "
        f"Please reply with YES to confirm your attendance or NO if you are unable to attend."
    )


@dataclass
class ProposalResult:
    """Outcome of ``propose``. ``delivered=False`` is a partial success."""

    snapshot: SlotSnapshot
    contact_id: str
    delivered: bool
    message_ref: Optional[str] = None
    error: Optional[GatewaySendError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.snapshot.to_dict(),
            "contact_id": self.contact_id,
            "delivered": self.delivered,
            "message_ref": self.message_ref,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ResolveResult:
    """Outcome of ``resolve`` / ``handle_inbound_reply``."""

    decision: Decision
    applied: bool
    snapshot: Optional[SlotSnapshot] = None
    noop: bool = False
    reason: Optional[str] = None
    reply_ref: Optional[str] = None
    diagnostics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "applied": self.applied,
            "noop": self.noop,
            "reason": self.reason,
            "reply_ref": self.reply_ref,
            "slot": self.snapshot.to_dict() if self.snapshot else None,
            "diagnostics": list(self.diagnostics),
        }


@dataclass
class AdvanceResult:
    """What one automation step did."""

    action: str
    snapshot: Optional[SlotSnapshot] = None
    proposal: Optional[ProposalResult] = None
    resolution: Optional[ResolveResult] = None


class ConfirmationOrchestrator:
    """
    Drives slots through proposal and confirmation.

    Every mutation runs inside ``run_in_transaction`` with the appointment
    row locked; gateway sends happen between transactions and
    notifications are published after commit without awaiting delivery.
    """

    def __init__(
        self,
        gateway: MessagingGateway,
        channel: NotificationChannel,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[SlotStore] = None,
        classifier: Optional[ReplyClassifier] = None,
        correlator: Optional[ConfirmationCorrelator] = None,
        renderer: ProposalRenderer = default_proposal_body,
        clock: Optional[Callable[[], datetime]] = None,
        max_age: Optional[timedelta] = None,
    ):
        self.gateway = gateway
        self.channel = channel
        self._session_factory = session_factory
        self.store = store or get_slot_store()
        self.classifier = classifier or get_reply_classifier()
        self.max_age = max_age or timedelta(hours=settings.proposal_max_age_hours)
        self.correlator = correlator or ConfirmationCorrelator(
            gateway,
            classifier=self.classifier,
            store=self.store,
            max_age=self.max_age,
        )
        self.renderer = renderer
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from app.infra.database import async_session_factory

            self._session_factory = async_session_factory
        return self._session_factory

    async def _transaction(self, work, **context):
        return await run_in_transaction(self.session_factory, work, context=context)

    def _notify(self, org_id: str, event: str, payload: dict[str, Any]) -> None:
        self.channel.publish_nowait(org_room(org_id), event, payload)

    # === Proposal ===

    async def propose(
        self,
        org_id: str,
        appointment_id: str,
        slot_id: str,
        window: Interval,
        proposed_by: ProposedBy = ProposedBy.CLINIC,
        reason: Optional[str] = None,
        body: Optional[str] = None,
    ) -> ProposalResult:
        """Issue a proposal for a slot and send it to the patient.

        The Pending state is committed before sending. A failed send is
        recorded in a second transaction (slot and contact become Failed)
        and returned, not raised.

        Raises:
            NotFoundError: Appointment or slot not in the organization
            ValidationError: No conversation, or slot already has an open proposal
            InvalidTransitionError: Slot cannot be proposed from its state
        """
        ctx = {"org_id": org_id, "appointment_id": str(appointment_id), "slot_id": str(slot_id)}
        now = self.clock()

        async def open_proposal(session: AsyncSession, step: StepTracker):
            step("load")
            appointment = await self.store.get_appointment(session, org_id, appointment_id, for_update=True)
            slot = self.store.get_slot(appointment, slot_id)
            if not appointment.conversation_ref:
                raise ValidationError("Appointment has no conversation to send the proposal to", **ctx)

            text = body or self.renderer(appointment, window)

            step("slot_update")
            self.store.start_proposal(
                appointment, slot, window, proposed_by, reason, text, now, self.max_age
            )

            step("contact_update")
            contact = self.store.create_contact(
                session,
                appointment,
                slot,
                window,
                context=f"Appointment request for {appointment.full_name}",
            )
            await session.flush()
            return appointment.conversation_ref, contact.id, text

        conversation_ref, contact_id, text = await self._transaction(open_proposal, **ctx)
        logger.info(f"Proposal opened for slot {slot_id} (contact {contact_id})")

        try:
            message_ref = await self.gateway.send_message(
                conversation_ref,
                text,
                type=TYPE_CONFIRMATION,
                attributes={"slotId": str(slot_id), "appointmentId": str(appointment_id)},
            )
        except GatewaySendError as e:
            logger.error(f"Proposal for slot {slot_id} not delivered: {e.message}")
            snapshot = await self._record_send_failure(org_id, appointment_id, slot_id, contact_id, e)
            e.org_id, e.appointment_id, e.slot_id = org_id, str(appointment_id), str(slot_id)
            return ProposalResult(
                snapshot=snapshot,
                contact_id=str(contact_id),
                delivered=False,
                error=e,
            )

        snapshot = await self._record_sent(
            org_id, appointment_id, slot_id, contact_id, conversation_ref, message_ref, text
        )
        return ProposalResult(
            snapshot=snapshot,
            contact_id=str(contact_id),
            delivered=True,
            message_ref=message_ref,
        )

    async def _record_sent(
        self,
        org_id: str,
        appointment_id,
        slot_id,
        contact_id: uuid.UUID,
        conversation_ref: str,
        message_ref: str,
        text: str,
    ) -> SlotSnapshot:
        now = self.clock()

        async def work(session: AsyncSession, step: StepTracker):
            step("load")
            appointment = await self.store.get_appointment(session, org_id, appointment_id, for_update=True)
            slot = self.store.get_slot(appointment, slot_id)

            step("slot_update")
            if slot.contact_id == contact_id:
                slot.proposal_message_ref = message_ref
                self.store.touch(appointment, now)

            step("contact_update")
            contact = await self.store.get_contact(session, appointment, slot)
            if contact is not None and contact.id == contact_id:
                contact.ask_message_ref = message_ref
                contact.sent_at = now

            step("message_resolution")
            await self.store.record_message(
                session,
                org_id,
                conversation_ref,
                message_ref,
                OUTBOUND,
                body=text,
                type=TYPE_CONFIRMATION,
                author=settings.gateway_author,
                created_at=now,
            )
            await session.flush()
            return self.store.snapshot(appointment, slot)

        return await self._transaction(
            work, org_id=org_id, appointment_id=str(appointment_id), slot_id=str(slot_id)
        )

    async def _record_send_failure(
        self,
        org_id: str,
        appointment_id,
        slot_id,
        contact_id: uuid.UUID,
        error: GatewaySendError,
    ) -> SlotSnapshot:
        now = self.clock()

        async def work(session: AsyncSession, step: StepTracker):
            step("load")
            appointment = await self.store.get_appointment(session, org_id, appointment_id, for_update=True)
            slot = self.store.get_slot(appointment, slot_id)

            # Only fail the attempt that was just opened
            step("slot_update")
            if slot.contact_id == contact_id and slot.status == SlotStatus.PENDING:
                self.store.transition(appointment, slot, SlotStatus.FAILED)
                self.store.touch(appointment, now)

            step("contact_update")
            contact = await self.store.get_contact(session, appointment, slot)
            if contact is not None and contact.id == contact_id:
                contact.status = SlotStatus.FAILED
                contact.error = error.message

            await session.flush()
            return self.store.snapshot(appointment, slot, diagnostics=[error.message])

        return await self._transaction(
            work, org_id=org_id, appointment_id=str(appointment_id), slot_id=str(slot_id)
        )

    # === Resolution ===

    async def resolve(
        self,
        org_id: str,
        appointment_id: str,
        decision: Decision,
        source_message_ref: str,
        slot_id: Optional[str] = None,
        proposal_message_ref: Optional[str] = None,
        classification: Optional[Decision] = None,
    ) -> ResolveResult:
        """Apply a patient decision to a slot atomically.

        Args:
            org_id: Claimed organization
            appointment_id: Appointment identifier
            decision: confirmed, declined or reschedule
            source_message_ref: Inbound reply that carries the decision
            slot_id: Target slot (defaults to the most recently proposed Pending slot)
            proposal_message_ref: Outbound proposal being answered
            classification: Reply classification echoed in the notification

        Returns:
            ResolveResult; ``noop=True`` when this reply was already applied

        Raises:
            NotFoundError: Appointment or slot not in the organization
            ValidationError: Decision cannot be applied
            TransactionFailedError: A step failed; nothing was persisted
            TransactionAbortedError: Conflict persisted after a retry
        """
        if decision == Decision.UNKNOWN:
            raise ValidationError(
                "An unknown decision cannot be applied",
                org_id=org_id,
                appointment_id=str(appointment_id),
            )
        ctx = {"org_id": org_id, "appointment_id": str(appointment_id)}
        if slot_id is not None:
            ctx["slot_id"] = str(slot_id)
        now = self.clock()

        async def work(session: AsyncSession, step: StepTracker) -> ResolveResult:
            step("load")
            appointment = await self.store.get_appointment(session, org_id, appointment_id, for_update=True)

            replayed = await self.store.find_resolved_by(session, org_id, source_message_ref)
            already = next(
                (s for s in appointment.slots if s.decided_by_message_ref == source_message_ref),
                None,
            )
            if replayed is not None or already is not None:
                slot = already or self._target_slot(appointment, slot_id)
                logger.info(f"Reply {source_message_ref} already applied; no-op")
                return ResolveResult(
                    decision=decision,
                    applied=False,
                    noop=True,
                    snapshot=self.store.snapshot(appointment, slot) if slot else None,
                    reply_ref=source_message_ref,
                )

            slot = self._target_slot(appointment, slot_id)
            if slot is None:
                raise NotFoundError("No pending slot to resolve", **ctx)
            if slot.status != SlotStatus.PENDING or slot.decided_by_message_ref is not None:
                raise InvalidTransitionError(
                    slot.status.value,
                    decision.value,
                    org_id=org_id,
                    appointment_id=str(appointment.id),
                    slot_id=str(slot.id),
                )

            step("slot_update")
            diagnostics: list[str] = []
            if decision == Decision.CONFIRMED:
                self.store.apply_confirmation(appointment, slot, source_message_ref, now)
            elif decision == Decision.DECLINED:
                diagnostics = self.store.apply_rejection(appointment, slot, source_message_ref, now)
            else:
                self.store.apply_reschedule_request(appointment, slot, source_message_ref, now)

            step("contact_update")
            contact = await self.store.get_contact(session, appointment, slot)
            if contact is not None:
                if decision != Decision.RESCHEDULE:
                    contact.status = slot.status
                contact.response_message_ref = source_message_ref
                contact.responded_at = now

            step("message_resolution")
            proposal_ref = proposal_message_ref or slot.proposal_message_ref
            conversation_ref = appointment.conversation_ref or ""
            if proposal_ref:
                proposal = await self.store.record_message(
                    session,
                    org_id,
                    conversation_ref,
                    proposal_ref,
                    OUTBOUND,
                    body=slot.proposal_body or "",
                    type=TYPE_CONFIRMATION,
                    author=settings.gateway_author,
                )
                proposal.resolved_by_ref = source_message_ref
            await self.store.record_message(
                session,
                org_id,
                conversation_ref,
                source_message_ref,
                INBOUND,
                created_at=now,
                responds_to_ref=proposal_ref,
            )

            await session.flush()
            return ResolveResult(
                decision=decision,
                applied=True,
                snapshot=self.store.snapshot(appointment, slot, diagnostics),
                reply_ref=source_message_ref,
                diagnostics=diagnostics,
            )

        result = await self._transaction(work, **ctx)

        if result.applied:
            logger.info(
                f"Applied {decision.value} to slot {result.snapshot.id} "
                f"from reply {source_message_ref}"
            )
            self._notify(
                org_id,
                DECISION_EVENTS[decision],
                {
                    "appointment_id": str(appointment_id),
                    "slot": result.snapshot.to_dict(),
                    "decision": decision.value,
                    "classification": (classification or decision).value,
                    "reply_ref": source_message_ref,
                    "diagnostics": result.diagnostics,
                },
            )
        return result

    def _target_slot(self, appointment: Appointment, slot_id) -> Optional[AppointmentSlot]:
        if slot_id is not None:
            return self.store.get_slot(appointment, slot_id)
        return pick_last_modified_pending_slot(appointment)

    async def handle_inbound_reply(
        self,
        org_id: str,
        conversation_ref: str,
        inbound_message_ref: Optional[str] = None,
    ) -> ResolveResult:
        """Correlate the latest reply on a conversation and apply it.

        Ambiguous or unclassifiable replies produce a needs-attention
        notification and a non-applied result.

        Raises:
            NotFoundError: No appointment owns the conversation
            GatewayReadError: Conversation history could not be read; retry later
        """
        now = self.clock()
        async with self.session_factory() as session:
            appointment = await self.store.find_by_conversation(session, org_id, conversation_ref)
            appointment_id = str(appointment.id)
            try:
                correlation = await self.correlator.correlate(
                    session, appointment, conversation_ref, inbound_message_ref, now
                )
            except GatewayReadError as e:
                logger.error(f"Could not read conversation {conversation_ref} for org {org_id}: {e.message}")
                raise GatewayReadError(
                    e.message, org_id=org_id, appointment_id=appointment_id
                ) from e
            except CorrelationAmbiguousError as e:
                logger.warning(f"Reply on {conversation_ref} needs attention: {e.reason}")
                self._notify(
                    org_id,
                    REPLY_NEEDS_ATTENTION,
                    {
                        "appointment_id": appointment_id,
                        "conversation_ref": conversation_ref,
                        "reply_ref": inbound_message_ref,
                        "reason": e.reason,
                    },
                )
                return ResolveResult(
                    decision=Decision.UNKNOWN,
                    applied=False,
                    reason=e.reason,
                    reply_ref=inbound_message_ref,
                )

            slot = self.store.get_slot(appointment, correlation.slot_id)
            snapshot = self.store.snapshot(appointment, slot)

            if correlation.already_resolved:
                logger.info(f"Reply {correlation.reply.message_ref} already applied; no-op")
                return ResolveResult(
                    decision=slot.decision or correlation.decision,
                    applied=False,
                    noop=True,
                    snapshot=snapshot,
                    reply_ref=correlation.reply.message_ref,
                )

            if correlation.decision == Decision.UNKNOWN:
                logger.warning(
                    f"Reply {correlation.reply.message_ref} could not be classified; needs attention"
                )
                self._notify(
                    org_id,
                    REPLY_NEEDS_ATTENTION,
                    {
                        "appointment_id": appointment_id,
                        "conversation_ref": conversation_ref,
                        "reply_ref": correlation.reply.message_ref,
                        "reply": correlation.reply.body,
                        "reason": UNKNOWN_REPLY,
                        "classification": Decision.UNKNOWN.value,
                        "slot": snapshot.to_dict(),
                    },
                )
                return ResolveResult(
                    decision=Decision.UNKNOWN,
                    applied=False,
                    snapshot=snapshot,
                    reason=UNKNOWN_REPLY,
                    reply_ref=correlation.reply.message_ref,
                )

        return await self.resolve(
            org_id,
            appointment_id,
            correlation.decision,
            correlation.reply.message_ref,
            slot_id=correlation.slot_id,
            proposal_message_ref=correlation.proposal.message_ref,
            classification=correlation.decision,
        )

    # === Automation ===

    async def advance(self, org_id: str, appointment_id: str) -> AdvanceResult:
        """Run one automation step on the appointment's active slot.

        NotStarted -> NoContacted; NoContacted, Confirmed, Rejected and
        Failed are (re)proposed at their current dates; Pending handles the
        latest reply; Contacted is left alone.
        """
        now = self.clock()
        async with self.session_factory() as session:
            appointment = await self.store.get_appointment(session, org_id, appointment_id)
            slot = pick_last_modified_pending_slot(appointment) or pick_active_slot(appointment, now)
            if slot is None:
                raise NotFoundError(
                    "Appointment has no slots",
                    org_id=org_id,
                    appointment_id=str(appointment_id),
                )
            status = slot.status
            slot_id = str(slot.id)
            conversation_ref = appointment.conversation_ref
            window = (
                Interval(slot.start_date, slot.end_date)
                if slot.start_date and slot.end_date
                else None
            )
            snapshot = self.store.snapshot(appointment, slot)

        if status == SlotStatus.NOT_STARTED:
            snapshot = await self._activate(org_id, appointment_id, slot_id)
            return AdvanceResult(action="activated", snapshot=snapshot)

        if status == SlotStatus.CONTACTED:
            logger.info(f"Slot {slot_id} already contacted; nothing to do")
            return AdvanceResult(action="observed", snapshot=snapshot)

        if status == SlotStatus.PENDING:
            if not conversation_ref:
                return AdvanceResult(action="waiting", snapshot=snapshot)
            resolution = await self.handle_inbound_reply(org_id, conversation_ref)
            return AdvanceResult(
                action="resolved" if resolution.applied else "waiting",
                snapshot=resolution.snapshot or snapshot,
                resolution=resolution,
            )

        if window is None:
            raise ValidationError(
                "Slot has no dates to propose",
                org_id=org_id,
                appointment_id=str(appointment_id),
                slot_id=slot_id,
            )
        proposal = await self.propose(
            org_id, appointment_id, slot_id, window, proposed_by=ProposedBy.SYSTEM
        )
        return AdvanceResult(action="proposed", snapshot=proposal.snapshot, proposal=proposal)

    async def _activate(self, org_id: str, appointment_id, slot_id: str) -> SlotSnapshot:
        now = self.clock()

        async def work(session: AsyncSession, step: StepTracker):
            step("load")
            appointment = await self.store.get_appointment(session, org_id, appointment_id, for_update=True)
            slot = self.store.get_slot(appointment, slot_id)
            step("slot_update")
            self.store.transition(appointment, slot, SlotStatus.NO_CONTACTED)
            self.store.touch(appointment, now)
            await session.flush()
            return self.store.snapshot(appointment, slot)

        return await self._transaction(
            work, org_id=org_id, appointment_id=str(appointment_id), slot_id=slot_id
        )

    async def expire_stale_proposals(self, org_id: str) -> list[SlotSnapshot]:
        """Move undecided proposals older than the maximum age to Contacted."""
        now = self.clock()
        cutoff = now - self.max_age

        async with self.session_factory() as session:
            stmt = (
                select(AppointmentSlot.appointment_id)
                .join(Appointment, Appointment.id == AppointmentSlot.appointment_id)
                .where(
                    Appointment.org_id == org_id,
                    AppointmentSlot.status == SlotStatus.PENDING,
                    AppointmentSlot.decided_at.is_(None),
                    AppointmentSlot.proposed_at < cutoff,
                )
                .distinct()
            )
            appointment_ids = list((await session.execute(stmt)).scalars().all())

        expired: list[SlotSnapshot] = []
        for appointment_id in appointment_ids:

            async def work(session: AsyncSession, step: StepTracker):
                step("load")
                appointment = await self.store.get_appointment(
                    session, org_id, appointment_id, for_update=True
                )
                snapshots = []
                for slot in appointment.slots:
                    if slot.status != SlotStatus.PENDING or slot.decided_at is not None:
                        continue
                    if not self.store.is_proposal_expired(slot, now, self.max_age):
                        continue
                    step("slot_update")
                    self.store.transition(appointment, slot, SlotStatus.CONTACTED)
                    step("contact_update")
                    contact = await self.store.get_contact(session, appointment, slot)
                    if contact is not None:
                        contact.status = SlotStatus.CONTACTED
                    snapshots.append(self.store.snapshot(appointment, slot))
                if snapshots:
                    self.store.touch(appointment, now)
                    await session.flush()
                return snapshots

            expired.extend(await self._transaction(work, org_id=org_id, appointment_id=str(appointment_id)))

        if expired:
            logger.info(f"Expired {len(expired)} stale proposal(s) for org {org_id}")
        return expired
