"""
Confirmation Correlator.

Finds which outstanding proposal an inbound patient reply resolves:

1. Read the most recent messages of the conversation from the gateway and
   overlay resolution links from the local message log.
2. Take the reply (given ref, or latest inbound) and the outbound message
   immediately preceding it.
3. That outbound must be an unresolved, unexpired ``Confirmation``.
4. Match it to exactly one ``Pending`` slot, by explicit reference or by
   normalised body equality.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import CorrelationAmbiguousError
from app.core.slots.state import ACTIVE_STATES
from app.core.slots.store import SlotStore, get_slot_store
from app.core.slots.types import Decision, SlotStatus
from app.infra.messaging import TYPE_CONFIRMATION, ConversationMessage, MessagingGateway
from app.models.database import Appointment, AppointmentSlot
from .classifier import ReplyClassifier, get_reply_classifier, normalize_body

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Failure reasons
NO_REPLY = "no_reply"
NO_PROPOSAL = "no_proposal"
NOT_A_PROPOSAL = "not_a_proposal"
EXPIRED = "expired"
ALREADY_RESOLVED_BY_OTHER = "already_resolved_by_other"
NO_MATCHING_SLOT = "no_matching_slot"
MULTIPLE_MATCHING_SLOTS = "multiple_matching_slots"


@dataclass
class Correlation:
    """A reply matched to the proposal and slot it answers."""

    reply: ConversationMessage
    proposal: ConversationMessage
    slot_id: str
    decision: Decision
    already_resolved: bool = False


def _order_key(message: ConversationMessage) -> tuple:
    return (message.index, message.created_at or _EPOCH)


def pick_active_slot(appointment: Appointment, now: datetime) -> Optional[AppointmentSlot]:
    """
    Slot that automation should work on.

    Nearest future slot in an active state, else the latest slot by start
    date, else the first slot.
    """
    slots = list(appointment.slots)
    if not slots:
        return None

    future_active = sorted(
        (s for s in slots if s.status in ACTIVE_STATES and s.start_date and s.start_date >= now),
        key=lambda s: s.start_date,
    )
    if future_active:
        return future_active[0]

    dated = sorted((s for s in slots if s.start_date), key=lambda s: s.start_date, reverse=True)
    if dated:
        return dated[0]
    return slots[0]


def pick_last_modified_pending_slot(appointment: Appointment) -> Optional[AppointmentSlot]:
    """Pending slot with the most recent proposal (or update, or start date)."""

    def recency(slot: AppointmentSlot) -> datetime:
        return slot.proposed_at or slot.updated_at or slot.start_date or _EPOCH

    pending = [s for s in appointment.slots if s.status == SlotStatus.PENDING]
    if not pending:
        return None
    return max(pending, key=recency)


class ConfirmationCorrelator:
    """Matches inbound replies to outstanding proposals."""

    def __init__(
        self,
        gateway: MessagingGateway,
        classifier: Optional[ReplyClassifier] = None,
        store: Optional[SlotStore] = None,
        lookback: Optional[int] = None,
        max_age: Optional[timedelta] = None,
    ):
        self.gateway = gateway
        self.classifier = classifier or get_reply_classifier()
        self.store = store or get_slot_store()
        self.lookback = lookback or settings.correlation_lookback_messages
        self.max_age = max_age or timedelta(hours=settings.proposal_max_age_hours)

    async def recent_messages(
        self,
        session: AsyncSession,
        org_id: str,
        conversation_ref: str,
    ) -> list[ConversationMessage]:
        """Recent conversation messages with local resolution state applied."""
        messages = await self.gateway.list_recent_messages(conversation_ref, self.lookback)
        logged = await self.store.get_logged_messages(session, org_id, [m.message_ref for m in messages])

        for message in messages:
            row = logged.get(message.message_ref)
            if row is None:
                continue
            message.resolved_by_ref = row.resolved_by_ref or message.resolved_by_ref
            message.responds_to_ref = message.responds_to_ref or row.responds_to_ref
            if row.type == TYPE_CONFIRMATION:
                message.type = TYPE_CONFIRMATION

        return sorted(messages, key=_order_key)

    async def correlate(
        self,
        session: AsyncSession,
        appointment: Appointment,
        conversation_ref: str,
        inbound_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Correlation:
        """Correlate a reply on ``conversation_ref`` with a slot of ``appointment``.

        Raises:
            CorrelationAmbiguousError: Reply cannot be matched confidently
        """
        now = now or datetime.now(timezone.utc)
        ctx = {"org_id": appointment.org_id, "appointment_id": str(appointment.id)}
        messages = await self.recent_messages(session, appointment.org_id, conversation_ref)

        # Reply
        reply_pos = None
        for pos in range(len(messages) - 1, -1, -1):
            message = messages[pos]
            if inbound_ref is None:
                if message.is_inbound:
                    reply_pos = pos
                    break
            elif message.message_ref == inbound_ref:
                if message.is_inbound:
                    reply_pos = pos
                break
        if reply_pos is None:
            raise CorrelationAmbiguousError(NO_REPLY, **ctx)
        reply = messages[reply_pos]

        # Immediately preceding outbound message
        proposal = next(
            (m for m in reversed(messages[:reply_pos]) if m.is_outbound),
            None,
        )
        if proposal is None:
            raise CorrelationAmbiguousError(NO_PROPOSAL, **ctx)
        if proposal.type != TYPE_CONFIRMATION:
            raise CorrelationAmbiguousError(NOT_A_PROPOSAL, **ctx)
        if proposal.created_at is not None and proposal.created_at < now - self.max_age:
            raise CorrelationAmbiguousError(EXPIRED, **ctx)

        already_resolved = False
        if proposal.resolved_by_ref:
            if proposal.resolved_by_ref != reply.message_ref:
                raise CorrelationAmbiguousError(ALREADY_RESOLVED_BY_OTHER, **ctx)
            already_resolved = True

        slot = self._match_slot(appointment, reply, proposal, already_resolved)
        decision = self.classifier.classify(reply.body)
        logger.info(
            f"Correlated reply {reply.message_ref} with proposal {proposal.message_ref} "
            f"(slot {slot.id}, decision {decision.value})"
        )
        return Correlation(
            reply=reply,
            proposal=proposal,
            slot_id=str(slot.id),
            decision=decision,
            already_resolved=already_resolved,
        )

    def _match_slot(
        self,
        appointment: Appointment,
        reply: ConversationMessage,
        proposal: ConversationMessage,
        already_resolved: bool,
    ) -> AppointmentSlot:
        ctx = {"org_id": appointment.org_id, "appointment_id": str(appointment.id)}

        if already_resolved:
            candidates = list(appointment.slots)
        else:
            candidates = [
                s for s in appointment.slots
                if s.status == SlotStatus.PENDING and s.decided_by_message_ref is None
            ]

        explicit_refs = {proposal.message_ref}
        if reply.responds_to_ref:
            explicit_refs.add(reply.responds_to_ref)
        matches = [s for s in candidates if s.proposal_message_ref in explicit_refs]

        if not matches:
            body = normalize_body(proposal.body)
            matches = [s for s in candidates if body and normalize_body(s.proposal_body) == body]

        if not matches:
            raise CorrelationAmbiguousError(NO_MATCHING_SLOT, **ctx)
        if len(matches) > 1:
            raise CorrelationAmbiguousError(MULTIPLE_MATCHING_SLOTS, **ctx)
        return matches[0]
