"""Builds matcher input from persisted appointments."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.slots.store import SlotStore, get_slot_store, to_priority_tier, to_time_block
from app.core.slots.types import Interval, Weekday
from app.models.database import Appointment
from .types import MatchCandidate, OrgAvailability

logger = logging.getLogger(__name__)


class AvailabilityLoader:
    """Loads the priority catalog and candidate appointments of an org."""

    def __init__(self, store: Optional[SlotStore] = None):
        self.store = store or get_slot_store()

    async def load(self, session: AsyncSession, org_id: str, requested: Interval) -> OrgAvailability:
        """Candidates with weekly availability or a slot overlapping ``requested``."""
        priorities = [to_priority_tier(p) for p in await self.store.list_priorities(session, org_id)]

        stmt = select(Appointment).where(Appointment.org_id == org_id).order_by(Appointment.created_at)
        appointments = (await session.execute(stmt)).scalars().all()

        candidates = []
        for appointment in appointments:
            candidate = self.to_candidate(appointment)
            overlapping = any(slot.overlaps(requested) for slot in candidate.slots)
            if candidate.availability or overlapping:
                candidates.append(candidate)

        logger.debug(f"Loaded {len(candidates)} candidate(s) for org {org_id}")
        return OrgAvailability(org_id=org_id, priorities=priorities, candidates=candidates)

    def to_candidate(self, appointment: Appointment) -> MatchCandidate:
        availability: dict[Weekday, list] = {}
        for row in appointment.availability:
            availability.setdefault(Weekday(row.weekday), []).append(to_time_block(row.block))

        slots = []
        for slot in appointment.slots:
            if slot.start_date is not None and slot.end_date is not None and slot.start_date < slot.end_date:
                slots.append(Interval(slot.start_date, slot.end_date))

        priority_id = appointment.priority_id
        if priority_id is None:
            priority_id = next((s.priority_id for s in appointment.slots if s.priority_id), None)

        return MatchCandidate(
            appointment_id=str(appointment.id),
            priority_id=str(priority_id) if priority_id else None,
            availability=availability,
            slots=slots,
            display_name=appointment.full_name,
        )
