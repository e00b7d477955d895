"""Tests for loading matcher candidates from the store."""

from datetime import timezone

import pytest

from app.core.matching import AvailabilityLoader, IntervalMatcher, MatchLevel
from app.core.slots.types import Weekday
from tests.factories import ORG, OTHER_ORG, window

REQUESTED = window(16, 9, 10, 30, 30)


@pytest.fixture
async def clinic(session_factory, store):
    """Three appointments: weekly availability, an overlapping slot, and neither."""
    async with session_factory() as session:
        async with session.begin():
            urgent = await store.create_priority(session, ORG, rank=1, name="Urgent")
            block = await store.create_time_block(session, ORG, Weekday.WEDNESDAY, "09:00", "11:00", "AM")
            weekly = await store.book_appointment(
                session,
                ORG,
                [window(22, 9, 10)],
                priority_id=urgent.id,
                first_name="Ana",
                availability={Weekday.WEDNESDAY: [block.id]},
            )
            overlapping = await store.book_appointment(
                session, ORG, [window(16, 10, 11)], priority_id=urgent.id, first_name="Ben"
            )
            await store.book_appointment(session, ORG, [window(20, 9, 10)], priority_id=urgent.id)
            await store.book_appointment(session, OTHER_ORG, [window(16, 9, 10)])
            return {"weekly": str(weekly.id), "overlapping": str(overlapping.id)}


class TestAvailabilityLoader:

    @pytest.mark.asyncio
    async def test_loads_candidates(self, clinic, session_factory, store):
        async with session_factory() as session:
            availability = await AvailabilityLoader(store).load(session, ORG, REQUESTED)

        assert [p.name for p in availability.priorities] == ["Urgent"]
        assert sorted(c.appointment_id for c in availability.candidates) == sorted(clinic.values())

        weekly = next(c for c in availability.candidates if c.appointment_id == clinic["weekly"])
        assert weekly.availability[Weekday.WEDNESDAY][0].start_of_day == "09:00"
        assert weekly.display_name == "Ana"

    @pytest.mark.asyncio
    async def test_loaded_candidates_match(self, clinic, session_factory, store):
        async with session_factory() as session:
            availability = await AvailabilityLoader(store).load(session, ORG, REQUESTED)

        report = IntervalMatcher(timezone=timezone.utc).match(REQUESTED, availability)

        matches = {m.candidate.appointment_id: m for m in report.tiers[0].matches}
        assert matches[clinic["weekly"]].match_level == MatchLevel.PERFECT
        # 10:00-11:00 slot covers half of 09:30-10:30
        assert matches[clinic["overlapping"]].total_overlap_minutes == 30
        assert matches[clinic["overlapping"]].matched_blocks[0].label == "Slot"

    @pytest.mark.asyncio
    async def test_priority_from_slots(self, session_factory, store):
        async with session_factory() as session:
            async with session.begin():
                urgent = await store.create_priority(session, ORG, rank=1, name="Urgent")
                appointment = await store.book_appointment(session, ORG, [window(16, 9, 10)])
                appointment.slots[0].priority_id = urgent.id

            candidate = AvailabilityLoader(store).to_candidate(appointment)

        assert candidate.priority_id == str(urgent.id)
