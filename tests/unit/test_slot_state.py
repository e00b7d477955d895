"""Tests for the slot state machine table and time model."""

from datetime import datetime, timezone

import pytest

from app.core.errors import ValidationError
from app.core.slots import (
    DECIDED_STATES,
    PROPOSABLE_STATES,
    Interval,
    SlotStatus,
    TimeBlock,
    Weekday,
    can_transition,
    get_valid_transitions,
    is_decided,
    is_observation_state,
    parse_time_of_day,
)


class TestTransitions:

    def test_happy_path(self):
        assert can_transition(SlotStatus.NOT_STARTED, SlotStatus.NO_CONTACTED)
        assert can_transition(SlotStatus.NO_CONTACTED, SlotStatus.PENDING)
        assert can_transition(SlotStatus.PENDING, SlotStatus.CONFIRMED)
        assert can_transition(SlotStatus.PENDING, SlotStatus.REJECTED)

    def test_decisions_require_pending(self):
        for status in SlotStatus:
            if status == SlotStatus.PENDING:
                continue
            assert not can_transition(status, SlotStatus.CONFIRMED)
            assert not can_transition(status, SlotStatus.REJECTED)

    def test_failed_only_from_sending(self):
        sources = [s for s in SlotStatus if can_transition(s, SlotStatus.FAILED)]
        assert sources == [SlotStatus.PENDING]

    def test_reproposal_sources(self):
        assert PROPOSABLE_STATES == {
            SlotStatus.NO_CONTACTED,
            SlotStatus.PENDING,
            SlotStatus.CONFIRMED,
            SlotStatus.REJECTED,
            SlotStatus.FAILED,
            SlotStatus.CONTACTED,
        }

    def test_not_started_cannot_skip(self):
        assert get_valid_transitions(SlotStatus.NOT_STARTED) == {SlotStatus.NO_CONTACTED}

    def test_helpers(self):
        assert DECIDED_STATES == {SlotStatus.CONFIRMED, SlotStatus.REJECTED}
        assert is_decided(SlotStatus.REJECTED)
        assert not is_decided(SlotStatus.PENDING)
        assert is_observation_state(SlotStatus.CONTACTED)


class TestTimeModel:

    def test_interval_requires_start_before_end(self):
        start = datetime(2030, 1, 16, 10, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            Interval(start, start)

    def test_interval_intersection(self):
        a = Interval(datetime(2030, 1, 16, 9, tzinfo=timezone.utc), datetime(2030, 1, 16, 11, tzinfo=timezone.utc))
        b = Interval(datetime(2030, 1, 16, 10, tzinfo=timezone.utc), datetime(2030, 1, 16, 12, tzinfo=timezone.utc))

        common = a.intersect(b)

        assert common.duration_minutes == 60
        assert a.overlaps(b)

    def test_parse_time_of_day(self):
        assert parse_time_of_day("09:30") == 570
        with pytest.raises(ValidationError):
            parse_time_of_day("25:00")

    def test_time_block_bounds(self):
        with pytest.raises(ValidationError):
            TimeBlock(id="b", weekday=Weekday.MONDAY, start_of_day="11:00", end_of_day="09:00")

    def test_weekday_of(self):
        assert Weekday.of(datetime(2030, 1, 16)) == Weekday.WEDNESDAY
