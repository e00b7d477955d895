"""Tests for batched priority reordering."""

import pytest

from app.core.errors import ValidationError
from app.core.reordering import (
    AggregateStatus,
    MoveResult,
    MoveStatus,
    ReorderingService,
    RootMove,
    SlotMove,
    dedupe_moves,
    parse_move,
    parse_moves,
)
from tests.factories import ORG, OTHER_ORG, load


@pytest.fixture
def service(session_factory, store):
    return ReorderingService(session_factory=session_factory, store=store)


async def create_priority(session_factory, store, org_id, rank, name):
    async with session_factory() as session:
        async with session.begin():
            priority = await store.create_priority(session, org_id, rank=rank, name=name)
            return str(priority.id)


class TestParseMoves:

    def test_slot_moves_with_aliases(self):
        moves = parse_moves(
            {"moves": [{"appointmentId": " a1 ", "slotId": "s1", "position": "3", "priority": "p1", "extra": 1}]}
        )

        assert moves == [SlotMove("a1", "s1", 3, "p1")]

    def test_missing_slot_is_root_move(self):
        with pytest.warns(DeprecationWarning):
            moves = parse_moves([{"id": "a1", "priority": "p2"}])

        assert isinstance(moves[0], RootMove)
        assert moves[0].new_priority_id == "p2"

    @pytest.mark.parametrize("body", ["not a list", {"moves": "nope"}, None])
    def test_invalid_bodies(self, body):
        with pytest.raises(ValidationError):
            parse_moves(body)

    @pytest.mark.parametrize(
        "entry",
        [
            {"slot_id": "s1"},
            {"appointment_id": "  ", "slot_id": "s1"},
            {"appointment_id": "a1", "slot_id": "s1", "new_position": -1},
            {"appointment_id": "a1", "slot_id": "s1", "new_position": "first"},
            "a1",
        ],
    )
    def test_invalid_entry_fails_alone(self, entry):
        moves = parse_moves([entry, {"appointment_id": "a2", "slot_id": "s2", "new_position": 1}])

        assert isinstance(moves[0], MoveResult)
        assert moves[0].status == MoveStatus.FAILED
        assert moves[0].reason.startswith("Invalid move at index 0")
        assert moves[0].error["error"] == "validation_error"
        assert moves[1] == SlotMove("a2", "s2", 1, None)

    def test_parse_move_raises(self):
        with pytest.raises(ValidationError):
            parse_move({"slot_id": "s1"})

    def test_dedupe_merges_fields(self):
        moves = dedupe_moves(
            [
                SlotMove("a1", "s1", new_position=3),
                SlotMove("a1", "s2", new_position=1),
                SlotMove("a1", "s1", new_priority_id="p1"),
                SlotMove("a1", "s1", new_position=5),
            ]
        )

        assert moves == [SlotMove("a1", "s1", 5, "p1"), SlotMove("a1", "s2", 1, None)]


class TestApplyMoves:

    @pytest.mark.asyncio
    async def test_mixed_batch(self, seed, session_factory, store, service):
        """One invalid move fails alone; the others are applied."""
        ids = await seed()
        routine = await create_priority(session_factory, store, ORG, 2, "Routine")
        foreign = await create_priority(session_factory, store, OTHER_ORG, 1, "Foreign")
        first, second = ids["slot_ids"]

        report = await service.apply_moves(
            ORG,
            [
                {"appointment_id": ids["appointment_id"], "slot_id": first, "new_priority_id": foreign},
                {"appointment_id": ids["appointment_id"], "slot_id": second, "new_position": 0, "new_priority_id": routine},
                SlotMove(ids["appointment_id"], first, new_position=4),
            ],
        )

        assert report.status == AggregateStatus.MIXED
        by_slot = {r.slot_id: r for r in report.results}
        # Same (appointment, slot) key: merged into one move that fails on the priority
        assert by_slot[first].status == MoveStatus.FAILED
        assert by_slot[first].error["error"] == "not_found"
        assert by_slot[second].status == MoveStatus.SUCCESS

        appointment = await load(session_factory, store, ORG, ids["appointment_id"])
        slots = {str(s.id): s for s in appointment.slots}
        assert slots[first].position == 0
        assert str(slots[first].priority_id) == ids["priority_id"]
        assert slots[second].position == 0
        assert str(slots[second].priority_id) == routine

    @pytest.mark.asyncio
    async def test_independent_successes(self, seed, session_factory, store, service):
        ids = await seed()
        first, second = ids["slot_ids"]

        report = await service.apply_moves(
            ORG,
            [
                SlotMove(ids["appointment_id"], "not-a-slot", new_position=2),
                SlotMove(ids["appointment_id"], first, new_position=1),
                SlotMove(ids["appointment_id"], second, new_position=0),
            ],
        )

        assert [r.status for r in report.results] == [MoveStatus.FAILED, MoveStatus.SUCCESS, MoveStatus.SUCCESS]
        assert report.status == AggregateStatus.MIXED
        assert report.to_dict()["results"][0]["reason"] == "Slot not-a-slot not found"

        appointment = await load(session_factory, store, ORG, ids["appointment_id"])
        assert [str(s.id) for s in appointment.slots] == [second, first]

    @pytest.mark.asyncio
    async def test_noop_moves(self, seed, service):
        ids = await seed()

        report = await service.apply_moves(
            ORG,
            [
                SlotMove(ids["appointment_id"], ids["slot_ids"][0], new_position=0),
                SlotMove(ids["appointment_id"], ids["slot_ids"][1]),
            ],
        )

        assert [r.status for r in report.results] == [MoveStatus.NOOP, MoveStatus.NOOP]
        assert report.status == AggregateStatus.NOOP

    @pytest.mark.asyncio
    async def test_other_org_fails(self, seed, service):
        ids = await seed()

        report = await service.apply_moves(
            OTHER_ORG, [SlotMove(ids["appointment_id"], ids["slot_ids"][0], new_position=3)]
        )

        assert report.status == AggregateStatus.FAILED

    @pytest.mark.asyncio
    async def test_root_move_updates_appointment(self, seed, session_factory, store, service):
        ids = await seed()
        routine = await create_priority(session_factory, store, ORG, 2, "Routine")

        with pytest.warns(DeprecationWarning):
            report = await service.apply_moves(
                ORG, [{"id": ids["appointment_id"], "position": 7, "priority": routine}]
            )

        assert report.status == AggregateStatus.SUCCESS
        appointment = await load(session_factory, store, ORG, ids["appointment_id"])
        assert appointment.position == 7
        assert str(appointment.priority_id) == routine
        # Slots keep their own tier
        assert all(str(s.priority_id) == ids["priority_id"] for s in appointment.slots)

    @pytest.mark.asyncio
    async def test_malformed_entry_does_not_block_batch(self, seed, session_factory, store, service):
        ids = await seed()
        first, second = ids["slot_ids"]

        report = await service.apply_moves(
            ORG,
            [
                {"slot_id": first, "new_position": 3},
                {"appointment_id": ids["appointment_id"], "slot_id": first, "new_position": 1},
                {"appointment_id": ids["appointment_id"], "slot_id": second, "new_position": 0},
            ],
        )

        assert [r.status for r in report.results] == [MoveStatus.FAILED, MoveStatus.SUCCESS, MoveStatus.SUCCESS]
        assert report.results[0].appointment_id is None
        assert report.results[0].slot_id == first
        assert report.status == AggregateStatus.MIXED

        appointment = await load(session_factory, store, ORG, ids["appointment_id"])
        positions = {str(s.id): s.position for s in appointment.slots}
        assert positions == {first: 1, second: 0}

    @pytest.mark.asyncio
    async def test_later_entry_wins_across_input_kinds(self, seed, session_factory, store, service):
        ids = await seed()
        first, second = ids["slot_ids"]

        report = await service.apply_moves(
            ORG,
            [
                SlotMove(ids["appointment_id"], second, new_position=4),
                {"appointment_id": ids["appointment_id"], "slot_id": first, "new_position": 1},
                SlotMove(ids["appointment_id"], first, new_position=5),
            ],
        )

        assert [r.slot_id for r in report.results] == [second, first]
        assert report.status == AggregateStatus.SUCCESS

        appointment = await load(session_factory, store, ORG, ids["appointment_id"])
        positions = {str(s.id): s.position for s in appointment.slots}
        assert positions == {first: 5, second: 4}
