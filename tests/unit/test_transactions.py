"""Tests for the transaction runner."""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import NotFoundError, TransactionAbortedError, TransactionFailedError
from app.core.transactions import run_in_transaction
from tests.factories import ORG


class TestRunInTransaction:

    @pytest.mark.asyncio
    async def test_commits_and_returns(self, session_factory, store):
        async def work(session, step):
            step("create")
            priority = await store.create_priority(session, ORG, rank=1, name="Urgent")
            return priority.name

        assert await run_in_transaction(session_factory, work) == "Urgent"

        async with session_factory() as session:
            assert [p.name for p in await store.list_priorities(session, ORG)] == ["Urgent"]

    @pytest.mark.asyncio
    async def test_retries_conflict_then_succeeds(self, session_factory, store):
        attempts = []

        async def work(session, step):
            attempts.append(1)
            await store.create_priority(session, ORG, rank=len(attempts), name=f"Tier {len(attempts)}")
            if len(attempts) == 1:
                raise StaleDataError("version mismatch")
            return "ok"

        result = await run_in_transaction(session_factory, work, retries=1, backoff=0)

        assert result == "ok"
        assert len(attempts) == 2
        async with session_factory() as session:
            # First attempt was rolled back
            assert [p.name for p in await store.list_priorities(session, ORG)] == ["Tier 2"]

    @pytest.mark.asyncio
    async def test_aborts_after_retries(self, session_factory):
        attempts = []

        async def work(session, step):
            attempts.append(1)
            step("slot_update")
            raise StaleDataError("version mismatch")

        with pytest.raises(TransactionAbortedError) as exc:
            await run_in_transaction(
                session_factory, work, retries=1, backoff=0, context={"org_id": ORG}
            )

        assert len(attempts) == 2
        assert exc.value.org_id == ORG

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self, session_factory):
        async def work(session, step):
            raise NotFoundError("Appointment x not found", org_id=ORG)

        with pytest.raises(NotFoundError):
            await run_in_transaction(session_factory, work)

    @pytest.mark.asyncio
    async def test_failure_names_step_and_rolls_back(self, session_factory, store):
        async def work(session, step):
            step("catalog")
            await store.create_priority(session, ORG, rank=1, name="Urgent")
            step("contact_update")
            raise RuntimeError("disk full")

        with pytest.raises(TransactionFailedError) as exc:
            await run_in_transaction(session_factory, work, context={"appointment_id": "a1"})

        assert exc.value.step == "contact_update"
        assert exc.value.appointment_id == "a1"
        assert exc.value.to_dict()["step"] == "contact_update"
        async with session_factory() as session:
            assert await store.list_priorities(session, ORG) == []
