"""Shared fixtures: in-memory store, fake gateway and notification channel."""

from datetime import timedelta
from typing import Any, Optional

import pytest

from app.core.confirmation import ConfirmationOrchestrator
from app.core.slots.store import SlotStore
from app.core.slots.types import Interval
from app.infra.database import create_schema, make_engine, make_session_factory
from tests.factories import CONVERSATION, ORG, FakeChannel, FakeClock, FakeGateway, window


@pytest.fixture
async def engine():
    """In-memory SQLite engine shared across sessions."""
    engine = make_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store():
    return SlotStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def seed(session_factory, store):
    """Factory that books an appointment and returns its ids."""

    async def _seed(
        org_id: str = ORG,
        windows: Optional[list[Interval]] = None,
        conversation_ref: Optional[str] = CONVERSATION,
        with_priority: bool = True,
    ) -> dict[str, Any]:
        async with session_factory() as session:
            async with session.begin():
                priority_id = None
                if with_priority:
                    existing = await store.list_priorities(session, org_id)
                    if existing:
                        priority = existing[0]
                    else:
                        priority = await store.create_priority(session, org_id, rank=1, name="Urgent")
                    priority_id = priority.id
                appointment = await store.book_appointment(
                    session,
                    org_id,
                    windows or [window(20, 9, 10), window(21, 14, 15)],
                    priority_id=priority_id,
                    first_name="Ana",
                    last_name="Lopez",
                    conversation_ref=conversation_ref,
                    org_name=org_id,
                )
                return {
                    "appointment_id": str(appointment.id),
                    "slot_ids": [str(s.id) for s in appointment.slots],
                    "priority_id": str(priority_id) if priority_id else None,
                }

    return _seed


@pytest.fixture
def orchestrator(gateway, channel, session_factory, store, clock):
    return ConfirmationOrchestrator(
        gateway,
        channel,
        session_factory=session_factory,
        store=store,
        clock=clock,
        max_age=timedelta(hours=72),
    )
