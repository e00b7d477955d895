"""
Database Models

SQLAlchemy ORM models for the multi-tenant slot matching and confirmation
engine. Every row carries the owning ``org_id``; all queries filter on it.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, Float, String, Text,
    Enum as SQLEnum, TypeDecorator, Uuid, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.core.slots.types import Decision, ProposedBy, SlotStatus


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )


class Priority(Base, TimestampMixin):
    """
    Priority tier (catalog entry).

    Ordered by ``rank`` inside an organization. Slots and appointments
    reference tiers by id.
    """

    __tablename__ = "priorities"
    __table_args__ = (
        UniqueConstraint("org_id", "rank", name="uq_priority_org_rank"),
        UniqueConstraint("org_id", "name", name="uq_priority_org_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    org_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    duration_hours: Mapped[float] = mapped_column(Float, default=0)
    color: Mapped[str] = mapped_column(String(20), default="")

    def __repr__(self) -> str:
        return f"<Priority(id={self.id}, rank={self.rank}, name='{self.name}')>"


class AvailabilityBlock(Base, TimestampMixin):
    """
    Clinic-defined daily time block.

    Never edited in place once referenced: superseding stamps
    ``superseded_at`` and points to the replacement row.
    """

    __tablename__ = "time_blocks"
    __table_args__ = (
        Index("idx_time_block_org_weekday", "org_id", "weekday"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    weekday: Mapped[str] = mapped_column(String(10), nullable=False)
    start_of_day: Mapped[str] = mapped_column(String(5), nullable=False)
    end_of_day: Mapped[str] = mapped_column(String(5), nullable=False)
    label: Mapped[str] = mapped_column(String(50), default="")
    superseded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    superseded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("time_blocks.id", ondelete="SET NULL"),
        nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<AvailabilityBlock(id={self.id}, weekday={self.weekday}, "
            f"{self.start_of_day}-{self.end_of_day})>"
        )


class Appointment(Base, TimestampMixin):
    """
    Appointment aggregate.

    Owns its slots; every slot mutation touches the appointment row so the
    version counter serialises concurrent writers.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_org", "org_id"),
        Index("idx_appointment_conversation", "org_id", "conversation_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    org_name: Mapped[str] = mapped_column(String(255), default="")
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    conversation_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    participant_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    treatment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Legacy root-level ordering, superseded by per-slot priority/position
    priority_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("priorities.id", ondelete="SET NULL"),
        nullable=True
    )
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reschedule: Mapped[bool] = mapped_column(Boolean, default=False)
    last_message_interaction: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    slots: Mapped[List["AppointmentSlot"]] = relationship(
        "AppointmentSlot",
        back_populates="appointment",
        order_by="AppointmentSlot.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    availability: Mapped[List["AppointmentAvailability"]] = relationship(
        "AppointmentAvailability",
        back_populates="appointment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def full_name(self) -> str:
        """Return full name."""
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, org_id='{self.org_id}', slots={len(self.slots)})>"


class AppointmentAvailability(Base):
    """Weekly availability of an appointment: one row per (weekday, block)."""

    __tablename__ = "appointment_availability"
    __table_args__ = (
        Index("idx_availability_appointment", "appointment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    weekday: Mapped[str] = mapped_column(String(10), nullable=False)
    block_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("time_blocks.id", ondelete="CASCADE"),
        nullable=False
    )

    # Relationships
    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="availability"
    )
    block: Mapped["AvailabilityBlock"] = relationship("AvailabilityBlock", lazy="selectin")


class AppointmentSlot(Base, TimestampMixin):
    """
    One concrete date/time candidate of an appointment.

    ``status`` only changes through ``SlotStore.transition``.
    """

    __tablename__ = "appointment_slots"
    __table_args__ = (
        Index("idx_slot_appointment", "appointment_id"),
        Index("idx_slot_priority_position", "priority_id", "position"),
        Index("idx_slot_proposal_ref", "proposal_message_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[SlotStatus] = mapped_column(
        SQLEnum(SlotStatus),
        default=SlotStatus.NO_CONTACTED,
        nullable=False
    )
    priority_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("priorities.id", ondelete="SET NULL"),
        nullable=True
    )
    treatment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reschedule_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    # Proposal
    proposed_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    proposed_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    proposed_by: Mapped[Optional[ProposedBy]] = mapped_column(SQLEnum(ProposedBy), nullable=True)
    proposed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proposed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    proposal_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proposal_message_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Confirmation
    decision: Mapped[Optional[Decision]] = mapped_column(SQLEnum(Decision), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    decided_by_message_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    late_response: Mapped[bool] = mapped_column(Boolean, default=False)

    # First-ever dates, captured once
    origin_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    origin_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    origin_captured_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Active contact attempt (no FK: contacts also point back at the slot)
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Relationships
    appointment: Mapped["Appointment"] = relationship("Appointment", back_populates="slots")

    @property
    def has_origin(self) -> bool:
        return self.origin_start is not None and self.origin_end is not None

    def __repr__(self) -> str:
        return (
            f"<AppointmentSlot(id={self.id}, status={self.status.value}, "
            f"start={self.start_date}, position={self.position})>"
        )


class ContactAppointment(Base, TimestampMixin):
    """
    One contact attempt, tied to the proposal that triggered it.

    Only written inside a transaction that also updates the parent slot.
    """

    __tablename__ = "contact_appointments"
    __table_args__ = (
        Index("idx_contact_appointment_slot", "appointment_id", "slot_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("appointment_slots.id", ondelete="SET NULL"),
        nullable=True
    )
    status: Mapped[SlotStatus] = mapped_column(
        SQLEnum(SlotStatus),
        default=SlotStatus.NOT_STARTED,
        nullable=False
    )
    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    context: Mapped[str] = mapped_column(Text, default="")
    conversation_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    participant_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ask_message_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    response_message_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ContactAppointment(id={self.id}, slot_id={self.slot_id}, "
            f"status={self.status.value})>"
        )


class MessageLog(Base):
    """
    Local record of gateway messages the engine has sent or linked.

    Holds ``resolved_by_ref`` so proposal resolution is persisted in the
    same transaction as the slot decision.
    """

    __tablename__ = "message_log"
    __table_args__ = (
        Index("idx_message_conversation", "org_id", "conversation_ref"),
        Index("idx_message_resolved_by", "org_id", "resolved_by_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    org_id: Mapped[str] = mapped_column(String(100), nullable=False)
    conversation_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    message_ref: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="Message")
    index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    author: Mapped[str] = mapped_column(String(100), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    resolved_by_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    responds_to_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<MessageLog(ref={self.message_ref}, direction={self.direction}, "
            f"type={self.type}, resolved_by={self.resolved_by_ref})>"
        )
