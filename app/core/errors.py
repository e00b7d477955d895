"""
Error taxonomy for the slot engine.

Every error carries enough context (org, appointment, slot) for a caller
to act on it. ``NotFoundError`` is used both for missing documents and for
documents that belong to another organization so that existence is never
leaked across tenants.
"""

from typing import Any, Optional


class SlotEngineError(Exception):
    """Base class for all slot engine errors."""

    code = "slot_engine_error"

    def __init__(
        self,
        message: str,
        org_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        slot_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.org_id = org_id
        self.appointment_id = appointment_id
        self.slot_id = slot_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses and logs."""
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.org_id is not None:
            result["org_id"] = self.org_id
        if self.appointment_id is not None:
            result["appointment_id"] = self.appointment_id
        if self.slot_id is not None:
            result["slot_id"] = self.slot_id
        return result


class NotFoundError(SlotEngineError):
    """Appointment, slot or related document absent or outside the org."""

    code = "not_found"


class ValidationError(SlotEngineError):
    """Malformed input (bad interval, missing proposal fields, ...)."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """Requested status change is not allowed by the slot state machine."""

    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, **kwargs: Any):
        super().__init__(
            f"Cannot move slot from {from_status} to {to_status}",
            **kwargs,
        )
        self.from_status = from_status
        self.to_status = to_status


class GatewayError(SlotEngineError):
    """The messaging gateway failed or returned an unreadable response."""

    code = "gateway_error"


class GatewaySendError(GatewayError):
    """Outbound message could not be delivered to the messaging gateway."""

    code = "gateway_send_failed"


class GatewayReadError(GatewayError):
    """Conversation or message history could not be read from the gateway."""

    code = "gateway_read_failed"


class CorrelationAmbiguousError(SlotEngineError):
    """An inbound reply cannot be confidently matched to a proposal."""

    code = "correlation_ambiguous"

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs: Any):
        super().__init__(message or f"Reply could not be correlated: {reason}", **kwargs)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason
        return result


class TransactionAbortedError(SlotEngineError):
    """Store-level conflict. Safe to retry the whole operation."""

    code = "transaction_aborted"


class TransactionFailedError(SlotEngineError):
    """A step inside a transaction failed; everything was rolled back."""

    code = "transaction_failed"

    def __init__(self, step: str, message: str, **kwargs: Any):
        super().__init__(f"{step}: {message}", **kwargs)
        self.step = step

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["step"] = self.step
        return result
