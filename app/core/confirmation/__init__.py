"""
Confirmation Module

Reply classification, reply-to-proposal correlation and the transactional
orchestrator that applies patient decisions.

Usage:
    from app.core.confirmation import ConfirmationOrchestrator

    orchestrator = ConfirmationOrchestrator(gateway, channel)
    await orchestrator.propose(org_id, appointment_id, slot_id, window)

    # Inbound SMS webhook
    result = await orchestrator.handle_inbound_reply(org_id, conversation_ref)
    print(result.decision, result.applied)
"""

# Classifier
from app.core.confirmation.classifier import (
    ReplyClassifier,
    KeywordReplyClassifier,
    KeywordSet,
    DEFAULT_KEYWORDS,
    get_reply_classifier,
    normalize_text,
    normalize_body,
)

# Correlator
from app.core.confirmation.correlator import (
    ConfirmationCorrelator,
    Correlation,
    pick_active_slot,
    pick_last_modified_pending_slot,
)

# Orchestrator
from app.core.confirmation.orchestrator import (
    ConfirmationOrchestrator,
    ProposalResult,
    ResolveResult,
    AdvanceResult,
    default_proposal_body,
    format_date_range,
)

__all__ = [
    # Classifier
    "ReplyClassifier",
    "KeywordReplyClassifier",
    "KeywordSet",
    "DEFAULT_KEYWORDS",
    "get_reply_classifier",
    "normalize_text",
    "normalize_body",
    # Correlator
    "ConfirmationCorrelator",
    "Correlation",
    "pick_active_slot",
    "pick_last_modified_pending_slot",
    # Orchestrator
    "ConfirmationOrchestrator",
    "ProposalResult",
    "ResolveResult",
    "AdvanceResult",
    "default_proposal_body",
    "format_date_range",
]
