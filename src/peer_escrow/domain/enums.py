"""Domain enumerations for the escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow.

    Transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    ACTIVE = "active"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ESCROW_STATUSES


TERMINAL_ESCROW_STATUSES = frozenset(
    {EscrowStatus.COMPLETED, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED}
)


class DeliverableType(enum.StrEnum):
    """What a deliverable is. Drives oracle routing and confirmation domain."""

    CASH = "cash"
    ITEM = "item"
    SERVICE = "service"
    DIGITAL = "digital"
    DOCUMENT = "document"
    DIGITAL_TRANSFER = "digital_transfer"
    MIXED = "mixed"

    @property
    def is_payment(self) -> bool:
        return self in (DeliverableType.CASH, DeliverableType.DIGITAL_TRANSFER)

    @property
    def domain(self) -> "ConfirmationDomain":
        return ConfirmationDomain.PAYMENT if self.is_payment else ConfirmationDomain.ITEM


class DeliverableStatus(enum.StrEnum):
    """Per-deliverable progress. Forward-only, see DeliverableStateMachine."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    COMPLETED = "completed"
    FAILED = "failed"


# Legacy rows written before the deliverable model existed may carry
# "confirmed"; it counts as done for the confirmation aggregator.
DONE_DELIVERABLE_STATUSES = frozenset({"confirmed", "completed", "verified"})


class PartyRole(enum.StrEnum):
    INITIATOR = "initiator"
    PARTICIPANT = "participant"

    @property
    def counterparty(self) -> "PartyRole":
        if self is PartyRole.INITIATOR:
            return PartyRole.PARTICIPANT
        return PartyRole.INITIATOR


class ConfirmationStatus(enum.StrEnum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


class ConfirmationDomain(enum.StrEnum):
    """The two semantic domains that participant flags are recorded in."""

    ITEM = "item"
    PAYMENT = "payment"


class ProofType(enum.StrEnum):
    IMAGE = "image"
    DOCUMENT = "document"
    TEXT = "text"


class ProofVerificationStatus(enum.StrEnum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OracleType(enum.StrEnum):
    """Verification strategies available to the Oracle Router."""

    IPFS = "ipfs"
    AI = "ai"
    MANUAL = "manual"


class DisputeReason(enum.StrEnum):
    """Fixed set of reason codes accepted when a party requests an arbiter."""

    NON_DELIVERY = "non_delivery"
    INCORRECT_ITEM = "incorrect_item"
    QUALITY_ISSUES = "quality_issues"
    INCOMPLETE_SERVICE = "incomplete_service"
    TERMS_VIOLATION = "terms_violation"
    FRAUD_SUSPECTED = "fraud_suspected"
    OTHER = "other"


class ArbiterDecision(enum.StrEnum):
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


class SettlementFlag(enum.StrEnum):
    """Tri-state settlement flag. NULL in the database means unset."""

    PENDING = "pending"
    DONE = "done"


class SettlementOutcome(enum.StrEnum):
    """What a single settlement attempt did."""

    ANCHORED = "anchored"
    SKIPPED = "skipped"
    FAILED = "failed"


class TransactionStatus(enum.StrEnum):
    OPEN = "open"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every escrow-level state change produces exactly one event.
    """

    # Lifecycle events
    ESCROW_CREATED = "ESCROW_CREATED"
    PARTICIPANT_JOINED = "PARTICIPANT_JOINED"
    DELIVERABLES_COMPLETED = "DELIVERABLES_COMPLETED"
    PARTY_CONFIRMED = "PARTY_CONFIRMED"
    ESCROW_COMPLETED = "ESCROW_COMPLETED"
    ESCROW_CANCELLED = "ESCROW_CANCELLED"
    ESCROW_EXPIRED = "ESCROW_EXPIRED"

    # Evidence events
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    PROOF_REVIEWED = "PROOF_REVIEWED"
    DELIVERABLE_CONFIRMED = "DELIVERABLE_CONFIRMED"

    # Dispute events
    DISPUTE_RAISED = "DISPUTE_RAISED"
    ARBITER_PROPOSED = "ARBITER_PROPOSED"
    ARBITER_APPROVED = "ARBITER_APPROVED"
    ARBITER_REJECTED = "ARBITER_REJECTED"
    ARBITER_ACTIVATED = "ARBITER_ACTIVATED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Settlement events
    SETTLEMENT_ANCHORED = "SETTLEMENT_ANCHORED"
