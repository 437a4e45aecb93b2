"""Domain layer: pure business logic with zero framework dependencies."""

from peer_escrow.domain.confirmation import (
    DeliverableSnapshot,
    ParticipantFlags,
    UnifiedConfirmation,
    unify_confirmations,
)
from peer_escrow.domain.enums import (
    ArbiterDecision,
    DeliverableStatus,
    DeliverableType,
    DisputeReason,
    EscrowStatus,
    EventType,
    OracleType,
    PartyRole,
)
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    EscrowError,
    EscrowNotFoundError,
    ExternalDependencyError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from peer_escrow.domain.oracle_protocol import (
    OracleStrategy,
    ProofFile,
    VerificationRequest,
    VerificationResult,
)
from peer_escrow.domain.state_machine import (
    DeliverableStateMachine,
    EscrowStateMachine,
    validate_transition,
)

__all__ = [
    "ArbiterDecision",
    "DeliverableStatus",
    "DeliverableType",
    "DisputeReason",
    "EscrowStatus",
    "EventType",
    "OracleType",
    "PartyRole",
    "AuthorizationError",
    "ConflictError",
    "EscrowError",
    "EscrowNotFoundError",
    "ExternalDependencyError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "ValidationError",
    "DeliverableSnapshot",
    "ParticipantFlags",
    "UnifiedConfirmation",
    "unify_confirmations",
    "OracleStrategy",
    "ProofFile",
    "VerificationRequest",
    "VerificationResult",
    "DeliverableStateMachine",
    "EscrowStateMachine",
    "validate_transition",
]
