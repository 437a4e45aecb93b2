"""Pydantic API schemas."""

from peer_escrow.schemas.escrow import (
    ConfirmCompletionRequest,
    CreateEscrowRequest,
    DeliverableResponse,
    DeliverableTermsRequest,
    DeliverableStatusResponse,
    EscrowEventResponse,
    EscrowResponse,
    EscrowStatusResponse,
    HealthResponse,
    ProofResponse,
    ProofSubmissionResponse,
    ProposeArbiterRequest,
    RequestArbiterRequest,
    ResolveDisputeRequest,
    ReviewProofRequest,
    SettlementResponse,
    VerificationResponse,
)

__all__ = [
    "ConfirmCompletionRequest",
    "CreateEscrowRequest",
    "DeliverableResponse",
    "DeliverableTermsRequest",
    "DeliverableStatusResponse",
    "EscrowEventResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "HealthResponse",
    "ProofResponse",
    "ProofSubmissionResponse",
    "ProposeArbiterRequest",
    "RequestArbiterRequest",
    "ResolveDisputeRequest",
    "ReviewProofRequest",
    "SettlementResponse",
    "VerificationResponse",
]
