"""Application services: use case orchestration."""

from peer_escrow.services.arbiter_service import ArbiterService
from peer_escrow.services.confirmation_service import ConfirmationService, ConfirmationView
from peer_escrow.services.deliverable_mapping import DeliverableResolver, ResolvedDeliverable
from peer_escrow.services.escrow_service import (
    DeliverableView,
    EscrowService,
    EscrowStatusView,
    NewDeliverable,
)
from peer_escrow.services.proof_service import ProofService, UploadedFile
from peer_escrow.services.settlement_service import SettlementBridge

__all__ = [
    "ArbiterService",
    "ConfirmationService",
    "ConfirmationView",
    "DeliverableResolver",
    "DeliverableView",
    "EscrowService",
    "EscrowStatusView",
    "NewDeliverable",
    "ProofService",
    "ResolvedDeliverable",
    "SettlementBridge",
    "UploadedFile",
]
