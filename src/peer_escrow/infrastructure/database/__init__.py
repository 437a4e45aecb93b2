"""Database infrastructure: engine, ORM models, and repositories."""

from peer_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from peer_escrow.infrastructure.database.orm_models import (
    Base,
    Deliverable,
    Escrow,
    EscrowEvent,
    EscrowProof,
    OracleVerification,
    Transaction,
    TransactionParticipant,
)
from peer_escrow.infrastructure.database.repositories import (
    DeliverableRepository,
    EscrowRepository,
    EventRepository,
    ParticipantRepository,
    ProofRepository,
    TransactionRepository,
    VerificationRepository,
)

__all__ = [
    "Base",
    "Deliverable",
    "Escrow",
    "EscrowEvent",
    "EscrowProof",
    "OracleVerification",
    "Transaction",
    "TransactionParticipant",
    "DeliverableRepository",
    "EscrowRepository",
    "EventRepository",
    "ParticipantRepository",
    "ProofRepository",
    "TransactionRepository",
    "VerificationRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
