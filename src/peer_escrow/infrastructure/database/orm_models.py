"""SQLAlchemy 2.0 ORM models for the escrow engine.

Seven tables:
    1. transactions              - The underlying deal; carries the settlement flag.
    2. transaction_participants  - Per-party confirmation flags (item / payment).
    3. escrows                   - One escrow per transaction, with arbiter sub-state.
    4. deliverables              - What each party owes (1..N per escrow).
    5. escrow_proofs             - Append-only evidence submitted against a deliverable.
    6. oracle_verifications      - Append-only oracle results against a proof.
    7. escrow_events             - Append-only audit log of every state change.

Design decisions:
    - UUIDs as primary keys (no sequential leakage).
    - Generic Uuid / JSON types (JSONB on PostgreSQL) so the same models run
      on asyncpg in production and aiosqlite locally.
    - Timestamps are always handed back timezone-aware (UTC), also on SQLite.
    - CHECK constraints on enumerated columns and the arbiter invariant.
    - Status columns are only written through conditional UPDATEs in the
      repositories; proofs, verifications and events are never updated
      beyond proof.verification_status.
    - No ORM relationships: repositories query children explicitly, which
      keeps every load visible under asyncio.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that never returns a naive value."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


_ESCROW_STATUSES = (
    "pending",
    "active",
    "awaiting_confirmation",
    "completed",
    "disputed",
    "cancelled",
    "expired",
)
_DELIVERABLE_TYPES = (
    "cash",
    "item",
    "service",
    "digital",
    "document",
    "digital_transfer",
    "mixed",
)
_DELIVERABLE_STATUSES = (
    "pending",
    "in_progress",
    "submitted",
    "verified",
    "completed",
    "failed",
    "confirmed",
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """The deal an escrow protects. Owns the settlement flag."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    details: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Agreement details blob; included in the settlement hash",
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    # --- Settlement (NULL = unset, "pending" = in flight, "done") ---
    settlement_flag: Mapped[str | None] = mapped_column(
        String(10), nullable=True, default=None
    )
    settlement_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settlement_receipt: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        comment="Receipt returned by the ledger when the hash was anchored",
    )
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "settlement_flag IS NULL OR settlement_flag IN ('pending', 'done')",
            name="ck_transaction_settlement_flag",
        ),
        CheckConstraint(
            _in("status", ("open", "completed", "cancelled", "expired")),
            name="ck_transaction_status",
        ),
        Index("idx_transaction_settlement_flag", "settlement_flag"),
    )

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} flag={self.settlement_flag}>"


# ---------------------------------------------------------------------------
# 2. transaction_participants
# ---------------------------------------------------------------------------
class TransactionParticipant(Base):
    """One party of a transaction and its participant-level confirmation flags."""

    __tablename__ = "transaction_participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)

    item_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    item_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", "user_id", name="uq_participant_user"),
        UniqueConstraint("transaction_id", "role", name="uq_participant_role"),
        CheckConstraint(
            _in("role", ("initiator", "participant")), name="ck_participant_role"
        ),
        Index("idx_participant_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionParticipant {self.role}={self.user_id} "
            f"item={self.item_confirmed} payment={self.payment_confirmed}>"
        )


# ---------------------------------------------------------------------------
# 3. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Secure holding around a transaction's deliverables."""

    __tablename__ = "escrows"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # --- Parties ---
    initiator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Set when the counterparty joins",
    )
    active_arbiter_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Capability token: the only identity allowed to resolve",
    )

    # --- Terms ---
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    verification_required: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    # --- Status (guarded by EscrowStateMachine) ---
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    # --- Party confirmations ---
    initiator_confirmation: Mapped[str] = mapped_column(
        String(20), nullable=False, default="unconfirmed"
    )
    initiator_confirmed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    initiator_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    participant_confirmation: Mapped[str] = mapped_column(
        String(20), nullable=False, default="unconfirmed"
    )
    participant_confirmed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    participant_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Arbiter negotiation ---
    proposed_arbiter_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    arbiter_proposed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    initiator_approved_arbiter: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    participant_approved_arbiter: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    arbiter_activated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    # --- Dispute ---
    dispute_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    dispute_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Resolution ---
    arbiter_decision: Mapped[str | None] = mapped_column(String(10), nullable=True)
    arbiter_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    split_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Timestamps ---
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(_in("status", _ESCROW_STATUSES), name="ck_escrow_valid_status"),
        CheckConstraint(_in("type", _DELIVERABLE_TYPES), name="ck_escrow_valid_type"),
        CheckConstraint(
            "active_arbiter_id IS NULL OR "
            "(initiator_approved_arbiter AND participant_approved_arbiter)",
            name="ck_escrow_arbiter_approved",
        ),
        CheckConstraint(
            "status <> 'disputed' OR dispute_reason IS NOT NULL",
            name="ck_escrow_dispute_reason",
        ),
        CheckConstraint(
            "split_percentage IS NULL OR "
            "(split_percentage > 0 AND split_percentage < 100)",
            name="ck_escrow_split_bounds",
        ),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_initiator", "initiator_id"),
        Index("idx_escrow_participant", "participant_id"),
        Index("idx_escrow_expires_at", "expires_at"),
    )

    def role_of(self, user_id: str | None) -> str | None:
        """Return "initiator" / "participant" for a party, None otherwise."""
        if user_id is None:
            return None
        if user_id == self.initiator_id:
            return "initiator"
        if self.participant_id is not None and user_id == self.participant_id:
            return "participant"
        return None

    def __repr__(self) -> str:
        return f"<Escrow id={self.id} status={self.status} type={self.type}>"


# ---------------------------------------------------------------------------
# 4. deliverables
# ---------------------------------------------------------------------------
class Deliverable(Base):
    """One discrete obligation owed by one party."""

    __tablename__ = "deliverables"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    party_responsible: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Guarded by DeliverableStateMachine",
    )

    # --- Payment-shaped terms ---
    value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(_in("type", _DELIVERABLE_TYPES), name="ck_deliverable_type"),
        CheckConstraint(
            _in("status", _DELIVERABLE_STATUSES), name="ck_deliverable_status"
        ),
        CheckConstraint(
            _in("party_responsible", ("initiator", "participant")),
            name="ck_deliverable_party",
        ),
        CheckConstraint(
            "type NOT IN ('cash', 'digital_transfer') "
            "OR (value IS NOT NULL AND currency IS NOT NULL)",
            name="ck_deliverable_payment_terms",
        ),
        Index("idx_deliverable_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Deliverable id={self.id} type={self.type} "
            f"party={self.party_responsible} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# 5. escrow_proofs (Append-Only)
# ---------------------------------------------------------------------------
class EscrowProof(Base):
    """Evidence submitted against a deliverable.

    Payload and hash are never modified after insert; only
    verification_status advances as oracles and reviewers report.
    """

    __tablename__ = "escrow_proofs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    deliverable_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deliverables.id", ondelete="CASCADE"),
        nullable=False,
        comment="Concrete deliverable after virtual-id resolution",
    )
    requested_deliverable_id: Mapped[str] = mapped_column(
        String(80),
        nullable=False,
        comment="Id the caller used, possibly item-<tx> / payment-<tx>",
    )
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    proof_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        comment='{"description": ..., "files": [{name, path, url, size, content_type}]}',
    )
    proof_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    verification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )
    submitted_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            _in("proof_type", ("image", "document", "text")), name="ck_proof_type"
        ),
        CheckConstraint(
            _in(
                "verification_status",
                ("pending", "under_review", "accepted", "rejected"),
            ),
            name="ck_proof_verification_status",
        ),
        Index("idx_proof_deliverable_submitted", "deliverable_id", "submitted_at"),
        Index("idx_proof_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowProof id={self.id} deliverable={self.deliverable_id} "
            f"status={self.verification_status}>"
        )


# ---------------------------------------------------------------------------
# 6. oracle_verifications (Append-Only)
# ---------------------------------------------------------------------------
class OracleVerification(Base):
    """Result of running an oracle (or a human reviewer) against one proof."""

    __tablename__ = "oracle_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    deliverable_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deliverables.id", ondelete="CASCADE"),
        nullable=False,
    )
    proof_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_proofs.id", ondelete="CASCADE"),
        nullable=False,
    )
    proof_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    oracle_type: Mapped[str] = mapped_column(String(10), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pending: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Manual review still outstanding",
    )
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_stale: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Written against a proof that was no longer the latest",
    )
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            _in("oracle_type", ("ipfs", "ai", "manual")), name="ck_verification_oracle"
        ),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 100",
            name="ck_verification_confidence_bounds",
        ),
        Index("idx_verification_deliverable", "deliverable_id"),
        Index("idx_verification_proof", "proof_id"),
        Index("idx_verification_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<OracleVerification id={self.id} oracle={self.oracle_type} "
            f"verified={self.verified} stale={self.is_stale}>"
        )


# ---------------------------------------------------------------------------
# 7. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable audit record of every state change in an escrow's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level. Every row represents a single atomic event.
    """

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User id that triggered the event, or SYSTEM",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_event_escrow", "escrow_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
