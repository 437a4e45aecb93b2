"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.

Business validation (dispute detail length, payment terms, split bounds)
lives in the services so that REST, MCP and direct callers get the same
ValidationError; the schemas only check shape.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from peer_escrow.services.escrow_service import EscrowStatusView

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class DeliverableTermsRequest(BaseModel):
    """One obligation in a create-escrow request."""

    type: str = Field(
        ...,
        description="cash, item, service, digital, document, digital_transfer or mixed",
        examples=["service"],
    )
    party_responsible: str = Field(
        ...,
        description="Which side owes it: initiator or participant",
        examples=["initiator"],
    )
    title: str = Field(default="", max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    value: Decimal | None = Field(
        default=None,
        description="Required for cash and digital_transfer",
    )
    currency: str | None = Field(default=None, max_length=10, examples=["USD"])
    quantity: int | None = None


class CreateEscrowRequest(BaseModel):
    """Request body for creating a new escrow."""

    type: str = Field(..., description="Overall escrow type", examples=["mixed"])
    title: str = Field(default="", max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    amount: Decimal | None = None
    currency: str | None = Field(default=None, max_length=10)
    verification_required: bool = Field(
        default=True,
        description="When false every deliverable goes to manual review",
    )
    transaction_id: uuid.UUID | None = Field(
        default=None,
        description="Existing transaction to attach to; a new one is created if omitted",
    )
    expires_in_days: int | None = Field(
        default=None,
        description="Defaults to the configured escrow expiry",
    )
    details: dict | None = Field(
        default=None,
        description="Agreement details blob, included in the settlement hash",
    )
    deliverables: list[DeliverableTermsRequest] = Field(default_factory=list)
    idempotency_key: str | None = Field(
        default=None,
        description="Optional idempotency key to prevent duplicate escrow creation",
    )


class ConfirmCompletionRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class RequestArbiterRequest(BaseModel):
    """Request body for raising a dispute."""

    reason_code: str = Field(
        ...,
        description=(
            "non_delivery, incorrect_item, quality_issues, incomplete_service, "
            "terms_violation, fraud_suspected or other"
        ),
        examples=["non_delivery"],
    )
    details: str = Field(default="", max_length=5000)


class ProposeArbiterRequest(BaseModel):
    arbiter_id: str = Field(..., max_length=64)


class ResolveDisputeRequest(BaseModel):
    """Request body for the arbiter's binding decision."""

    decision: str = Field(..., description="release, refund or split")
    notes: str | None = Field(default=None, max_length=5000)
    split_percentage: int | None = Field(
        default=None,
        description="Share released to the participant; split only",
    )


class ReviewProofRequest(BaseModel):
    approved: bool
    notes: str | None = Field(default=None, max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowResponse(BaseModel):
    """Response schema for an escrow."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    initiator_id: str
    participant_id: str | None
    type: str
    title: str
    description: str | None
    amount: Decimal | None
    currency: str | None
    verification_required: bool
    status: str
    initiator_confirmation: str
    participant_confirmation: str
    proposed_arbiter_id: str | None
    arbiter_proposed_by: str | None
    initiator_approved_arbiter: bool
    participant_approved_arbiter: bool
    active_arbiter_id: str | None
    dispute_reason: str | None
    dispute_details: str | None
    disputed_by: str | None
    arbiter_decision: str | None
    arbiter_notes: str | None
    split_percentage: int | None
    expires_at: datetime
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    title: str
    description: str | None
    type: str
    party_responsible: str
    status: str
    value: Decimal | None
    currency: str | None
    quantity: int | None
    completed_at: datetime | None


class ProofResponse(BaseModel):
    """Response schema for a submitted proof."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    deliverable_id: uuid.UUID
    requested_deliverable_id: str
    submitted_by: str
    proof_type: str
    payload: dict
    proof_hash: str
    verification_status: str
    submitted_at: datetime


class VerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deliverable_id: uuid.UUID
    proof_id: uuid.UUID
    proof_hash: str
    oracle_type: str
    verified: bool
    is_pending: bool
    confidence_score: int
    notes: str | None
    reviewer_id: str | None
    is_stale: bool
    created_at: datetime


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class DeliverableStatusResponse(DeliverableResponse):
    unified_status: str
    verification: VerificationResponse | None = None


class ConfirmationResponse(BaseModel):
    item: bool
    payment: bool


class EscrowStatusResponse(BaseModel):
    """Unified read model for an escrow."""

    escrow: EscrowResponse
    deliverables: list[DeliverableStatusResponse]
    verifications: list[VerificationResponse]
    confirmation: ConfirmationResponse
    is_ready_for_next_step: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
    current_user_role: str | None
    settlement_flag: str | None

    @classmethod
    def from_view(cls, view: EscrowStatusView) -> EscrowStatusResponse:
        deliverables = [
            DeliverableStatusResponse(
                **DeliverableResponse.model_validate(d.deliverable).model_dump(),
                unified_status=d.unified_status,
                verification=(
                    VerificationResponse.model_validate(d.verification)
                    if d.verification is not None
                    else None
                ),
            )
            for d in view.deliverables
        ]
        return cls(
            escrow=EscrowResponse.model_validate(view.escrow),
            deliverables=deliverables,
            verifications=[
                VerificationResponse.model_validate(v) for v in view.verifications
            ],
            confirmation=ConfirmationResponse(**view.confirmation),
            is_ready_for_next_step=view.is_ready_for_next_step,
            allowed_events=view.allowed_events,
            current_user_role=view.current_user_role,
            settlement_flag=view.settlement_flag,
        )


class ProofSubmissionResponse(BaseModel):
    """Outcome of submitting and verifying one proof."""

    proof_id: uuid.UUID
    deliverable_id: uuid.UUID
    proof_hash: str
    oracle_type: str
    verified: bool
    is_pending: bool
    is_stale: bool
    confidence_score: int
    notes: str
    deliverable_status: str
    escrow_status: str


class SettlementResponse(BaseModel):
    escrow_id: uuid.UUID
    outcome: str
    settlement_flag: str | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
