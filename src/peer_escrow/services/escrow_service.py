"""Escrow Service: core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (conditional writes)
    - Confirmation aggregator (unified read model)
    - Event log (audit trail)

Both REST routes and MCP tools call into this service,
ensuring a single source of truth for all business rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from peer_escrow.config import get_settings
from peer_escrow.domain.enums import (
    ConfirmationStatus,
    DeliverableType,
    DisputeReason,
    EscrowStatus,
    EventType,
    PartyRole,
)
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    EscrowNotFoundError,
    ValidationError,
)
from peer_escrow.domain.state_machine import EscrowStateMachine
from peer_escrow.infrastructure.database.orm_models import (
    Deliverable,
    Escrow,
    Transaction,
    TransactionParticipant,
)
from peer_escrow.logging_config import get_logger
from peer_escrow.services.base import EscrowServiceBase, coerce_uuid, escrow_snapshot
from peer_escrow.services.confirmation_service import ConfirmationService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute

    from peer_escrow.infrastructure.database.orm_models import (
        EscrowEvent,
        OracleVerification,
    )
    from peer_escrow.infrastructure.identity import IdentityProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class NewDeliverable:
    """Terms of one deliverable at escrow creation."""

    type: str
    party_responsible: str
    title: str = ""
    description: str | None = None
    value: Decimal | None = None
    currency: str | None = None
    quantity: int | None = None


@dataclass
class DeliverableView:
    deliverable: Deliverable
    unified_status: str
    verification: OracleVerification | None = None


@dataclass
class EscrowStatusView:
    """Read model returned by get_status."""

    escrow: Escrow
    deliverables: list[DeliverableView]
    verifications: list[OracleVerification]
    confirmation: dict[str, bool]
    is_ready_for_next_step: bool
    allowed_events: list[str]
    current_user_role: str
    settlement_flag: str | None = None
    participants: list[TransactionParticipant] = field(default_factory=list)


class EscrowService(EscrowServiceBase):
    """Manages the escrow lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] | None = None,
        identity: IdentityProvider | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._identity = identity
        self._confirmations = ConfirmationService(session, self._clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        initiator_id: str,
        escrow_type: str,
        deliverables: list[NewDeliverable],
        title: str = "",
        description: str | None = None,
        amount: Decimal | None = None,
        currency: str | None = None,
        verification_required: bool = True,
        transaction_id: uuid.UUID | str | None = None,
        expires_in_days: int | None = None,
        details: dict | None = None,
    ) -> Escrow:
        """Create a pending escrow with its deliverables.

        A new Transaction is created unless `transaction_id` names an
        existing one without an escrow.
        """
        settings = get_settings()
        if not initiator_id:
            raise ValidationError("initiator_id is required", field="initiator_id")
        _require_type(escrow_type, "type")
        if not deliverables:
            raise ValidationError("At least one deliverable is required", field="deliverables")
        for index, terms in enumerate(deliverables):
            _validate_new_deliverable(terms, index)
        if amount is not None and not currency:
            raise ValidationError("currency is required with amount", field="currency")
        days = settings.escrow_default_expiry_days if expires_in_days is None else expires_in_days
        if days <= 0:
            raise ValidationError("expires_in_days must be positive", field="expires_in_days")

        now = self._now()
        if transaction_id is not None:
            tx_id = coerce_uuid(transaction_id, "transaction_id")
            transaction = await self._transaction_repo.get_by_id(tx_id)
            if transaction is None:
                raise EscrowNotFoundError(str(tx_id))
            existing = await self._escrow_repo.get_by_transaction_id(tx_id)
            if existing is not None:
                raise ConflictError(
                    "Transaction already has an escrow",
                    current_state=escrow_snapshot(existing),
                )
        else:
            transaction = await self._transaction_repo.create(
                Transaction(
                    title=title,
                    details=details,
                    created_at=now,
                    updated_at=now,
                )
            )

        await self._participant_repo.create(
            TransactionParticipant(
                transaction_id=transaction.id,
                user_id=initiator_id,
                role=PartyRole.INITIATOR.value,
                created_at=now,
            )
        )

        escrow = await self._escrow_repo.create(
            Escrow(
                transaction_id=transaction.id,
                initiator_id=initiator_id,
                type=escrow_type,
                title=title,
                description=description,
                amount=amount,
                currency=currency,
                verification_required=verification_required,
                status=EscrowStatus.PENDING.value,
                initiator_confirmation=ConfirmationStatus.UNCONFIRMED.value,
                participant_confirmation=ConfirmationStatus.UNCONFIRMED.value,
                initiator_approved_arbiter=False,
                participant_approved_arbiter=False,
                expires_at=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
        )

        # Distinct timestamps keep creation order stable on coarse clocks.
        rows = [
            Deliverable(
                escrow_id=escrow.id,
                title=terms.title,
                description=terms.description,
                type=terms.type,
                party_responsible=terms.party_responsible,
                status="pending",
                value=terms.value,
                currency=terms.currency,
                quantity=terms.quantity,
                created_at=now + timedelta(microseconds=index),
                updated_at=now,
            )
            for index, terms in enumerate(deliverables)
        ]
        await self._deliverable_repo.create_many(rows)

        await self._event_repo.record(
            escrow_id=escrow.id,
            event_type=EventType.ESCROW_CREATED,
            old_status=None,
            new_status=EscrowStatus.PENDING,
            actor=initiator_id,
            metadata={"type": escrow_type, "deliverables": len(rows)},
            created_at=now,
        )

        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            transaction_id=str(transaction.id),
            type=escrow_type,
            deliverables=len(rows),
        )
        return escrow

    # ------------------------------------------------------------------
    # Participant Join
    # ------------------------------------------------------------------

    async def join_escrow(self, escrow_id: uuid.UUID | str, user_id: str) -> Escrow:
        """Counterparty joins; pending -> active."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if user_id == escrow.initiator_id:
            raise ConflictError(
                "The initiator cannot join their own escrow",
                current_state=escrow_snapshot(escrow),
            )
        if escrow.participant_id == user_id:
            return escrow
        if escrow.participant_id is not None:
            raise ConflictError(
                "Escrow already has a participant",
                current_state=escrow_snapshot(escrow),
            )

        if self._identity is not None and get_settings().require_verified_parties:
            identity = await self._identity.get_identity(user_id)
            if not (identity.is_authenticated and identity.is_verified):
                logger.info("escrow.join_unverified", user_id=user_id)
                raise AuthorizationError("Only verified users can join an escrow")

        await self._transition(
            escrow,
            "participant_joins",
            EventType.PARTICIPANT_JOINED,
            actor=user_id,
            participant_id=user_id,
        )
        await self._participant_repo.create(
            TransactionParticipant(
                transaction_id=escrow.transaction_id,
                user_id=user_id,
                role=PartyRole.PARTICIPANT.value,
                created_at=self._now(),
            )
        )
        return escrow

    # ------------------------------------------------------------------
    # Party Confirmation
    # ------------------------------------------------------------------

    async def confirm_completion(
        self,
        escrow_id: uuid.UUID | str,
        caller: str,
        notes: str | None = None,
    ) -> Escrow:
        """A party confirms the exchange. Confirming twice is a no-op."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        role = self._require_party(escrow, caller)

        await self._confirmations.recompute(escrow)

        status = EscrowStatus(escrow.status)
        if status is EscrowStatus.DISPUTED or status.is_terminal:
            raise ConflictError(
                f"Confirmation not allowed while the escrow is {status.value}",
                current_state=escrow_snapshot(escrow),
            )
        if status is EscrowStatus.PENDING:
            raise ConflictError(
                "Escrow has no participant yet",
                current_state=escrow_snapshot(escrow),
            )

        confirmation_col, at_col, notes_col = _confirmation_columns(role)
        if getattr(escrow, confirmation_col.key) == ConfirmationStatus.CONFIRMED:
            return escrow

        now = self._now()
        won = await self._escrow_repo.update_if(
            escrow,
            Escrow.status.in_(
                [EscrowStatus.ACTIVE.value, EscrowStatus.AWAITING_CONFIRMATION.value]
            ),
            confirmation_col != ConfirmationStatus.CONFIRMED.value,
            at=now,
            **{
                confirmation_col.key: ConfirmationStatus.CONFIRMED.value,
                at_col.key: now,
                notes_col.key: notes,
            },
        )
        if not won:
            await self._escrow_repo.get_by_id(escrow.id)
            if getattr(escrow, confirmation_col.key) == ConfirmationStatus.CONFIRMED:
                return escrow
            raise ConflictError(
                f"Escrow changed concurrently to {escrow.status}",
                current_state=escrow_snapshot(escrow),
            )

        await self._record_event(
            escrow,
            EventType.PARTY_CONFIRMED,
            actor=caller,
            metadata={"role": role.value, "notes": notes},
        )
        logger.info("escrow.party_confirmed", role=role.value)

        if (
            escrow.status == EscrowStatus.AWAITING_CONFIRMATION
            and escrow.initiator_confirmation == ConfirmationStatus.CONFIRMED
            and escrow.participant_confirmation == ConfirmationStatus.CONFIRMED
        ):
            try:
                await self._transition(
                    escrow,
                    "both_confirmed",
                    EventType.ESCROW_COMPLETED,
                    actor=caller,
                    completed_at=now,
                )
            except ConflictError:
                if escrow.status != EscrowStatus.COMPLETED:
                    raise
        return escrow

    # ------------------------------------------------------------------
    # Dispute
    # ------------------------------------------------------------------

    async def request_arbiter(
        self,
        escrow_id: uuid.UUID | str,
        caller: str,
        reason_code: str,
        details: str,
    ) -> Escrow:
        """Raise a dispute. Input is validated before anything is looked up."""
        if reason_code not in {r.value for r in DisputeReason}:
            valid = ", ".join(r.value for r in DisputeReason)
            raise ValidationError(
                f"Unknown reason code '{reason_code}'. Valid: {valid}",
                field="reason_code",
            )
        min_length = get_settings().dispute_details_min_length
        cleaned = (details or "").strip()
        if len(cleaned) < min_length:
            raise ValidationError(
                f"Dispute details must be at least {min_length} characters",
                field="details",
            )

        escrow = await self._get_escrow_or_raise(escrow_id)
        self._require_party(escrow, caller)
        if escrow.status == EscrowStatus.DISPUTED:
            raise ConflictError(
                "Escrow is already disputed",
                current_state=escrow_snapshot(escrow),
            )

        now = self._now()
        await self._transition(
            escrow,
            "dispute_raised",
            EventType.DISPUTE_RAISED,
            actor=caller,
            metadata={"reason": reason_code},
            dispute_reason=reason_code,
            dispute_details=cleaned,
            disputed_by=caller,
            disputed_at=now,
        )
        return escrow

    # ------------------------------------------------------------------
    # Cancellation & Expiry
    # ------------------------------------------------------------------

    async def cancel_escrow(self, escrow_id: uuid.UUID | str, caller: str) -> Escrow:
        escrow = await self._get_escrow_or_raise(escrow_id)
        role = self._require_party(escrow, caller)
        if role is not PartyRole.INITIATOR:
            raise AuthorizationError("Only the initiator can cancel an escrow")
        await self._transition(
            escrow, "initiator_cancels", EventType.ESCROW_CANCELLED, actor=caller
        )
        return escrow

    async def expire_escrow(
        self, escrow_id: uuid.UUID | str, caller: str | None = None
    ) -> Escrow:
        """Expire an escrow whose deadline passed with no activity since."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        now = self._now()
        if now <= escrow.expires_at:
            raise ConflictError(
                "Escrow has not reached its expiry time",
                current_state=escrow_snapshot(escrow),
            )
        if await self._event_repo.has_event_after(escrow.id, escrow.expires_at):
            raise ConflictError(
                "Escrow saw activity after its expiry time",
                current_state=escrow_snapshot(escrow),
            )
        await self._transition(
            escrow,
            "expiry_reached",
            EventType.ESCROW_EXPIRED,
            actor=caller or "SYSTEM",
            metadata={"expires_at": escrow.expires_at.isoformat()},
        )
        return escrow

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, ref: uuid.UUID | str, caller: str) -> EscrowStatusView:
        """Unified read model. Runs the confirmation aggregator on every call.

        Only the parties and the active arbiter may read it; the check runs
        before the aggregator touches anything.
        """
        escrow = await self._get_escrow_by_any_id(ref)
        role = self._require_reader(escrow, caller)

        view = await self._confirmations.recompute(escrow)
        verifications = await self._verification_repo.get_for_escrow(escrow.id)

        deliverable_views = []
        for deliverable in view.deliverables:
            latest_proof = await self._proof_repo.get_latest_for_deliverable(deliverable.id)
            authoritative = None
            if latest_proof is not None:
                authoritative = await self._verification_repo.get_latest_for_proof(
                    latest_proof.id
                )
            deliverable_views.append(
                DeliverableView(
                    deliverable=deliverable,
                    unified_status=view.unified.deliverable_statuses.get(
                        str(deliverable.id), deliverable.status
                    ),
                    verification=authoritative,
                )
            )

        transaction = await self._transaction_repo.get_by_id(escrow.transaction_id)
        allowed = EscrowStateMachine(current_status=escrow.status).get_allowed_events()

        return EscrowStatusView(
            escrow=escrow,
            deliverables=deliverable_views,
            verifications=verifications,
            confirmation=view.unified.to_dict(),
            is_ready_for_next_step=view.is_ready_for_next_step,
            allowed_events=allowed,
            current_user_role=role,
            settlement_flag=transaction.settlement_flag if transaction else None,
            participants=view.participants,
        )

    async def get_events(self, escrow_id: uuid.UUID | str, caller: str) -> list[EscrowEvent]:
        """Audit trail for an escrow."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        self._require_reader(escrow, caller)
        return await self._event_repo.get_by_escrow(escrow.id)


# ----------------------------------------------------------------------
# Validation helpers
# ----------------------------------------------------------------------


def _require_type(value: str, field_name: str) -> DeliverableType:
    try:
        return DeliverableType(value)
    except ValueError as err:
        valid = ", ".join(t.value for t in DeliverableType)
        raise ValidationError(
            f"Unknown type '{value}'. Valid: {valid}", field=field_name
        ) from err


def _validate_new_deliverable(terms: NewDeliverable, index: int) -> None:
    prefix = f"deliverables[{index}]"
    deliverable_type = _require_type(terms.type, f"{prefix}.type")
    if terms.party_responsible not in {r.value for r in PartyRole}:
        raise ValidationError(
            f"party_responsible must be initiator or participant, got '{terms.party_responsible}'",
            field=f"{prefix}.party_responsible",
        )
    if deliverable_type.is_payment and (terms.value is None or not terms.currency):
        raise ValidationError(
            f"{deliverable_type.value} deliverables need a value and a currency",
            field=f"{prefix}.value",
        )
    if terms.value is not None and Decimal(terms.value) < 0:
        raise ValidationError("value cannot be negative", field=f"{prefix}.value")
    if terms.quantity is not None and terms.quantity <= 0:
        raise ValidationError("quantity must be positive", field=f"{prefix}.quantity")


def _confirmation_columns(role: PartyRole) -> tuple[InstrumentedAttribute, ...]:
    if role is PartyRole.INITIATOR:
        return (
            Escrow.initiator_confirmation,
            Escrow.initiator_confirmed_at,
            Escrow.initiator_notes,
        )
    return (
        Escrow.participant_confirmation,
        Escrow.participant_confirmed_at,
        Escrow.participant_notes,
    )
