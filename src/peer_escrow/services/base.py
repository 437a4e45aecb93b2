"""Shared plumbing for the escrow application services.

Every service works against one AsyncSession, an injectable clock, and the
same lookup / authorization / transition helpers, so the guard order is the
same everywhere: escrow lookup, membership check, then sub-resources.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from peer_escrow.domain.enums import EscrowStatus, PartyRole, TransactionStatus
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    EscrowNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
)
from peer_escrow.domain.state_machine import EscrowStateMachine
from peer_escrow.infrastructure.database.repositories import (
    DeliverableRepository,
    EscrowRepository,
    EventRepository,
    ParticipantRepository,
    ProofRepository,
    TransactionRepository,
    VerificationRepository,
)
from peer_escrow.logging_config import bind_escrow_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from peer_escrow.domain.enums import EventType
    from peer_escrow.infrastructure.database.orm_models import Escrow

logger = get_logger(__name__)

_TERMINAL_TRANSACTION_STATUS = {
    EscrowStatus.COMPLETED: TransactionStatus.COMPLETED,
    EscrowStatus.CANCELLED: TransactionStatus.CANCELLED,
    EscrowStatus.EXPIRED: TransactionStatus.EXPIRED,
}


def utc_clock() -> datetime:
    return datetime.now(UTC)


def coerce_uuid(value: uuid.UUID | str, field: str = "id") -> uuid.UUID:
    """Accept a UUID or its string form; anything else is a validation error."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as err:
        raise ValidationError(f"Malformed {field}: {value!r}", field=field) from err


def escrow_snapshot(escrow: Escrow) -> dict:
    """The authoritative state attached to conflict errors."""
    return {
        "escrow_id": str(escrow.id),
        "status": escrow.status,
        "initiator_confirmation": escrow.initiator_confirmation,
        "participant_confirmation": escrow.participant_confirmation,
        "proposed_arbiter_id": escrow.proposed_arbiter_id,
        "active_arbiter_id": escrow.active_arbiter_id,
    }


class EscrowServiceBase:
    """Repositories, clock, and guard helpers shared by all services."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or utc_clock
        self._transaction_repo = TransactionRepository(session)
        self._participant_repo = ParticipantRepository(session)
        self._escrow_repo = EscrowRepository(session)
        self._deliverable_repo = DeliverableRepository(session)
        self._proof_repo = ProofRepository(session)
        self._verification_repo = VerificationRepository(session)
        self._event_repo = EventRepository(session)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lookup & authorization
    # ------------------------------------------------------------------

    async def _get_escrow_or_raise(self, escrow_id: uuid.UUID | str) -> Escrow:
        escrow = await self._escrow_repo.get_by_id(coerce_uuid(escrow_id, "escrow_id"))
        if escrow is None:
            raise EscrowNotFoundError(str(escrow_id))
        bind_escrow_context(escrow.id, escrow.transaction_id)
        return escrow

    async def _get_escrow_by_any_id(self, ref: uuid.UUID | str) -> Escrow:
        """Resolve an escrow id or the id of the transaction it protects."""
        key = coerce_uuid(ref, "escrow_id")
        escrow = await self._escrow_repo.get_by_id(key)
        if escrow is None:
            escrow = await self._escrow_repo.get_by_transaction_id(key)
        if escrow is None:
            raise EscrowNotFoundError(str(ref))
        bind_escrow_context(escrow.id, escrow.transaction_id)
        return escrow

    def _require_party(self, escrow: Escrow, caller: str | None) -> PartyRole:
        role = escrow.role_of(caller)
        if role is None:
            logger.info("escrow.access_denied", caller=caller)
            raise AuthorizationError()
        return PartyRole(role)

    def _require_reader(self, escrow: Escrow, caller: str | None) -> str:
        """Parties and the active arbiter may read an escrow."""
        role = escrow.role_of(caller)
        if role is not None:
            return role
        if caller is not None and caller == escrow.active_arbiter_id:
            return "arbiter"
        logger.info("escrow.access_denied", caller=caller)
        raise AuthorizationError()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _fire_transition(self, escrow: Escrow, event_name: str) -> EscrowStatus:
        """Validate a state machine transition and return the target status.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        sm = EscrowStateMachine(current_status=escrow.status)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(
                escrow.status, event_name, escrow_snapshot(escrow)
            )
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(
                escrow.status, event_name, escrow_snapshot(escrow)
            ) from err
        return EscrowStatus(sm.status)

    async def _transition(
        self,
        escrow: Escrow,
        event_name: str,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
        **values,
    ) -> Escrow:
        """Guard, compare-and-swap, and audit one escrow status change."""
        old_status = EscrowStatus(escrow.status)
        new_status = self._fire_transition(escrow, event_name)
        now = self._now()

        won = await self._escrow_repo.transition(
            escrow, old_status, new_status, at=now, **values
        )
        if not won:
            await self._escrow_repo.get_by_id(escrow.id)
            logger.info(
                "escrow.transition_lost",
                transition=event_name,
                expected=old_status.value,
                actual=escrow.status,
            )
            raise ConflictError(
                f"Escrow changed concurrently: expected {old_status.value}, "
                f"found {escrow.status}",
                current_state=escrow_snapshot(escrow),
            )

        if new_status in _TERMINAL_TRANSACTION_STATUS:
            await self._transaction_repo.set_status(
                escrow.transaction_id, _TERMINAL_TRANSACTION_STATUS[new_status].value, now
            )

        await self._event_repo.record(
            escrow_id=escrow.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
            created_at=now,
        )
        logger.info(
            "escrow.transitioned",
            transition=event_name,
            old_status=old_status.value,
            new_status=new_status.value,
            actor=actor,
        )
        return escrow

    async def _record_event(
        self,
        escrow: Escrow,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
    ) -> None:
        """Audit a change that leaves the escrow status where it is."""
        status = EscrowStatus(escrow.status)
        await self._event_repo.record(
            escrow_id=escrow.id,
            event_type=event_type,
            old_status=status,
            new_status=status,
            actor=actor,
            metadata=metadata,
            created_at=self._now(),
        )
