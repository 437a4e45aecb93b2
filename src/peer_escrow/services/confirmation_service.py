"""Confirmation Aggregator: keeps both confirmation views in agreement.

Runs on every status read:
    1. Load participant flags and deliverable statuses.
    2. OR-merge them per domain (domain/confirmation.py).
    3. Write the merged booleans to BOTH participant rows, always.
    4. Advance the sole deliverable of a confirmed domain to `completed`.
    5. Fire `deliverables_completed` once every deliverable reads complete,
       and `both_confirmed` if both parties had already confirmed.

Re-running on an already unified escrow writes the same values again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from peer_escrow.domain.confirmation import (
    DeliverableSnapshot,
    ParticipantFlags,
    UnifiedConfirmation,
    unify_confirmations,
)
from peer_escrow.domain.enums import (
    ConfirmationStatus,
    DeliverableStatus,
    DeliverableType,
    EscrowStatus,
    EventType,
)
from peer_escrow.domain.exceptions import AuthorizationError, ConflictError
from peer_escrow.domain.state_machine import DeliverableStateMachine
from peer_escrow.logging_config import get_logger
from peer_escrow.services.base import EscrowServiceBase, escrow_snapshot
from peer_escrow.services.deliverable_mapping import DeliverableResolver

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from peer_escrow.infrastructure.database.orm_models import (
        Deliverable,
        Escrow,
        TransactionParticipant,
    )

logger = get_logger(__name__)

_LEGACY_CONFIRMED = "confirmed"


@dataclass
class ConfirmationView:
    unified: UnifiedConfirmation
    deliverables: list[Deliverable]
    participants: list[TransactionParticipant]
    is_ready_for_next_step: bool


class ConfirmationService(EscrowServiceBase):
    """Reconciles participant flags with deliverable statuses."""

    async def recompute(self, escrow: Escrow) -> ConfirmationView:
        deliverables = await self._deliverable_repo.get_for_escrow(escrow.id)
        participants = await self._participant_repo.get_for_transaction(escrow.transaction_id)

        unified = unify_confirmations(
            [ParticipantFlags(p.item_confirmed, p.payment_confirmed) for p in participants],
            [DeliverableSnapshot(str(d.id), d.type, d.status) for d in deliverables],
        )
        now = self._now()
        await self._participant_repo.write_unified(
            escrow.transaction_id, unified.item, unified.payment, now
        )

        if not EscrowStatus(escrow.status).is_terminal:
            for deliverable in deliverables:
                target = unified.deliverable_statuses[str(deliverable.id)]
                if target == DeliverableStatus.COMPLETED and deliverable.status != target:
                    await self._advance_to_completed(deliverable, now)

        if unified.all_deliverables_complete and escrow.status == EscrowStatus.ACTIVE:
            await self._try_transition(
                escrow,
                "deliverables_completed",
                EventType.DELIVERABLES_COMPLETED,
                metadata={"item": unified.item, "payment": unified.payment},
            )

        if escrow.status == EscrowStatus.AWAITING_CONFIRMATION and _both_confirmed(escrow):
            await self._try_transition(
                escrow,
                "both_confirmed",
                EventType.ESCROW_COMPLETED,
                completed_at=now,
            )

        participants = await self._participant_repo.get_for_transaction(escrow.transaction_id)
        ready = unified.all_deliverables_complete and escrow.status in (
            EscrowStatus.ACTIVE,
            EscrowStatus.AWAITING_CONFIRMATION,
        )
        logger.debug(
            "confirmation.unified",
            item=unified.item,
            payment=unified.payment,
            ready=ready,
        )
        return ConfirmationView(unified, deliverables, participants, ready)

    async def confirm_deliverable(self, ref: uuid.UUID | str, caller: str) -> Deliverable:
        """The responsible party marks its own deliverable as done."""
        resolved = await DeliverableResolver(self._session, self._clock).resolve(ref, caller)
        escrow, deliverable = resolved.escrow, resolved.deliverable

        status = EscrowStatus(escrow.status)
        if status is EscrowStatus.DISPUTED or status.is_terminal:
            raise ConflictError(
                f"Deliverables cannot be confirmed while the escrow is {status.value}",
                current_state=escrow_snapshot(escrow),
            )
        if deliverable.party_responsible != resolved.caller_role:
            raise AuthorizationError("Only the responsible party can confirm this deliverable")
        if deliverable.status == DeliverableStatus.FAILED:
            raise ConflictError(
                "Deliverable failed verification; submit a new proof first",
                current_state={"deliverable_id": str(deliverable.id), "status": deliverable.status},
            )

        now = self._now()
        newly_completed = deliverable.status != DeliverableStatus.COMPLETED
        if newly_completed:
            advanced = await self._advance_to_completed(deliverable, now)
            if not advanced:
                await self._deliverable_repo.get_by_id(deliverable.id)
                if deliverable.status != DeliverableStatus.COMPLETED:
                    raise ConflictError(
                        f"Deliverable changed concurrently to {deliverable.status}",
                        current_state={
                            "deliverable_id": str(deliverable.id),
                            "status": deliverable.status,
                        },
                    )

        domain = DeliverableType(deliverable.type).domain
        await self._participant_repo.set_flag(escrow.transaction_id, caller, domain, now)

        if newly_completed:
            await self._record_event(
                escrow,
                EventType.DELIVERABLE_CONFIRMED,
                actor=caller,
                metadata={
                    "deliverable_id": str(deliverable.id),
                    "requested_id": resolved.requested_id,
                    "domain": domain.value,
                },
            )
            logger.info(
                "deliverable.confirmed",
                deliverable_id=str(deliverable.id),
                domain=domain.value,
                by=caller,
            )

        await self.recompute(escrow)
        return deliverable

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _advance_to_completed(self, deliverable: Deliverable, now: datetime) -> bool:
        current = deliverable.status
        if current != _LEGACY_CONFIRMED:
            sm = DeliverableStateMachine(current_status=current)
            try:
                sm.confirmed()
            except TransitionNotAllowed:
                logger.debug(
                    "deliverable.advance_skipped",
                    deliverable_id=str(deliverable.id),
                    status=current,
                )
                return False
        return await self._deliverable_repo.set_status(
            deliverable, current, DeliverableStatus.COMPLETED.value, now
        )

    async def _try_transition(
        self,
        escrow: Escrow,
        event_name: str,
        event_type: EventType,
        metadata: dict | None = None,
        **values,
    ) -> None:
        """Derived transition on the read path; another request may beat us to it."""
        try:
            await self._transition(
                escrow, event_name, event_type, actor="SYSTEM", metadata=metadata, **values
            )
        except ConflictError:
            logger.info("confirmation.derived_transition_skipped", transition=event_name)


def _both_confirmed(escrow: Escrow) -> bool:
    return (
        escrow.initiator_confirmation == ConfirmationStatus.CONFIRMED
        and escrow.participant_confirmation == ConfirmationStatus.CONFIRMED
    )
