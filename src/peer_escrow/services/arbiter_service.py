"""Arbiter Service: mutual arbiter selection and binding resolution.

Negotiation sub-state lives on the escrow row:

    proposed_arbiter_id / arbiter_proposed_by
    initiator_approved_arbiter / participant_approved_arbiter
    active_arbiter_id   (set only once both flags are true)

A rejection clears the whole proposal; a fresh proposal may name anyone,
including a previously rejected arbiter. Once active, the arbiter id is
the capability checked by resolve_dispute.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NoReturn

from peer_escrow.domain.enums import ArbiterDecision, EscrowStatus, EventType, PartyRole
from peer_escrow.domain.exceptions import AuthorizationError, ConflictError, ValidationError
from peer_escrow.infrastructure.database.orm_models import Escrow
from peer_escrow.logging_config import get_logger
from peer_escrow.services.base import EscrowServiceBase, escrow_snapshot

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.orm import InstrumentedAttribute

logger = get_logger(__name__)


class ArbiterService(EscrowServiceBase):
    """Propose / approve / reject an arbiter, and let the arbiter decide."""

    async def propose_arbiter(
        self,
        escrow_id: uuid.UUID | str,
        proposer: str,
        arbiter_id: str,
    ) -> Escrow:
        escrow = await self._get_escrow_or_raise(escrow_id)
        self._require_party(escrow, proposer)

        arbiter_id = (arbiter_id or "").strip()
        if not arbiter_id:
            raise ValidationError("arbiter_id is required", field="arbiter_id")
        if escrow.role_of(arbiter_id) is not None:
            raise ValidationError("A party cannot arbitrate its own escrow", field="arbiter_id")

        self._require_open(escrow)
        if escrow.participant_id is None:
            raise ConflictError(
                "An arbiter needs both parties; the escrow has no participant yet",
                current_state=escrow_snapshot(escrow),
            )
        if escrow.active_arbiter_id is not None:
            raise ConflictError(
                "An arbiter is already active",
                current_state=escrow_snapshot(escrow),
            )
        if escrow.proposed_arbiter_id is not None:
            raise ConflictError(
                "An arbiter proposal is already pending",
                current_state=escrow_snapshot(escrow),
            )

        won = await self._escrow_repo.update_if(
            escrow,
            Escrow.proposed_arbiter_id.is_(None),
            Escrow.active_arbiter_id.is_(None),
            at=self._now(),
            proposed_arbiter_id=arbiter_id,
            arbiter_proposed_by=proposer,
            initiator_approved_arbiter=False,
            participant_approved_arbiter=False,
        )
        if not won:
            await self._lost_race(escrow, "propose")

        await self._record_event(
            escrow,
            EventType.ARBITER_PROPOSED,
            actor=proposer,
            metadata={"arbiter_id": arbiter_id},
        )
        logger.info("arbiter.proposed", arbiter_id=arbiter_id, by=proposer)
        return escrow

    async def approve_arbiter(self, escrow_id: uuid.UUID | str, caller: str) -> Escrow:
        """Approve the pending proposal. Approving twice is a no-op."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        role = self._require_party(escrow, caller)
        self._require_open(escrow)

        if escrow.active_arbiter_id is not None:
            if escrow.active_arbiter_id == escrow.proposed_arbiter_id:
                return escrow
            raise ConflictError(
                "An arbiter is already active",
                current_state=escrow_snapshot(escrow),
            )
        proposed = escrow.proposed_arbiter_id
        if proposed is None:
            raise ConflictError(
                "There is no arbiter proposal to approve",
                current_state=escrow_snapshot(escrow),
            )

        flag = _approval_column(role)
        if not getattr(escrow, flag.key):
            won = await self._escrow_repo.update_if(
                escrow,
                Escrow.proposed_arbiter_id == proposed,
                Escrow.active_arbiter_id.is_(None),
                at=self._now(),
                **{flag.key: True},
            )
            if not won:
                await self._lost_race(escrow, "approve")
            await self._record_event(
                escrow,
                EventType.ARBITER_APPROVED,
                actor=caller,
                metadata={"arbiter_id": proposed, "role": role.value},
            )
            logger.info("arbiter.approved", arbiter_id=proposed, role=role.value)

        if escrow.initiator_approved_arbiter and escrow.participant_approved_arbiter:
            await self._activate(escrow, proposed, caller)
        return escrow

    async def reject_arbiter(self, escrow_id: uuid.UUID | str, caller: str) -> Escrow:
        """Clear the pending proposal and both approvals."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        role = self._require_party(escrow, caller)
        self._require_open(escrow)

        if escrow.active_arbiter_id is not None:
            raise ConflictError(
                "The arbiter is already active and can no longer be rejected",
                current_state=escrow_snapshot(escrow),
            )
        proposed = escrow.proposed_arbiter_id
        if proposed is None:
            raise ConflictError(
                "There is no arbiter proposal to reject",
                current_state=escrow_snapshot(escrow),
            )

        won = await self._escrow_repo.update_if(
            escrow,
            Escrow.proposed_arbiter_id == proposed,
            Escrow.active_arbiter_id.is_(None),
            at=self._now(),
            proposed_arbiter_id=None,
            arbiter_proposed_by=None,
            initiator_approved_arbiter=False,
            participant_approved_arbiter=False,
        )
        if not won:
            await self._lost_race(escrow, "reject")

        await self._record_event(
            escrow,
            EventType.ARBITER_REJECTED,
            actor=caller,
            metadata={"arbiter_id": proposed, "role": role.value},
        )
        logger.info("arbiter.rejected", arbiter_id=proposed, role=role.value)
        return escrow

    async def resolve_dispute(
        self,
        escrow_id: uuid.UUID | str,
        caller: str,
        decision: str,
        notes: str | None = None,
        split_percentage: int | None = None,
    ) -> Escrow:
        """Binding decision by the active arbiter. There is no appeal.

        release and split complete the escrow; refund cancels it.
        """
        try:
            verdict = ArbiterDecision(decision)
        except ValueError as err:
            valid = ", ".join(d.value for d in ArbiterDecision)
            raise ValidationError(
                f"Unknown decision '{decision}'. Valid: {valid}", field="decision"
            ) from err
        if verdict is ArbiterDecision.SPLIT:
            if split_percentage is None or not 0 < split_percentage < 100:
                raise ValidationError(
                    "split requires 0 < split_percentage < 100",
                    field="split_percentage",
                )
        elif split_percentage is not None:
            raise ValidationError(
                "split_percentage only applies to a split decision",
                field="split_percentage",
            )

        escrow = await self._get_escrow_or_raise(escrow_id)
        if escrow.active_arbiter_id is None or caller != escrow.active_arbiter_id:
            if escrow.role_of(caller) is not None or caller == escrow.proposed_arbiter_id:
                raise ConflictError(
                    "Only the active arbiter can resolve this dispute",
                    current_state=escrow_snapshot(escrow),
                )
            raise AuthorizationError("Caller is not the arbiter of this escrow")

        now = self._now()
        event_name = (
            "arbiter_refunded" if verdict is ArbiterDecision.REFUND else "arbiter_released"
        )
        extra = {"completed_at": now} if verdict is not ArbiterDecision.REFUND else {}
        await self._transition(
            escrow,
            event_name,
            EventType.DISPUTE_RESOLVED,
            actor=caller,
            metadata={"decision": verdict.value, "split_percentage": split_percentage},
            arbiter_decision=verdict.value,
            arbiter_notes=notes,
            split_percentage=split_percentage,
            resolved_at=now,
            **extra,
        )
        logger.info(
            "arbiter.resolved",
            decision=verdict.value,
            split_percentage=split_percentage,
        )
        return escrow

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_open(self, escrow: Escrow) -> None:
        if EscrowStatus(escrow.status).is_terminal:
            raise ConflictError(
                f"Escrow is {escrow.status}",
                current_state=escrow_snapshot(escrow),
            )

    async def _activate(self, escrow: Escrow, arbiter_id: str, caller: str) -> None:
        now = self._now()
        won = await self._escrow_repo.update_if(
            escrow,
            Escrow.proposed_arbiter_id == arbiter_id,
            Escrow.active_arbiter_id.is_(None),
            Escrow.initiator_approved_arbiter.is_(True),
            Escrow.participant_approved_arbiter.is_(True),
            at=now,
            active_arbiter_id=arbiter_id,
            arbiter_activated_at=now,
        )
        if not won:
            await self._escrow_repo.get_by_id(escrow.id)
            if escrow.active_arbiter_id == arbiter_id:
                return
            await self._lost_race(escrow, "activate")

        await self._record_event(
            escrow,
            EventType.ARBITER_ACTIVATED,
            actor=caller,
            metadata={"arbiter_id": arbiter_id},
        )
        # Notification hook: the arbiter learns of the assignment from this event.
        logger.info(
            "arbiter.activated",
            arbiter_id=arbiter_id,
            initiator_id=escrow.initiator_id,
            participant_id=escrow.participant_id,
        )

    async def _lost_race(self, escrow: Escrow, action: str) -> NoReturn:
        await self._escrow_repo.get_by_id(escrow.id)
        logger.info("arbiter.race_lost", action=action)
        raise ConflictError(
            "Arbiter negotiation changed concurrently",
            current_state=escrow_snapshot(escrow),
        )


def _approval_column(role: PartyRole) -> InstrumentedAttribute[bool]:
    if role is PartyRole.INITIATOR:
        return Escrow.initiator_approved_arbiter
    return Escrow.participant_approved_arbiter
