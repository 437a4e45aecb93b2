"""Tests for the confirmation aggregator and deliverable confirmation."""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import update

from conftest import INITIATOR, OUTSIDER, PARTICIPANT, item_and_payment
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    DeliverableNotFoundError,
    EscrowNotFoundError,
)
from peer_escrow.infrastructure.database.orm_models import Deliverable, TransactionParticipant
from peer_escrow.infrastructure.database.repositories import (
    DeliverableRepository,
    ParticipantRepository,
)
from peer_escrow.services.confirmation_service import ConfirmationService
from peer_escrow.services.escrow_service import EscrowService, NewDeliverable


async def _deliverables(session, escrow):
    return await DeliverableRepository(session).get_for_escrow(escrow.id)


class TestConfirmDeliverable:
    @pytest.mark.asyncio
    async def test_responsible_party_confirms_by_uuid(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)

        confirmed = await ConfirmationService(session, clock).confirm_deliverable(
            item.id, INITIATOR
        )

        assert confirmed.status == "completed"
        assert confirmed.completed_at is not None

    @pytest.mark.asyncio
    async def test_virtual_payment_id_resolves_to_cash(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        _item, cash = await _deliverables(session, escrow)

        confirmed = await ConfirmationService(session, clock).confirm_deliverable(
            f"payment-{escrow.transaction_id}", PARTICIPANT
        )

        assert confirmed.id == cash.id
        assert confirmed.status == "completed"

    @pytest.mark.asyncio
    async def test_counterparty_cannot_confirm(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        with pytest.raises(AuthorizationError):
            await ConfirmationService(session, clock).confirm_deliverable(item.id, PARTICIPANT)

    @pytest.mark.asyncio
    async def test_outsider_rejected_before_lookup(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(AuthorizationError):
            await ConfirmationService(session, clock).confirm_deliverable(
                f"item-{escrow.transaction_id}", OUTSIDER
            )

    @pytest.mark.asyncio
    async def test_unknown_ids(self, session, clock, make_escrow) -> None:
        await make_escrow()
        svc = ConfirmationService(session, clock)
        with pytest.raises(EscrowNotFoundError):
            await svc.confirm_deliverable(f"item-{uuid.uuid4()}", INITIATOR)
        with pytest.raises(DeliverableNotFoundError):
            await svc.confirm_deliverable(uuid.uuid4(), INITIATOR)
        with pytest.raises(DeliverableNotFoundError):
            await svc.confirm_deliverable("item-garbage", INITIATOR)

    @pytest.mark.asyncio
    async def test_confirming_twice_is_idempotent(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        svc = ConfirmationService(session, clock)

        await svc.confirm_deliverable(item.id, INITIATOR)
        await svc.confirm_deliverable(item.id, INITIATOR)

        events = await EscrowService(session, clock).get_events(escrow.id, INITIATOR)
        assert [e.event_type for e in events].count("DELIVERABLE_CONFIRMED") == 1

    @pytest.mark.asyncio
    async def test_disputed_escrow_freezes_confirmation(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        await EscrowService(session, clock).request_arbiter(
            escrow.id, PARTICIPANT, "non_delivery", "The bicycle never arrived at my door."
        )

        with pytest.raises(ConflictError):
            await ConfirmationService(session, clock).confirm_deliverable(item.id, INITIATOR)
        with pytest.raises(ConflictError):
            await EscrowService(session, clock).confirm_completion(escrow.id, INITIATOR)


class TestAggregator:
    @pytest.mark.asyncio
    async def test_unified_flags_written_to_both_participants(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        svc = ConfirmationService(session, clock)
        await svc.confirm_deliverable(item.id, INITIATOR)

        participants = await ParticipantRepository(session).get_for_transaction(
            escrow.transaction_id
        )
        assert len(participants) == 2
        assert all(p.item_confirmed for p in participants)
        assert not any(p.payment_confirmed for p in participants)

    @pytest.mark.asyncio
    async def test_participant_flag_advances_deliverable(
        self, session, clock, make_escrow
    ) -> None:
        """A flag recorded only on a participant row completes the deliverable."""
        escrow = await make_escrow()
        await session.execute(
            update(TransactionParticipant)
            .where(
                TransactionParticipant.transaction_id == escrow.transaction_id,
                TransactionParticipant.user_id == PARTICIPANT,
            )
            .values(payment_confirmed=True)
        )

        view = await ConfirmationService(session, clock).recompute(escrow)

        assert view.unified.payment is True
        cash = next(d for d in view.deliverables if d.type == "cash")
        assert cash.status == "completed"

    @pytest.mark.asyncio
    async def test_legacy_confirmed_deliverable(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        await session.execute(
            update(Deliverable).where(Deliverable.id == item.id).values(status="confirmed")
        )

        view = await ConfirmationService(session, clock).recompute(escrow)

        assert view.unified.item is True
        refreshed = next(d for d in view.deliverables if d.id == item.id)
        assert refreshed.status == "completed"

    @pytest.mark.asyncio
    async def test_recompute_reaches_fixed_point(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        item, _cash = await _deliverables(session, escrow)
        svc = ConfirmationService(session, clock)
        await svc.confirm_deliverable(item.id, INITIATOR)

        first = await svc.recompute(escrow)
        second = await svc.recompute(escrow)

        assert first.unified == second.unified
        assert [d.status for d in first.deliverables] == [d.status for d in second.deliverables]
        assert [(p.item_confirmed, p.payment_confirmed) for p in first.participants] == [
            (p.item_confirmed, p.payment_confirmed) for p in second.participants
        ]
        assert escrow.status == "active"

    @pytest.mark.asyncio
    async def test_barter_needs_both_items_delivered(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(
            deliverables=[
                NewDeliverable(type="item", party_responsible="initiator", title="Bicycle"),
                NewDeliverable(type="item", party_responsible="participant", title="Guitar"),
            ]
        )
        by_title = {d.title: d for d in await _deliverables(session, escrow)}
        bike, guitar = by_title["Bicycle"], by_title["Guitar"]
        svc = ConfirmationService(session, clock)

        await svc.confirm_deliverable(bike.id, INITIATOR)
        view = await EscrowService(session, clock).get_status(escrow.id, PARTICIPANT)

        statuses = {d.deliverable.title: d.deliverable.status for d in view.deliverables}
        assert statuses == {"Bicycle": "completed", "Guitar": "pending"}
        assert view.escrow.status == "active"
        assert view.is_ready_for_next_step is False

        await svc.confirm_deliverable(guitar.id, PARTICIPANT)
        view = await EscrowService(session, clock).get_status(escrow.id, PARTICIPANT)
        assert view.escrow.status == "awaiting_confirmation"

    @pytest.mark.asyncio
    async def test_all_complete_moves_to_awaiting(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(deliverables=item_and_payment())
        svc = ConfirmationService(session, clock)
        await svc.confirm_deliverable(f"item-{escrow.transaction_id}", INITIATOR)
        await svc.confirm_deliverable(f"payment-{escrow.transaction_id}", PARTICIPANT)

        view = await EscrowService(session, clock).get_status(escrow.id, INITIATOR)

        assert view.escrow.status == "awaiting_confirmation"
        assert view.confirmation == {"item": True, "payment": True}
        assert view.is_ready_for_next_step is True
        events = await EscrowService(session, clock).get_events(escrow.id, INITIATOR)
        events = [e.event_type for e in events]
        assert events.count("DELIVERABLES_COMPLETED") == 1
