"""Tests for EscrowService: creation, joining, confirmation, cancellation, expiry."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from conftest import INITIATOR, OUTSIDER, PARTICIPANT, FakeIdentity, item_and_payment
from peer_escrow.config import get_settings
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    EscrowNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
)
from peer_escrow.infrastructure.database.orm_models import Transaction
from peer_escrow.infrastructure.database.repositories import (
    ParticipantRepository,
    TransactionRepository,
)
from peer_escrow.services.confirmation_service import ConfirmationService
from peer_escrow.services.escrow_service import EscrowService, NewDeliverable


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_creates_pending_escrow_with_deliverables(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        escrow = await svc.create_escrow(
            initiator_id=INITIATOR,
            escrow_type="mixed",
            deliverables=item_and_payment(),
            title="Bike for cash",
            amount=Decimal("250.00"),
            currency="EUR",
        )

        assert escrow.status == "pending"
        assert escrow.participant_id is None
        assert escrow.initiator_confirmation == "unconfirmed"
        assert escrow.expires_at > escrow.created_at

        view = await svc.get_status(escrow.id, INITIATOR)
        assert [d.deliverable.type for d in view.deliverables] == ["item", "cash"]
        assert all(d.deliverable.status == "pending" for d in view.deliverables)
        assert view.current_user_role == "initiator"

        events = await svc.get_events(escrow.id, INITIATOR)
        assert [e.event_type for e in events] == ["ESCROW_CREATED"]

    @pytest.mark.asyncio
    async def test_requires_a_deliverable(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        with pytest.raises(ValidationError) as exc_info:
            await svc.create_escrow(INITIATOR, "mixed", deliverables=[])
        assert exc_info.value.field == "deliverables"

    @pytest.mark.asyncio
    async def test_cash_deliverable_needs_value_and_currency(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        with pytest.raises(ValidationError) as exc_info:
            await svc.create_escrow(
                INITIATOR,
                "mixed",
                deliverables=[
                    NewDeliverable(type="item", party_responsible="initiator"),
                    NewDeliverable(type="cash", party_responsible="participant"),
                ],
            )
        assert exc_info.value.field == "deliverables[1].value"

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        with pytest.raises(ValidationError):
            await svc.create_escrow(INITIATOR, "barter", deliverables=item_and_payment())

    @pytest.mark.asyncio
    async def test_unknown_party_rejected(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        with pytest.raises(ValidationError):
            await svc.create_escrow(
                INITIATOR,
                "item",
                deliverables=[NewDeliverable(type="item", party_responsible="arbiter")],
            )

    @pytest.mark.asyncio
    async def test_amount_needs_currency(self, session, clock) -> None:
        svc = EscrowService(session, clock)
        with pytest.raises(ValidationError) as exc_info:
            await svc.create_escrow(
                INITIATOR, "mixed", deliverables=item_and_payment(), amount=Decimal("5")
            )
        assert exc_info.value.field == "currency"

    @pytest.mark.asyncio
    async def test_attaches_to_existing_transaction(self, session, clock) -> None:
        now = clock()
        transaction = await TransactionRepository(session).create(
            Transaction(title="Existing", created_at=now, updated_at=now)
        )
        svc = EscrowService(session, clock)
        escrow = await svc.create_escrow(
            INITIATOR, "mixed", deliverables=item_and_payment(), transaction_id=transaction.id
        )
        assert escrow.transaction_id == transaction.id

        with pytest.raises(ConflictError):
            await svc.create_escrow(
                INITIATOR, "mixed", deliverables=item_and_payment(), transaction_id=transaction.id
            )

    @pytest.mark.asyncio
    async def test_unknown_transaction_rejected(self, session, clock) -> None:
        import uuid

        svc = EscrowService(session, clock)
        with pytest.raises(EscrowNotFoundError):
            await svc.create_escrow(
                INITIATOR, "mixed", deliverables=item_and_payment(), transaction_id=uuid.uuid4()
            )


class TestJoinEscrow:
    @pytest.mark.asyncio
    async def test_join_activates(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(join=False)
        svc = EscrowService(session, clock)

        joined = await svc.join_escrow(escrow.id, PARTICIPANT)

        assert joined.status == "active"
        assert joined.participant_id == PARTICIPANT
        participants = await ParticipantRepository(session).get_for_transaction(
            escrow.transaction_id
        )
        assert {p.role for p in participants} == {"initiator", "participant"}

    @pytest.mark.asyncio
    async def test_initiator_cannot_join_own_escrow(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(join=False)
        with pytest.raises(ConflictError):
            await EscrowService(session, clock).join_escrow(escrow.id, INITIATOR)

    @pytest.mark.asyncio
    async def test_rejoin_is_noop_and_third_party_conflicts(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow()
        svc = EscrowService(session, clock)

        again = await svc.join_escrow(escrow.id, PARTICIPANT)
        assert again.status == "active"

        with pytest.raises(ConflictError):
            await svc.join_escrow(escrow.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_unverified_user_rejected_when_required(
        self, session, clock, make_escrow, monkeypatch
    ) -> None:
        monkeypatch.setenv("REQUIRE_VERIFIED_PARTIES", "true")
        get_settings.cache_clear()
        escrow = await make_escrow(join=False)

        svc = EscrowService(session, clock, identity=FakeIdentity(verified={"victor"}))
        with pytest.raises(AuthorizationError):
            await svc.join_escrow(escrow.id, PARTICIPANT)

        joined = await svc.join_escrow(escrow.id, "victor")
        assert joined.participant_id == "victor"


class TestConfirmCompletion:
    @pytest.mark.asyncio
    async def test_confirming_twice_is_idempotent(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        svc = EscrowService(session, clock)

        await svc.confirm_completion(escrow.id, INITIATOR, notes="all good")
        again = await svc.confirm_completion(escrow.id, INITIATOR)

        assert again.initiator_confirmation == "confirmed"
        assert again.initiator_notes == "all good"
        events = await svc.get_events(escrow.id, INITIATOR)
        assert [e.event_type for e in events].count("PARTY_CONFIRMED") == 1

    @pytest.mark.asyncio
    async def test_pending_escrow_cannot_be_confirmed(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(join=False)
        with pytest.raises(ConflictError):
            await EscrowService(session, clock).confirm_completion(escrow.id, INITIATOR)

    @pytest.mark.asyncio
    async def test_outsider_cannot_confirm(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(AuthorizationError):
            await EscrowService(session, clock).confirm_completion(escrow.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_both_confirmations_wait_for_deliverables(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow()
        svc = EscrowService(session, clock)
        confirmations = ConfirmationService(session, clock)

        await svc.confirm_completion(escrow.id, INITIATOR)
        await svc.confirm_completion(escrow.id, PARTICIPANT)
        view = await svc.get_status(escrow.id, INITIATOR)
        assert view.escrow.status == "active"
        assert view.is_ready_for_next_step is False

        await confirmations.confirm_deliverable(f"item-{escrow.transaction_id}", INITIATOR)
        await confirmations.confirm_deliverable(f"payment-{escrow.transaction_id}", PARTICIPANT)

        view = await svc.get_status(escrow.id, PARTICIPANT)
        assert view.escrow.status == "completed"
        assert view.escrow.completed_at is not None
        transaction = await TransactionRepository(session).get_by_id(escrow.transaction_id)
        assert transaction.status == "completed"

    @pytest.mark.asyncio
    async def test_second_confirmation_completes_awaiting_escrow(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow()
        svc = EscrowService(session, clock)
        confirmations = ConfirmationService(session, clock)
        await confirmations.confirm_deliverable(f"item-{escrow.transaction_id}", INITIATOR)
        await confirmations.confirm_deliverable(f"payment-{escrow.transaction_id}", PARTICIPANT)
        assert (await svc.get_status(escrow.id, INITIATOR)).escrow.status == "awaiting_confirmation"

        await svc.confirm_completion(escrow.id, PARTICIPANT)
        done = await svc.confirm_completion(escrow.id, INITIATOR)

        assert done.status == "completed"
        events = [e.event_type for e in await svc.get_events(escrow.id, INITIATOR)]
        assert events[-1] == "ESCROW_COMPLETED"
        assert events.count("ESCROW_COMPLETED") == 1


class TestCancelAndExpire:
    @pytest.mark.asyncio
    async def test_initiator_cancels_pending(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(join=False)
        svc = EscrowService(session, clock)

        cancelled = await svc.cancel_escrow(escrow.id, INITIATOR)

        assert cancelled.status == "cancelled"
        transaction = await TransactionRepository(session).get_by_id(escrow.transaction_id)
        assert transaction.status == "cancelled"

    @pytest.mark.asyncio
    async def test_only_initiator_cancels(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(AuthorizationError):
            await EscrowService(session, clock).cancel_escrow(escrow.id, PARTICIPANT)

    @pytest.mark.asyncio
    async def test_active_escrow_cannot_be_cancelled(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(InvalidStateTransitionError):
            await EscrowService(session, clock).cancel_escrow(escrow.id, INITIATOR)

    @pytest.mark.asyncio
    async def test_expire_before_deadline_conflicts(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(ConflictError):
            await EscrowService(session, clock).expire_escrow(escrow.id)

    @pytest.mark.asyncio
    async def test_expire_after_deadline(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow(expires_in_days=7)
        clock.advance(days=8)

        expired = await EscrowService(session, clock).expire_escrow(escrow.id)

        assert expired.status == "expired"
        transaction = await TransactionRepository(session).get_by_id(escrow.transaction_id)
        assert transaction.status == "expired"

    @pytest.mark.asyncio
    async def test_activity_after_deadline_blocks_expiry(
        self, session, clock, make_escrow
    ) -> None:
        escrow = await make_escrow(expires_in_days=7)
        clock.advance(days=8)
        svc = EscrowService(session, clock)
        await svc.confirm_completion(escrow.id, INITIATOR)

        with pytest.raises(ConflictError):
            await svc.expire_escrow(escrow.id)


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_outsider_is_rejected(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(AuthorizationError):
            await EscrowService(session, clock).get_status(escrow.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_anonymous_reader_is_rejected(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        svc = EscrowService(session, clock)
        with pytest.raises(AuthorizationError):
            await svc.get_status(escrow.id, None)
        with pytest.raises(AuthorizationError):
            await svc.get_events(escrow.id, None)

    @pytest.mark.asyncio
    async def test_lookup_by_transaction_id(self, session, clock, make_escrow) -> None:
        escrow = await make_escrow()
        view = await EscrowService(session, clock).get_status(escrow.transaction_id, PARTICIPANT)
        assert view.escrow.id == escrow.id
        assert view.current_user_role == "participant"
        assert "dispute_raised" in view.allowed_events

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, session, clock) -> None:
        with pytest.raises(EscrowNotFoundError):
            await EscrowService(session, clock).get_status(uuid.uuid4(), INITIATOR)

    @pytest.mark.asyncio
    async def test_malformed_id(self, session, clock) -> None:
        with pytest.raises(ValidationError):
            await EscrowService(session, clock).get_status("not-a-uuid", INITIATOR)
