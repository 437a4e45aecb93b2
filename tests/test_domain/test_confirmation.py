"""Tests for the confirmation OR-merge and virtual deliverable ids."""

from __future__ import annotations

import uuid

import pytest

from peer_escrow.domain.confirmation import (
    DeliverableSnapshot,
    ParticipantFlags,
    unified_deliverable_status,
    unify_confirmations,
)
from peer_escrow.domain.enums import (
    ConfirmationDomain,
    DeliverableType,
    EscrowStatus,
    PartyRole,
)
from peer_escrow.domain.virtual_ids import is_virtual_id, make_virtual_id, parse_virtual_id

ITEM = DeliverableSnapshot("d-item", "item", "pending")
CASH = DeliverableSnapshot("d-cash", "cash", "pending")


class TestUnifyConfirmations:
    def test_nothing_confirmed(self) -> None:
        unified = unify_confirmations([ParticipantFlags(), ParticipantFlags()], [ITEM, CASH])
        assert (unified.item, unified.payment) == (False, False)
        assert unified.deliverable_statuses == {"d-item": "pending", "d-cash": "pending"}
        assert unified.all_deliverables_complete is False

    def test_one_participant_flag_confirms_domain_for_everyone(self) -> None:
        unified = unify_confirmations(
            [ParticipantFlags(item_confirmed=True), ParticipantFlags()], [ITEM, CASH]
        )
        assert unified.item is True
        assert unified.payment is False
        assert unified.deliverable_statuses["d-item"] == "completed"
        assert unified.deliverable_statuses["d-cash"] == "pending"

    def test_shared_domain_keeps_each_deliverable_own_status(self) -> None:
        bike = DeliverableSnapshot("d-bike", "item", "completed")
        guitar = DeliverableSnapshot("d-guitar", "item", "pending")
        unified = unify_confirmations(
            [ParticipantFlags(item_confirmed=True), ParticipantFlags()], [bike, guitar]
        )
        assert unified.item is True
        assert unified.deliverable_statuses == {"d-bike": "completed", "d-guitar": "pending"}
        assert unified.all_deliverables_complete is False

    def test_completed_deliverable_sets_domain_flag(self) -> None:
        done_cash = DeliverableSnapshot("d-cash", "cash", "completed")
        unified = unify_confirmations([ParticipantFlags()], [ITEM, done_cash])
        assert unified.payment is True
        assert unified.item is False

    def test_legacy_confirmed_status_counts_as_done(self) -> None:
        legacy = DeliverableSnapshot("d-item", "item", "confirmed")
        unified = unify_confirmations([], [legacy, CASH])
        assert unified.item is True
        assert unified.deliverable_statuses["d-item"] == "completed"

    def test_failed_deliverable_is_not_overridden(self) -> None:
        failed = DeliverableSnapshot("d-item", "item", "failed")
        unified = unify_confirmations([ParticipantFlags(item_confirmed=True)], [failed])
        assert unified.deliverable_statuses["d-item"] == "failed"
        assert unified.all_deliverables_complete is False

    def test_verified_counts_toward_completion(self) -> None:
        verified = DeliverableSnapshot("d-item", "service", "verified")
        done_cash = DeliverableSnapshot("d-cash", "cash", "completed")
        unified = unify_confirmations([], [verified, done_cash])
        assert unified.all_deliverables_complete is True

    def test_merge_is_idempotent(self) -> None:
        first = unify_confirmations(
            [ParticipantFlags(item_confirmed=True), ParticipantFlags()], [ITEM, CASH]
        )
        written_back = [ParticipantFlags(first.item, first.payment)] * 2
        rewritten = [
            DeliverableSnapshot(d.id, d.type, first.deliverable_statuses[d.id])
            for d in (ITEM, CASH)
        ]
        second = unify_confirmations(written_back, rewritten)
        assert second == first

    def test_no_deliverables_is_never_complete(self) -> None:
        unified = unify_confirmations([ParticipantFlags(True, True)], [])
        assert unified.all_deliverables_complete is False

    @pytest.mark.parametrize(
        ("status", "confirmed", "expected"),
        [
            ("pending", True, "completed"),
            ("submitted", False, "submitted"),
            ("verified", True, "verified"),
            ("failed", True, "failed"),
        ],
    )
    def test_unified_deliverable_status(self, status: str, confirmed: bool, expected: str) -> None:
        assert unified_deliverable_status(status, confirmed) == expected


class TestEnums:
    def test_payment_types_map_to_payment_domain(self) -> None:
        assert DeliverableType.CASH.domain is ConfirmationDomain.PAYMENT
        assert DeliverableType.DIGITAL_TRANSFER.domain is ConfirmationDomain.PAYMENT
        assert DeliverableType.SERVICE.domain is ConfirmationDomain.ITEM

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in EscrowStatus if s.is_terminal}
        assert terminal == {EscrowStatus.COMPLETED, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED}

    def test_counterparty(self) -> None:
        assert PartyRole.INITIATOR.counterparty is PartyRole.PARTICIPANT
        assert PartyRole.PARTICIPANT.counterparty is PartyRole.INITIATOR


class TestVirtualIds:
    def test_round_trip(self) -> None:
        tx = uuid.uuid4()
        raw = make_virtual_id(ConfirmationDomain.PAYMENT, tx)
        parsed = parse_virtual_id(raw)
        assert raw == f"payment-{tx}"
        assert parsed.transaction_id == tx
        assert parsed.party_responsible is PartyRole.PARTICIPANT

    def test_item_belongs_to_initiator(self) -> None:
        parsed = parse_virtual_id(f"item-{uuid.uuid4()}")
        assert parsed.party_responsible is PartyRole.INITIATOR

    def test_plain_uuid_is_not_virtual(self) -> None:
        value = str(uuid.uuid4())
        assert is_virtual_id(value) is False
        assert parse_virtual_id(value) is None

    def test_malformed_suffix_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_virtual_id("item-not-a-uuid")
