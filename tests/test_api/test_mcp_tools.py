"""Tests for the MCP tools, called directly against the test database."""

from __future__ import annotations

import pytest

from conftest import INITIATOR, OUTSIDER, PARTICIPANT, item_and_payment
from peer_escrow.mcp_server import tools
from peer_escrow.services.confirmation_service import ConfirmationService
from peer_escrow.services.escrow_service import EscrowService


@pytest.fixture
def mcp_db(session_factory, ledger, monkeypatch):
    monkeypatch.setattr(tools, "get_session_factory", lambda: session_factory)
    monkeypatch.setattr("peer_escrow.api.deps.get_ledger", lambda: ledger)
    return session_factory


async def _joined_escrow(session_factory, clock):
    async with session_factory() as session:
        svc = EscrowService(session, clock)
        escrow = await svc.create_escrow(
            initiator_id=INITIATOR, escrow_type="mixed", deliverables=item_and_payment()
        )
        await svc.join_escrow(escrow.id, PARTICIPANT)
        await session.commit()
        return escrow


class TestStatusTool:
    @pytest.mark.asyncio
    async def test_party_sees_status(self, mcp_db, clock) -> None:
        escrow = await _joined_escrow(mcp_db, clock)

        result = await tools.check_escrow_status(str(escrow.id), PARTICIPANT)

        assert result["escrow"]["status"] == "active"
        assert result["confirmation"] == {"item": False, "payment": False}
        assert result["current_user_role"] == "participant"

    @pytest.mark.asyncio
    async def test_outsider_gets_error_payload(self, mcp_db, clock) -> None:
        escrow = await _joined_escrow(mcp_db, clock)
        result = await tools.check_escrow_status(str(escrow.id), OUTSIDER)
        assert result["error"] == "NOT_AUTHORIZED"


class TestMutatingTools:
    @pytest.mark.asyncio
    async def test_confirm_completion(self, mcp_db, clock) -> None:
        escrow = await _joined_escrow(mcp_db, clock)

        result = await tools.confirm_completion(str(escrow.id), INITIATOR, notes="All good")

        assert result["status"] == "active"
        assert result["initiator_confirmation"] == "confirmed"
        assert result["participant_confirmation"] == "unconfirmed"

    @pytest.mark.asyncio
    async def test_final_confirmation_settles(self, mcp_db, clock, ledger) -> None:
        escrow = await _joined_escrow(mcp_db, clock)
        async with mcp_db() as session:
            confirmations = ConfirmationService(session, clock)
            await confirmations.confirm_deliverable(f"item-{escrow.transaction_id}", INITIATOR)
            await confirmations.confirm_deliverable(
                f"payment-{escrow.transaction_id}", PARTICIPANT
            )
            await session.commit()

        first = await tools.confirm_completion(str(escrow.id), INITIATOR)
        second = await tools.confirm_completion(str(escrow.id), PARTICIPANT)

        assert "settlement" not in first
        assert second["status"] == "completed"
        assert second["settlement"] == "anchored"
        assert ledger.calls == 1

    @pytest.mark.asyncio
    async def test_request_arbiter_validates_details(self, mcp_db, clock) -> None:
        escrow = await _joined_escrow(mcp_db, clock)

        rejected = await tools.request_arbiter(str(escrow.id), PARTICIPANT, "other", "short")
        assert rejected["error"] == "VALIDATION_ERROR"

        accepted = await tools.request_arbiter(
            str(escrow.id),
            PARTICIPANT,
            "quality_issues",
            "The frame has a crack that was not disclosed.",
        )
        assert accepted["status"] == "disputed"
        assert accepted["dispute_reason"] == "quality_issues"

    @pytest.mark.asyncio
    async def test_settlement_tick(self, mcp_db, clock, ledger) -> None:
        escrow = await _joined_escrow(mcp_db, clock)
        async with mcp_db() as session:
            confirmations = ConfirmationService(session, clock)
            await confirmations.confirm_deliverable(f"item-{escrow.transaction_id}", INITIATOR)
            await confirmations.confirm_deliverable(
                f"payment-{escrow.transaction_id}", PARTICIPANT
            )
            svc = EscrowService(session, clock)
            await svc.confirm_completion(escrow.id, INITIATOR)
            await svc.confirm_completion(escrow.id, PARTICIPANT)
            await session.commit()

        result = await tools.run_settlement_tick()

        assert result == {"candidates": 1, "anchored": 1, "skipped": 0, "failed": 0}
        assert ledger.calls == 1
