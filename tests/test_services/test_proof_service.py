"""Tests for the proof ledger: submission, oracle verification, manual review."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import (
    INITIATOR,
    OUTSIDER,
    PARTICIPANT,
    item_and_payment,
    service_and_payment,
)
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    ValidationError,
)
from peer_escrow.infrastructure.database.repositories import DeliverableRepository
from peer_escrow.services.escrow_service import EscrowService, NewDeliverable
from peer_escrow.services.proof_service import (
    ProofService,
    UploadedFile,
    canonical_proof_hash,
)

PHOTO = UploadedFile(name="photo.jpg", content_type="image/jpeg", data=b"\xff\xd8jpeg")
PDF = UploadedFile(name="invoice.pdf", content_type="application/pdf", data=b"%PDF-1.7")


def _llm_says(confidence: int) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = (
        f'{{"confidence": {confidence}, "notes": "scored {confidence}"}}'
    )
    return response


async def _deliverable(session, escrow, deliverable_type: str):
    deliverables = await DeliverableRepository(session).get_for_escrow(escrow.id)
    return next(d for d in deliverables if d.type == deliverable_type)


class TestSubmitProof:
    @pytest.mark.asyncio
    async def test_submission_uploads_and_hashes(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow()
        svc = ProofService(session, storage, clock=clock)

        proof = await svc.submit_proof(
            f"item-{escrow.transaction_id}", INITIATOR, files=[PHOTO], description="Shipped"
        )

        assert proof.requested_deliverable_id == f"item-{escrow.transaction_id}"
        assert proof.proof_type == "image"
        assert proof.verification_status == "pending"
        assert proof.proof_hash == canonical_proof_hash(proof.payload)
        stored_path = proof.payload["files"][0]["path"]
        assert stored_path.startswith(f"{escrow.id}/{proof.deliverable_id}/")
        assert stored_path in storage.objects

        item = await _deliverable(session, escrow, "item")
        assert item.status == "submitted"

    @pytest.mark.asyncio
    async def test_empty_proof_rejected(self, session, clock, storage, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(ValidationError):
            await ProofService(session, storage, clock=clock).submit_proof(
                f"item-{escrow.transaction_id}", INITIATOR, files=[], description="  "
            )

    @pytest.mark.asyncio
    async def test_outsider_cannot_submit(self, session, clock, storage, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(AuthorizationError):
            await ProofService(session, storage, clock=clock).submit_proof(
                f"item-{escrow.transaction_id}", OUTSIDER, description="hello"
            )

    @pytest.mark.asyncio
    async def test_terminal_escrow_rejects_proofs(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow(join=False)
        await EscrowService(session, clock).cancel_escrow(escrow.id, INITIATOR)
        with pytest.raises(ConflictError):
            await ProofService(session, storage, clock=clock).submit_proof(
                f"item-{escrow.transaction_id}", INITIATOR, description="too late"
            )

    @pytest.mark.asyncio
    async def test_verified_deliverable_rejects_new_proof(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow(
            deliverables=[NewDeliverable(type="document", party_responsible="initiator")],
            escrow_type="document",
        )
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(f"item-{escrow.transaction_id}", INITIATOR, files=[PDF])
        await svc.verify_proof(proof)

        with pytest.raises(InvalidStateTransitionError):
            await svc.submit_proof(f"item-{escrow.transaction_id}", INITIATOR, files=[PDF])


class TestOracleVerification:
    @pytest.mark.asyncio
    async def test_content_addressable_verifies_stored_files(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow(
            deliverables=[NewDeliverable(type="digital", party_responsible="initiator")],
            escrow_type="digital",
        )
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(f"item-{escrow.transaction_id}", INITIATOR, files=[PDF])

        verification = await svc.verify_proof(proof)

        assert verification.oracle_type == "ipfs"
        assert verification.verified is True
        assert verification.proof_hash == proof.proof_hash
        assert proof.verification_status == "accepted"
        assert (await _deliverable(session, escrow, "digital")).status == "verified"

    @pytest.mark.asyncio
    async def test_ai_rejection_fails_deliverable_then_resubmit(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow(deliverables=service_and_payment())
        svc = ProofService(session, storage, clock=clock)
        ref = f"item-{escrow.transaction_id}"

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(return_value=_llm_says(40))
            first = await svc.submit_proof(ref, INITIATOR, description="Cleaned a bit")
            rejected = await svc.verify_proof(first)

        assert rejected.oracle_type == "ai"
        assert rejected.verified is False
        assert rejected.confidence_score == 40
        assert (await _deliverable(session, escrow, "service")).status == "failed"

        await svc.submit_proof(ref, INITIATOR, files=[PHOTO], description="Cleaned it all")
        assert (await _deliverable(session, escrow, "service")).status == "submitted"

    @pytest.mark.asyncio
    async def test_verification_not_required_routes_to_manual(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow(
            deliverables=service_and_payment(), verification_required=False
        )
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(
            f"item-{escrow.transaction_id}", INITIATOR, description="Done"
        )

        verification = await svc.verify_proof(proof)

        assert verification.oracle_type == "manual"
        assert verification.is_pending is True
        assert proof.verification_status == "under_review"
        assert (await _deliverable(session, escrow, "service")).status == "submitted"


class TestManualReview:
    @pytest.mark.asyncio
    async def test_counterparty_approves(self, session, clock, storage, make_escrow) -> None:
        escrow = await make_escrow(deliverables=item_and_payment())
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(
            f"item-{escrow.transaction_id}", INITIATOR, files=[PHOTO]
        )
        pending = await svc.verify_proof(proof)
        assert pending.is_pending is True

        verification = await svc.review_proof(proof.id, PARTICIPANT, approved=True)

        assert verification.verified is True
        assert verification.confidence_score == 100
        assert verification.reviewer_id == PARTICIPANT
        assert proof.verification_status == "accepted"
        assert (await _deliverable(session, escrow, "item")).status == "verified"

        with pytest.raises(ConflictError):
            await svc.review_proof(proof.id, PARTICIPANT, approved=False)

    @pytest.mark.asyncio
    async def test_submitter_and_outsider_cannot_review(
        self, session, clock, storage, make_escrow
    ) -> None:
        escrow = await make_escrow()
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(f"item-{escrow.transaction_id}", INITIATOR, files=[PHOTO])
        await svc.verify_proof(proof)

        with pytest.raises(AuthorizationError):
            await svc.review_proof(proof.id, INITIATOR, approved=True)
        with pytest.raises(AuthorizationError):
            await svc.review_proof(proof.id, OUTSIDER, approved=True)

    @pytest.mark.asyncio
    async def test_operator_may_review(
        self, session, clock, storage, make_escrow, monkeypatch
    ) -> None:
        from peer_escrow.config import get_settings

        monkeypatch.setenv("MANUAL_REVIEWER_IDS", "ops-1, ops-2")
        get_settings.cache_clear()
        escrow = await make_escrow()
        svc = ProofService(session, storage, clock=clock)
        proof = await svc.submit_proof(f"item-{escrow.transaction_id}", INITIATOR, files=[PHOTO])
        await svc.verify_proof(proof)

        verification = await svc.review_proof(proof.id, "ops-2", approved=False, notes="blurry")

        assert verification.verified is False
        assert verification.notes == "blurry"
        assert (await _deliverable(session, escrow, "item")).status == "failed"

    @pytest.mark.asyncio
    async def test_stale_review_does_not_override_latest_proof(
        self, session, clock, storage, make_escrow
    ) -> None:
        """P1 submitted first but reviewed last; the deliverable follows P2."""
        escrow = await make_escrow()
        svc = ProofService(session, storage, clock=clock)
        ref = f"item-{escrow.transaction_id}"

        p1 = await svc.submit_proof(ref, INITIATOR, files=[PHOTO], description="first")
        await svc.verify_proof(p1)
        p2 = await svc.submit_proof(ref, INITIATOR, files=[PHOTO], description="second")
        await svc.verify_proof(p2)

        v2 = await svc.review_proof(p2.id, PARTICIPANT, approved=True)
        v1 = await svc.review_proof(p1.id, PARTICIPANT, approved=False)

        assert v2.is_stale is False
        assert v1.is_stale is True
        assert (await _deliverable(session, escrow, "item")).status == "verified"

        view = await EscrowService(session, clock).get_status(escrow.id, INITIATOR)
        item_view = next(d for d in view.deliverables if d.deliverable.type == "item")
        assert item_view.verification.id == v2.id
        assert item_view.verification.verified is True
