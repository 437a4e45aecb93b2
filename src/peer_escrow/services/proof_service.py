"""Proof Service: the proof ledger and its verification pipeline.

Coordinates between:
    - DeliverableResolver (virtual id mapping + authorization)
    - FileStorage (evidence upload)
    - OracleRouter (dispatch to the oracle for the deliverable type)
    - DeliverableStateMachine (forward-only deliverable status)

Proofs and verifications are append-only. A verification only moves the
deliverable when it was written against the deliverable's latest proof;
anything older is stored with is_stale=True and left at that.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from peer_escrow.config import get_settings
from peer_escrow.domain.enums import (
    DeliverableStatus,
    EscrowStatus,
    EventType,
    OracleType,
    PartyRole,
    ProofType,
    ProofVerificationStatus,
)
from peer_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    ProofNotFoundError,
    ValidationError,
)
from peer_escrow.domain.oracle_protocol import (
    ProofFile,
    VerificationRequest,
    VerificationResult,
)
from peer_escrow.domain.state_machine import validate_deliverable_transition
from peer_escrow.infrastructure.database.orm_models import EscrowProof, OracleVerification
from peer_escrow.logging_config import get_logger
from peer_escrow.oracles import OracleRouter
from peer_escrow.services.base import EscrowServiceBase, coerce_uuid, escrow_snapshot
from peer_escrow.services.deliverable_mapping import DeliverableResolver

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from peer_escrow.infrastructure.database.orm_models import Deliverable, Escrow
    from peer_escrow.infrastructure.storage import FileStorage

logger = get_logger(__name__)

_OPEN_PROOF_STATUSES = frozenset(
    {ProofVerificationStatus.PENDING.value, ProofVerificationStatus.UNDER_REVIEW.value}
)


@dataclass(frozen=True)
class UploadedFile:
    """Raw evidence bytes as received from the caller."""

    name: str
    content_type: str
    data: bytes


def canonical_proof_hash(payload: dict) -> str:
    """sha256 over the key-sorted compact JSON encoding of a proof payload."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def proof_type_for(files: list[UploadedFile]) -> ProofType:
    if not files:
        return ProofType.TEXT
    if all(f.content_type.startswith("image/") for f in files):
        return ProofType.IMAGE
    return ProofType.DOCUMENT


class ProofService(EscrowServiceBase):
    """Submits proofs, runs oracles, and records their verdicts."""

    def __init__(
        self,
        session: AsyncSession,
        storage: FileStorage,
        router: OracleRouter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._storage = storage
        self._router = router or OracleRouter(storage)
        self._resolver = DeliverableResolver(session, self._clock)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_proof(
        self,
        ref: uuid.UUID | str,
        caller: str,
        files: list[UploadedFile] | None = None,
        description: str = "",
    ) -> EscrowProof:
        """Upload evidence and append a proof for a deliverable.

        Args:
            ref: Deliverable UUID or virtual id.
            caller: Submitting party.
            files: Evidence files; may be empty for a text-only proof.
            description: Free-text account of the work.
        """
        files = list(files or [])
        description = (description or "").strip()
        if not files and not description:
            raise ValidationError("A proof needs at least one file or a description")

        resolved = await self._resolver.resolve(ref, caller)
        escrow, deliverable = resolved.escrow, resolved.deliverable

        if EscrowStatus(escrow.status).is_terminal:
            raise ConflictError(
                f"Escrow is {escrow.status}; no further proofs accepted",
                current_state=escrow_snapshot(escrow),
            )
        previous_status = deliverable.status
        try:
            validate_deliverable_transition(previous_status, "proof_submitted")
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidStateTransitionError(
                previous_status,
                "proof_submitted",
                {"deliverable_id": str(deliverable.id), "status": previous_status},
            ) from err

        stored: list[ProofFile] = []
        for upload in files:
            filename = upload.name.rsplit("/", 1)[-1] or "evidence"
            path = f"{escrow.id}/{deliverable.id}/{uuid.uuid4().hex}-{filename}"
            stored_file = await self._storage.upload(upload.data, path, upload.content_type)
            stored.append(
                ProofFile(
                    name=filename,
                    path=stored_file.path,
                    url=stored_file.url,
                    size=len(upload.data),
                    content_type=upload.content_type,
                )
            )

        payload = {
            "description": description,
            "files": [f.to_dict() for f in stored],
        }
        now = self._now()
        proof = await self._proof_repo.create(
            EscrowProof(
                escrow_id=escrow.id,
                deliverable_id=deliverable.id,
                requested_deliverable_id=resolved.requested_id,
                submitted_by=caller,
                proof_type=proof_type_for(files).value,
                payload=payload,
                proof_hash=canonical_proof_hash(payload),
                verification_status=ProofVerificationStatus.PENDING.value,
                submitted_at=now,
            )
        )

        if previous_status != DeliverableStatus.SUBMITTED:
            moved = await self._deliverable_repo.set_status(
                deliverable, previous_status, DeliverableStatus.SUBMITTED.value, now
            )
            if not moved:
                logger.info(
                    "proof.deliverable_moved_concurrently",
                    deliverable_id=str(deliverable.id),
                )

        await self._record_event(
            escrow,
            EventType.PROOF_SUBMITTED,
            actor=caller,
            metadata={
                "proof_id": str(proof.id),
                "deliverable_id": str(deliverable.id),
                "requested_id": resolved.requested_id,
                "files": len(stored),
            },
        )
        logger.info(
            "proof.submitted",
            proof_id=str(proof.id),
            deliverable_id=str(deliverable.id),
            proof_type=proof.proof_type,
            hash=proof.proof_hash[:12],
        )
        return proof

    # ------------------------------------------------------------------
    # Oracle verification
    # ------------------------------------------------------------------

    async def verify_proof(self, proof: EscrowProof) -> OracleVerification:
        """Route the proof to its oracle and record the result."""
        escrow = await self._get_escrow_or_raise(proof.escrow_id)
        deliverable = await self._deliverable_repo.get_by_id(proof.deliverable_id)
        oracle_type, oracle = self._router.route(
            deliverable.type, escrow.verification_required
        )

        request = VerificationRequest(
            escrow_id=str(escrow.id),
            deliverable_id=str(deliverable.id),
            proof_id=str(proof.id),
            deliverable_type=deliverable.type,
            deliverable_description=deliverable.description or deliverable.title,
            description=proof.payload.get("description", ""),
            files=tuple(ProofFile.from_dict(f) for f in proof.payload.get("files", [])),
        )
        logger.info(
            "verification.dispatching",
            proof_id=str(proof.id),
            oracle_type=oracle_type.value,
        )
        result = await oracle.verify(request)
        return await self.record_verification(proof, deliverable, oracle_type, result)

    async def record_verification(
        self,
        proof: EscrowProof,
        deliverable: Deliverable,
        oracle_type: OracleType,
        result: VerificationResult,
        reviewer_id: str | None = None,
    ) -> OracleVerification:
        """Append a verification and apply it if the proof is still the latest."""
        latest = await self._proof_repo.get_latest_for_deliverable(deliverable.id)
        is_stale = latest is not None and latest.id != proof.id
        now = self._now()

        verification = await self._verification_repo.create(
            OracleVerification(
                escrow_id=proof.escrow_id,
                deliverable_id=deliverable.id,
                proof_id=proof.id,
                proof_hash=proof.proof_hash,
                oracle_type=oracle_type.value,
                verified=result.verified,
                is_pending=result.is_pending,
                confidence_score=result.confidence_score,
                notes=result.notes,
                reviewer_id=reviewer_id,
                is_stale=is_stale,
                details=result.to_dict(),
                created_at=now,
            )
        )

        if result.is_pending:
            proof_status = ProofVerificationStatus.UNDER_REVIEW
        elif result.verified:
            proof_status = ProofVerificationStatus.ACCEPTED
        else:
            proof_status = ProofVerificationStatus.REJECTED
        await self._proof_repo.set_verification_status(proof, proof_status.value)

        if is_stale:
            logger.info(
                "verification.stale",
                proof_id=str(proof.id),
                latest_proof_id=str(latest.id),
            )
        elif not result.is_pending:
            await self._apply_to_deliverable(deliverable, result.verified, now)

        logger.info(
            "verification.recorded",
            proof_id=str(proof.id),
            oracle_type=oracle_type.value,
            verified=result.verified,
            confidence=result.confidence_score,
            pending=result.is_pending,
        )
        return verification

    # ------------------------------------------------------------------
    # Manual review
    # ------------------------------------------------------------------

    async def review_proof(
        self,
        proof_id: uuid.UUID | str,
        reviewer_id: str,
        approved: bool,
        notes: str | None = None,
    ) -> OracleVerification:
        """A human verdict on a proof awaiting manual review."""
        proof = await self._proof_repo.get_by_id(coerce_uuid(proof_id, "proof_id"))
        if proof is None:
            raise ProofNotFoundError(str(proof_id))
        escrow = await self._get_escrow_or_raise(proof.escrow_id)
        deliverable = await self._deliverable_repo.get_by_id(proof.deliverable_id)

        self._require_reviewer(escrow, deliverable, proof, reviewer_id)

        if EscrowStatus(escrow.status).is_terminal:
            raise ConflictError(
                f"Escrow is {escrow.status}; reviews are closed",
                current_state=escrow_snapshot(escrow),
            )
        if proof.verification_status not in _OPEN_PROOF_STATUSES:
            raise ConflictError(
                f"Proof already {proof.verification_status}",
                current_state={
                    "proof_id": str(proof.id),
                    "verification_status": proof.verification_status,
                },
            )

        result = VerificationResult(
            verified=approved,
            confidence_score=100 if approved else 0,
            notes=notes or ("Approved by reviewer" if approved else "Rejected by reviewer"),
        )
        verification = await self.record_verification(
            proof, deliverable, OracleType.MANUAL, result, reviewer_id=reviewer_id
        )
        await self._record_event(
            escrow,
            EventType.PROOF_REVIEWED,
            actor=reviewer_id,
            metadata={
                "proof_id": str(proof.id),
                "approved": approved,
                "stale": verification.is_stale,
            },
        )
        return verification

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_reviewer(
        self,
        escrow: Escrow,
        deliverable: Deliverable,
        proof: EscrowProof,
        reviewer_id: str,
    ) -> None:
        """Operators, the active arbiter, or the party owed the deliverable."""
        if not reviewer_id or reviewer_id == proof.submitted_by:
            raise AuthorizationError("Proofs cannot be reviewed by their submitter")
        if reviewer_id in get_settings().manual_reviewer_id_set:
            return
        if escrow.active_arbiter_id is not None and reviewer_id == escrow.active_arbiter_id:
            return
        owed_to = PartyRole(deliverable.party_responsible).counterparty
        if escrow.role_of(reviewer_id) == owed_to.value:
            return
        raise AuthorizationError("Caller may not review this proof")

    async def _apply_to_deliverable(
        self, deliverable: Deliverable, verified: bool, now: datetime
    ) -> None:
        event_name = "oracle_verified" if verified else "oracle_rejected"
        current = deliverable.status
        try:
            target = validate_deliverable_transition(current, event_name)
        except (TransitionNotAllowed, ValueError):
            logger.info(
                "verification.deliverable_unchanged",
                deliverable_id=str(deliverable.id),
                status=current,
                transition=event_name,
            )
            return
        await self._deliverable_repo.set_status(deliverable, current, target, now)
