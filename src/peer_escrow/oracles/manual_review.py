"""ManualReviewOracle: defers the judgement to a human operator.

Physical items and payments cannot be checked automatically. The oracle
records a pending verification; the proof stays under review until a
reviewer calls ProofService.review_proof.
"""

from __future__ import annotations

from peer_escrow.domain.oracle_protocol import VerificationRequest, VerificationResult
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)


class ManualReviewOracle:
    async def verify(self, request: VerificationRequest) -> VerificationResult:
        logger.info(
            "oracle.manual.queued",
            proof_id=request.proof_id,
            deliverable_type=request.deliverable_type,
        )
        return VerificationResult(
            verified=False,
            confidence_score=0,
            notes="Awaiting manual review",
            is_pending=True,
        )
