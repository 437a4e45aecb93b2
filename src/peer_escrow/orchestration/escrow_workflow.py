"""Escrow workflows: the proof pipeline and the periodic sweeps.

    submit proof -> route to oracle -> record verification -> aggregate

Ticks run outside any request. Each escrow gets its own session so that one
failing escrow never rolls back another, and so that the settlement claim
starts a fresh database transaction.

Usage:
    from peer_escrow.orchestration.escrow_workflow import run_settlement_tick

    report = await run_settlement_tick(get_session_factory(), ledger)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypedDict

from peer_escrow.domain.exceptions import ConflictError
from peer_escrow.infrastructure.database.repositories import EscrowRepository
from peer_escrow.logging_config import get_logger
from peer_escrow.services.base import utc_clock
from peer_escrow.services.confirmation_service import ConfirmationService
from peer_escrow.services.escrow_service import EscrowService
from peer_escrow.services.proof_service import ProofService
from peer_escrow.services.settlement_service import SettlementBridge

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from peer_escrow.domain.enums import SettlementOutcome
    from peer_escrow.infrastructure.ledger_client import LedgerClient
    from peer_escrow.infrastructure.storage import FileStorage
    from peer_escrow.oracles import OracleRouter
    from peer_escrow.services.proof_service import UploadedFile

logger = get_logger(__name__)


class ProofWorkflowState(TypedDict, total=False):
    """What happened to one submitted proof."""

    proof_id: str
    deliverable_id: str
    proof_hash: str
    oracle_type: str
    verified: bool
    is_pending: bool
    is_stale: bool
    confidence_score: int
    notes: str
    deliverable_status: str
    escrow_status: str


class SettlementTickReport(TypedDict):
    candidates: int
    anchored: int
    skipped: int
    failed: int


class ExpirySweepReport(TypedDict):
    candidates: int
    expired: int
    skipped: int


async def run_proof_workflow(
    session: AsyncSession,
    storage: FileStorage,
    ref: uuid.UUID | str,
    caller: str,
    files: list[UploadedFile] | None = None,
    description: str = "",
    router: OracleRouter | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ProofWorkflowState:
    """Submit a proof, verify it, and re-aggregate the escrow.

    Domain errors from the submission propagate; oracle failures are
    already folded into the verification record.
    """
    proof_service = ProofService(session, storage, router, clock)
    state: ProofWorkflowState = {}

    logger.info("workflow.submit", deliverable_ref=str(ref))
    proof = await proof_service.submit_proof(ref, caller, files, description)
    state["proof_id"] = str(proof.id)
    state["deliverable_id"] = str(proof.deliverable_id)
    state["proof_hash"] = proof.proof_hash

    logger.info("workflow.verify", proof_id=state["proof_id"])
    verification = await proof_service.verify_proof(proof)
    state["oracle_type"] = verification.oracle_type
    state["verified"] = verification.verified
    state["is_pending"] = verification.is_pending
    state["is_stale"] = verification.is_stale
    state["confidence_score"] = verification.confidence_score
    state["notes"] = verification.notes or ""

    confirmations = ConfirmationService(session, clock)
    escrow = await EscrowRepository(session).get_by_id(proof.escrow_id)
    view = await confirmations.recompute(escrow)
    state["escrow_status"] = escrow.status
    state["deliverable_status"] = next(
        (d.status for d in view.deliverables if d.id == proof.deliverable_id), ""
    )

    logger.info(
        "workflow.completed",
        proof_id=state["proof_id"],
        verified=state["verified"],
        escrow_status=state["escrow_status"],
    )
    return state


async def settle_if_completed(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    escrow_id: uuid.UUID,
    clock: Callable[[], datetime] | None = None,
) -> SettlementOutcome:
    """Run the Settlement Bridge right after a request completed the escrow.

    Call only once the request's own session has committed. The bridge itself
    skips escrows that are not completed or already claimed.
    """
    async with session_factory() as session:
        return await SettlementBridge(session, ledger, clock).settle(escrow_id)


async def run_settlement_tick(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    clock: Callable[[], datetime] | None = None,
) -> SettlementTickReport:
    """Try to settle every completed escrow whose flag is still unset."""
    async with session_factory() as session:
        candidates = [e.id for e in await EscrowRepository(session).list_completed_unsettled()]

    report: SettlementTickReport = {
        "candidates": len(candidates),
        "anchored": 0,
        "skipped": 0,
        "failed": 0,
    }
    for escrow_id in candidates:
        async with session_factory() as session:
            try:
                outcome = await SettlementBridge(session, ledger, clock).settle(escrow_id)
            except Exception:
                logger.exception("settlement.tick_error", escrow_id=str(escrow_id))
                await session.rollback()
                report["failed"] += 1
                continue
        report[outcome.value] += 1

    logger.info("settlement.tick", **report)
    return report


async def run_expiry_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    clock: Callable[[], datetime] | None = None,
) -> ExpirySweepReport:
    """Expire escrows past their deadline that saw no activity since."""
    clock = clock or utc_clock
    async with session_factory() as session:
        candidates = [e.id for e in await EscrowRepository(session).list_past_expiry(clock())]

    report: ExpirySweepReport = {"candidates": len(candidates), "expired": 0, "skipped": 0}
    for escrow_id in candidates:
        async with session_factory() as session:
            try:
                await EscrowService(session, clock).expire_escrow(escrow_id)
                await session.commit()
                report["expired"] += 1
            except ConflictError as exc:
                await session.rollback()
                report["skipped"] += 1
                logger.info("expiry.skipped", escrow_id=str(escrow_id), reason=exc.message)

    logger.info("expiry.sweep", **report)
    return report


async def run_maintenance_loop(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    interval_seconds: float,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Settlement tick plus expiry sweep, forever, every `interval_seconds`.

    Started by the app lifespan as a background task and cancelled on
    shutdown. One failing pass is logged and the next pass still runs.
    """
    logger.info("maintenance.started", interval_seconds=interval_seconds)
    while True:
        try:
            await run_settlement_tick(session_factory, ledger, clock)
            await run_expiry_sweep(session_factory, clock)
        except Exception:
            logger.exception("maintenance.pass_failed")
        await asyncio.sleep(interval_seconds)
