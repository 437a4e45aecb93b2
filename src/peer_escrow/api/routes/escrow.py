"""Escrow REST API routes.

These endpoints provide the HTTP interface for the escrow lifecycle. The
MCP tools in mcp_server/tools.py call the same service layer, ensuring
consistency. The caller is identified by the X-User-ID header.

Routes:
    POST   /api/v1/escrow                                - Create an escrow
    POST   /api/v1/escrow/{id}/join                      - Counterparty joins
    POST   /api/v1/escrow/deliverables/{did}/proofs      - Submit proof + verify
    POST   /api/v1/escrow/deliverables/{did}/confirm     - Confirm own deliverable
    POST   /api/v1/escrow/proofs/{pid}/review            - Manual proof review
    POST   /api/v1/escrow/{id}/confirm                   - Party confirms completion
    POST   /api/v1/escrow/{id}/dispute                   - Request an arbiter
    POST   /api/v1/escrow/{id}/arbiter/propose           - Propose an arbiter
    POST   /api/v1/escrow/{id}/arbiter/approve           - Approve the proposal
    POST   /api/v1/escrow/{id}/arbiter/reject            - Reject the proposal
    POST   /api/v1/escrow/{id}/arbiter/resolve           - Arbiter decision
    POST   /api/v1/escrow/{id}/cancel                    - Initiator cancels
    POST   /api/v1/escrow/{id}/expire                    - Expire a stale escrow
    POST   /api/v1/escrow/{id}/settle                    - Anchor a completed escrow
    GET    /api/v1/escrow/{id}/status                    - Unified read model
    GET    /api/v1/escrow/{id}/events                    - Audit trail
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, File, Form, Header, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peer_escrow.api.deps import (
    get_caller,
    get_db_session,
    get_db_session_factory,
    get_identity_provider,
    get_ledger,
    get_optional_caller,
    get_oracle_router,
    get_storage,
)
from peer_escrow.domain.enums import EscrowStatus
from peer_escrow.domain.exceptions import DuplicateOperationError
from peer_escrow.infrastructure.database.repositories import (
    EscrowRepository,
    TransactionRepository,
)
from peer_escrow.infrastructure.identity import IdentityProvider
from peer_escrow.infrastructure.ledger_client import LedgerClient
from peer_escrow.infrastructure.redis_client import (
    check_idempotency,
    is_redis_ready,
    set_idempotency,
)
from peer_escrow.infrastructure.storage import FileStorage
from peer_escrow.logging_config import get_logger
from peer_escrow.oracles import OracleRouter
from peer_escrow.orchestration.escrow_workflow import run_proof_workflow, settle_if_completed
from peer_escrow.schemas.escrow import (
    ConfirmCompletionRequest,
    CreateEscrowRequest,
    DeliverableResponse,
    EscrowEventResponse,
    EscrowResponse,
    EscrowStatusResponse,
    ProofSubmissionResponse,
    ProposeArbiterRequest,
    RequestArbiterRequest,
    ResolveDisputeRequest,
    ReviewProofRequest,
    SettlementResponse,
    VerificationResponse,
)
from peer_escrow.services.arbiter_service import ArbiterService
from peer_escrow.services.confirmation_service import ConfirmationService
from peer_escrow.services.escrow_service import EscrowService, NewDeliverable
from peer_escrow.services.proof_service import ProofService, UploadedFile
from peer_escrow.services.settlement_service import SettlementBridge

if TYPE_CHECKING:
    from peer_escrow.infrastructure.database.orm_models import Escrow

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


async def _settle_on_completion(
    escrow: Escrow,
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
) -> None:
    """Commit the request, then hand a completed escrow to the Settlement Bridge."""
    if escrow.status != EscrowStatus.COMPLETED:
        return
    await session.commit()
    outcome = await settle_if_completed(session_factory, ledger, escrow.id)
    logger.info("settlement.on_completion", escrow_id=str(escrow.id), outcome=outcome.value)


# ---------------------------------------------------------------------------
# Create & Join
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowResponse,
    status_code=201,
    summary="Create a new escrow",
)
async def create_escrow(
    request: CreateEscrowRequest,
    caller: str = Depends(get_caller),
    idempotency_header: str | None = Header(default=None, alias="Idempotency-Key"),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    """Create a pending escrow; the caller becomes the initiator."""
    svc = EscrowService(session)
    key = request.idempotency_key or idempotency_header
    use_redis = key is not None and is_redis_ready()

    if use_redis:
        existing_id = await check_idempotency(key)
        if existing_id is not None:
            logger.info("idempotency.replayed", key=key, escrow_id=existing_id)
            view = await svc.get_status(existing_id, caller)
            return EscrowResponse.model_validate(view.escrow)

    escrow = await svc.create_escrow(
        initiator_id=caller,
        escrow_type=request.type,
        deliverables=[
            NewDeliverable(
                type=d.type,
                party_responsible=d.party_responsible,
                title=d.title,
                description=d.description,
                value=d.value,
                currency=d.currency,
                quantity=d.quantity,
            )
            for d in request.deliverables
        ],
        title=request.title,
        description=request.description,
        amount=request.amount,
        currency=request.currency,
        verification_required=request.verification_required,
        transaction_id=request.transaction_id,
        expires_in_days=request.expires_in_days,
        details=request.details,
    )

    if use_redis and not await set_idempotency(key, str(escrow.id)):
        raise DuplicateOperationError(key)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/join",
    response_model=EscrowResponse,
    summary="Join an escrow as the participant",
)
async def join_escrow(
    escrow_id: str,
    caller: str = Depends(get_caller),
    identity: IdentityProvider = Depends(get_identity_provider),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    """Transitions pending -> active."""
    svc = EscrowService(session, identity=identity)
    escrow = await svc.join_escrow(escrow_id, caller)
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Deliverables & Proofs
# ---------------------------------------------------------------------------


@router.post(
    "/deliverables/{deliverable_id}/proofs",
    response_model=ProofSubmissionResponse,
    status_code=201,
    summary="Submit proof for a deliverable and run its oracle",
)
async def submit_proof(
    deliverable_id: str,
    files: list[UploadFile] = File(default=[]),
    description: str = Form(default=""),
    caller: str = Depends(get_caller),
    storage: FileStorage = Depends(get_storage),
    oracle_router: OracleRouter = Depends(get_oracle_router),
    session: AsyncSession = Depends(get_db_session),
) -> ProofSubmissionResponse:
    """Accepts a deliverable UUID or a virtual id (item-<tx> / payment-<tx>)."""
    uploads = [
        UploadedFile(
            name=f.filename or "evidence",
            content_type=f.content_type or "application/octet-stream",
            data=await f.read(),
        )
        for f in files
    ]
    state = await run_proof_workflow(
        session,
        storage,
        deliverable_id,
        caller,
        files=uploads,
        description=description,
        router=oracle_router,
    )
    return ProofSubmissionResponse(**state)


@router.post(
    "/deliverables/{deliverable_id}/confirm",
    response_model=DeliverableResponse,
    summary="Confirm a deliverable you are responsible for",
)
async def confirm_deliverable(
    deliverable_id: str,
    caller: str = Depends(get_caller),
    ledger: LedgerClient = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> DeliverableResponse:
    svc = ConfirmationService(session)
    deliverable = await svc.confirm_deliverable(deliverable_id, caller)
    escrow = await EscrowRepository(session).get_by_id(deliverable.escrow_id)
    await _settle_on_completion(escrow, session, session_factory, ledger)
    return DeliverableResponse.model_validate(deliverable)


@router.post(
    "/proofs/{proof_id}/review",
    response_model=VerificationResponse,
    summary="Approve or reject a proof awaiting manual review",
)
async def review_proof(
    proof_id: str,
    request: ReviewProofRequest,
    caller: str = Depends(get_caller),
    storage: FileStorage = Depends(get_storage),
    ledger: LedgerClient = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> VerificationResponse:
    svc = ProofService(session, storage)
    verification = await svc.review_proof(proof_id, caller, request.approved, request.notes)
    escrow = await EscrowRepository(session).get_by_id(verification.escrow_id)
    await ConfirmationService(session).recompute(escrow)
    await _settle_on_completion(escrow, session, session_factory, ledger)
    return VerificationResponse.model_validate(verification)


# ---------------------------------------------------------------------------
# Confirmation & Dispute
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/confirm",
    response_model=EscrowResponse,
    summary="Confirm completion as a party",
)
async def confirm_completion(
    escrow_id: str,
    request: ConfirmCompletionRequest | None = None,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> EscrowResponse:
    """Idempotent. Completes the escrow once both parties have confirmed."""
    svc = EscrowService(session)
    notes = request.notes if request is not None else None
    escrow = await svc.confirm_completion(escrow_id, caller, notes)
    await _settle_on_completion(escrow, session, session_factory, ledger)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/dispute",
    response_model=EscrowResponse,
    summary="Request an arbiter",
)
async def request_arbiter(
    escrow_id: str,
    request: RequestArbiterRequest,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    """Moves the escrow to disputed. Details must be at least 20 characters."""
    svc = EscrowService(session)
    escrow = await svc.request_arbiter(
        escrow_id, caller, request.reason_code, request.details
    )
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Arbiter Negotiation
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/arbiter/propose",
    response_model=EscrowResponse,
    summary="Propose an arbiter",
)
async def propose_arbiter(
    escrow_id: str,
    request: ProposeArbiterRequest,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    svc = ArbiterService(session)
    escrow = await svc.propose_arbiter(escrow_id, caller, request.arbiter_id)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/arbiter/approve",
    response_model=EscrowResponse,
    summary="Approve the proposed arbiter",
)
async def approve_arbiter(
    escrow_id: str,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    svc = ArbiterService(session)
    escrow = await svc.approve_arbiter(escrow_id, caller)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/arbiter/reject",
    response_model=EscrowResponse,
    summary="Reject the proposed arbiter",
)
async def reject_arbiter(
    escrow_id: str,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    svc = ArbiterService(session)
    escrow = await svc.reject_arbiter(escrow_id, caller)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/arbiter/resolve",
    response_model=EscrowResponse,
    summary="Binding arbiter decision",
)
async def resolve_dispute(
    escrow_id: str,
    request: ResolveDisputeRequest,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> EscrowResponse:
    """Only the active arbiter may call this. release/split complete, refund cancels."""
    svc = ArbiterService(session)
    escrow = await svc.resolve_dispute(
        escrow_id,
        caller,
        request.decision,
        notes=request.notes,
        split_percentage=request.split_percentage,
    )
    await _settle_on_completion(escrow, session, session_factory, ledger)
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Cancellation, Expiry, Settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/cancel",
    response_model=EscrowResponse,
    summary="Cancel a pending escrow",
)
async def cancel_escrow(
    escrow_id: str,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    svc = EscrowService(session)
    escrow = await svc.cancel_escrow(escrow_id, caller)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/expire",
    response_model=EscrowResponse,
    summary="Expire an escrow past its deadline",
)
async def expire_escrow(
    escrow_id: str,
    caller: str | None = Depends(get_optional_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowResponse:
    svc = EscrowService(session)
    escrow = await svc.expire_escrow(escrow_id, caller)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/settle",
    response_model=SettlementResponse,
    summary="Anchor a completed escrow to the ledger",
)
async def settle_escrow(
    escrow_id: str,
    caller: str = Depends(get_caller),
    ledger: LedgerClient = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> SettlementResponse:
    """Runs the aggregator first, then settles on a session of its own."""
    view = await EscrowService(session).get_status(escrow_id, caller)
    escrow_pk, transaction_id = view.escrow.id, view.escrow.transaction_id
    await session.commit()

    async with session_factory() as settle_session:
        outcome = await SettlementBridge(settle_session, ledger).settle(escrow_pk)
        transaction = await TransactionRepository(settle_session).get_by_id(transaction_id)
        flag = transaction.settlement_flag if transaction else None
    return SettlementResponse(escrow_id=escrow_pk, outcome=outcome.value, settlement_flag=flag)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}/status",
    response_model=EscrowStatusResponse,
    summary="Unified escrow status",
)
async def get_status(
    escrow_id: str,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowStatusResponse:
    """Accepts an escrow id or a transaction id. Runs the confirmation aggregator."""
    svc = EscrowService(session)
    view = await svc.get_status(escrow_id, caller)
    return EscrowStatusResponse.from_view(view)


@router.get(
    "/{escrow_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    escrow_id: str,
    caller: str = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
) -> list[EscrowEventResponse]:
    """Return the full audit trail for an escrow."""
    svc = EscrowService(session)
    events = await svc.get_events(escrow_id, caller)
    return [EscrowEventResponse.model_validate(e) for e in events]
