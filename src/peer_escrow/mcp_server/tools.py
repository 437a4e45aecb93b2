"""MCP tool definitions for the peer escrow engine.

These tools expose a slice of the escrow lifecycle via the Model Context
Protocol, so automation agents can poll escrows and drive the settlement
tick without going through the REST API.

Tools:
    - check_escrow_status: Unified status of an escrow (or its transaction)
    - confirm_completion: Confirm completion on behalf of a party
    - request_arbiter: Open a dispute
    - run_settlement_tick: Anchor every completed, unsettled escrow

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool manages its own database session (no FastAPI Depends available).
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from peer_escrow.config import get_settings
from peer_escrow.domain.exceptions import EscrowError
from peer_escrow.infrastructure.database.engine import get_session_factory
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)

mcp = FastMCP(get_settings().mcp_server_name, json_response=True)


def _error(exc: EscrowError) -> dict:
    return {"error": exc.code, "message": exc.message}


@mcp.tool()
async def check_escrow_status(escrow_id: str, user_id: str) -> dict:
    """Check the unified status of an escrow.

    Args:
        escrow_id: UUID of the escrow, or of the transaction it protects.
        user_id: The caller; must be a party or the active arbiter.

    Returns:
        Status, confirmation flags, deliverable statuses and allowed next events.
    """
    from peer_escrow.schemas.escrow import EscrowStatusResponse
    from peer_escrow.services.escrow_service import EscrowService

    try:
        async with get_session_factory()() as session:
            view = await EscrowService(session).get_status(escrow_id, user_id)
            await session.commit()
            return EscrowStatusResponse.from_view(view).model_dump(mode="json")
    except EscrowError as exc:
        logger.info("mcp.check_escrow_status.rejected", code=exc.code)
        return _error(exc)
    except Exception as exc:
        logger.exception("mcp.check_escrow_status.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}


@mcp.tool()
async def confirm_completion(escrow_id: str, user_id: str, notes: str = "") -> dict:
    """Confirm completion of an escrow as one of its parties.

    Args:
        escrow_id: UUID of the escrow.
        user_id: The confirming party.
        notes: Optional free-text notes stored with the confirmation.

    Returns:
        Escrow status, both confirmation states and, once the escrow is
        completed, the settlement outcome.
    """
    from peer_escrow.api.deps import get_ledger
    from peer_escrow.orchestration.escrow_workflow import settle_if_completed
    from peer_escrow.services.escrow_service import EscrowService

    try:
        async with get_session_factory()() as session:
            escrow = await EscrowService(session).confirm_completion(
                escrow_id, user_id, notes or None
            )
            await session.commit()
        result = {
            "escrow_id": str(escrow.id),
            "status": escrow.status,
            "initiator_confirmation": escrow.initiator_confirmation,
            "participant_confirmation": escrow.participant_confirmation,
        }
        if escrow.status == "completed":
            outcome = await settle_if_completed(get_session_factory(), get_ledger(), escrow.id)
            result["settlement"] = outcome.value
        return result
    except EscrowError as exc:
        logger.info("mcp.confirm_completion.rejected", code=exc.code)
        return _error(exc)
    except Exception as exc:
        logger.exception("mcp.confirm_completion.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}


@mcp.tool()
async def request_arbiter(
    escrow_id: str,
    user_id: str,
    reason_code: str,
    details: str,
) -> dict:
    """Raise a dispute and ask for an arbiter.

    Args:
        escrow_id: UUID of the escrow.
        user_id: The disputing party.
        reason_code: non_delivery, incorrect_item, quality_issues,
            incomplete_service, terms_violation, fraud_suspected or other.
        details: Explanation of the dispute, at least 20 characters.

    Returns:
        Escrow status and dispute details.
    """
    from peer_escrow.services.escrow_service import EscrowService

    try:
        async with get_session_factory()() as session:
            escrow = await EscrowService(session).request_arbiter(
                escrow_id, user_id, reason_code, details
            )
            await session.commit()
            return {
                "escrow_id": str(escrow.id),
                "status": escrow.status,
                "dispute_reason": escrow.dispute_reason,
                "disputed_by": escrow.disputed_by,
                "message": "Dispute raised. Next step: propose an arbiter.",
            }
    except EscrowError as exc:
        logger.info("mcp.request_arbiter.rejected", code=exc.code)
        return _error(exc)
    except Exception as exc:
        logger.exception("mcp.request_arbiter.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}


@mcp.tool()
async def run_settlement_tick() -> dict:
    """Anchor every completed escrow whose settlement flag is unset.

    Returns:
        Counts of candidates and of anchored, skipped and failed escrows.
    """
    from peer_escrow.api.deps import get_ledger
    from peer_escrow.orchestration.escrow_workflow import (
        run_settlement_tick as settlement_tick,
    )

    try:
        report = await settlement_tick(get_session_factory(), get_ledger())
        return dict(report)
    except Exception as exc:
        logger.exception("mcp.run_settlement_tick.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}
