"""Settlement Bridge: anchors a completed transaction's hash exactly once.

    unset --claim--> pending --anchor ok--> done
                        \----anchor failed--> unset   (next tick retries)

The claim is a single conditional UPDATE committed on its own, so of any
number of concurrent ticks exactly one proceeds to the ledger. The bridge
owns its session's commits; give each settle() call its own session.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError

from peer_escrow.domain.enums import EscrowStatus, EventType, SettlementOutcome
from peer_escrow.domain.exceptions import ExternalDependencyError
from peer_escrow.infrastructure.database.repositories import (
    DeliverableRepository,
    EscrowRepository,
    EventRepository,
    TransactionRepository,
)
from peer_escrow.logging_config import bind_escrow_context, get_logger
from peer_escrow.services.base import coerce_uuid, utc_clock

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from peer_escrow.infrastructure.database.orm_models import (
        Deliverable,
        Escrow,
        Transaction,
    )
    from peer_escrow.infrastructure.ledger_client import LedgerClient

logger = get_logger(__name__)


def settlement_summary(
    transaction: Transaction, escrow: Escrow, deliverables: list[Deliverable]
) -> dict:
    """The finalized facts that get hashed."""
    return {
        "transaction": {
            "id": str(transaction.id),
            "title": transaction.title,
            "details": transaction.details,
        },
        "escrow": {
            "id": str(escrow.id),
            "type": escrow.type,
            "status": escrow.status,
            "initiator_id": escrow.initiator_id,
            "participant_id": escrow.participant_id,
            "amount": escrow.amount,
            "currency": escrow.currency,
            "arbiter_decision": escrow.arbiter_decision,
            "split_percentage": escrow.split_percentage,
            "completed_at": escrow.completed_at,
        },
        "deliverables": [
            {
                "id": str(d.id),
                "type": d.type,
                "party_responsible": d.party_responsible,
                "status": d.status,
                "value": d.value,
                "currency": d.currency,
                "quantity": d.quantity,
            }
            for d in sorted(deliverables, key=lambda d: str(d.id))
        ],
    }


def settlement_hash(summary: dict) -> str:
    encoded = json.dumps(summary, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class SettlementBridge:
    """One settlement attempt per call."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerClient,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger
        self._clock = clock or utc_clock
        self._transaction_repo = TransactionRepository(session)
        self._escrow_repo = EscrowRepository(session)
        self._deliverable_repo = DeliverableRepository(session)
        self._event_repo = EventRepository(session)

    async def settle(self, escrow_id: uuid.UUID | str) -> SettlementOutcome:
        escrow_key = coerce_uuid(escrow_id, "escrow_id")

        escrow = await self._escrow_repo.get_by_id(escrow_key)
        if escrow is None or escrow.status != EscrowStatus.COMPLETED:
            await self._session.rollback()
            logger.debug("settlement.not_completed", escrow_id=str(escrow_key))
            return SettlementOutcome.SKIPPED
        transaction_id = escrow.transaction_id
        bind_escrow_context(escrow.id, transaction_id)
        # End the read so the claim is the first statement of a fresh transaction.
        await self._session.rollback()

        try:
            claimed = await self._transaction_repo.claim_settlement(
                transaction_id, self._clock()
            )
            await self._session.commit()
        except OperationalError:
            await self._session.rollback()
            logger.info("settlement.claim_contended", escrow_id=str(escrow_key))
            return SettlementOutcome.SKIPPED

        if not claimed:
            logger.info("settlement.already_claimed")
            return SettlementOutcome.SKIPPED

        escrow = await self._escrow_repo.get_by_id(escrow_key)
        transaction = await self._transaction_repo.get_by_id(transaction_id)
        deliverables = await self._deliverable_repo.get_for_escrow(escrow.id)
        content_hash = settlement_hash(settlement_summary(transaction, escrow, deliverables))

        try:
            receipt = await self._ledger.anchor(content_hash)
        except ExternalDependencyError as exc:
            logger.warning("settlement.anchor_failed", hash=content_hash, error=exc.message)
            await self._release(transaction_id)
            return SettlementOutcome.FAILED
        except Exception:
            logger.exception("settlement.anchor_error", hash=content_hash)
            await self._release(transaction_id)
            raise

        now = self._clock()
        await self._transaction_repo.complete_settlement(
            transaction_id, content_hash, receipt.tx_receipt, now
        )
        await self._event_repo.record(
            escrow_id=escrow.id,
            event_type=EventType.SETTLEMENT_ANCHORED,
            old_status=EscrowStatus.COMPLETED,
            new_status=EscrowStatus.COMPLETED,
            actor="SYSTEM",
            metadata={"hash": content_hash, "receipt": receipt.tx_receipt},
            created_at=now,
        )
        await self._session.commit()
        logger.info("settlement.anchored", hash=content_hash, receipt=receipt.tx_receipt)
        return SettlementOutcome.ANCHORED

    async def _release(self, transaction_id: uuid.UUID) -> None:
        await self._transaction_repo.release_settlement(transaction_id, self._clock())
        await self._session.commit()
