"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility), with the
single exception of the settlement claim, which the bridge commits itself.

Every status write is a conditional UPDATE scoped by primary key and the
expected current value. The returned bool says whether this caller won.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import exists, func, select, update

from peer_escrow.domain.enums import (
    ConfirmationDomain,
    EscrowStatus,
    SettlementFlag,
    TERMINAL_ESCROW_STATUSES,
)
from peer_escrow.infrastructure.database.orm_models import (
    Deliverable,
    Escrow,
    EscrowEvent,
    EscrowProof,
    OracleVerification,
    Transaction,
    TransactionParticipant,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from peer_escrow.domain.enums import EventType
    from peer_escrow.infrastructure.database.orm_models import Base


async def _conditional_update(
    session: AsyncSession, obj: Base, *criteria: ColumnElement[bool], **values: object
) -> bool:
    """UPDATE obj's row WHERE pk matches AND criteria; refresh obj on success."""
    model = type(obj)
    await session.flush()
    result = await session.execute(
        update(model)
        .where(model.id == obj.id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False
    await session.refresh(obj)
    return True


class TransactionRepository:
    """Data access for transactions and their settlement flag."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: Transaction) -> Transaction:
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_by_id(self, transaction_id: uuid.UUID) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_status(
        self, transaction_id: uuid.UUID, status: str, at: datetime
    ) -> None:
        await self._session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(status=status, updated_at=at)
            .execution_options(synchronize_session=False)
        )

    async def claim_settlement(self, transaction_id: uuid.UUID, at: datetime) -> bool:
        """Flip the flag unset -> pending. First writer wins.

        Must be the first statement of its database transaction so that
        SQLite takes the write lock before reading the flag.
        """
        escrow_completed = (
            select(Escrow.id)
            .where(
                Escrow.transaction_id == transaction_id,
                Escrow.status == EscrowStatus.COMPLETED.value,
            )
            .exists()
        )
        result = await self._session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.settlement_flag.is_(None),
                escrow_completed,
            )
            .values(settlement_flag=SettlementFlag.PENDING.value, updated_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete_settlement(
        self,
        transaction_id: uuid.UUID,
        settlement_hash: str,
        receipt: str,
        at: datetime,
    ) -> bool:
        result = await self._session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.settlement_flag == SettlementFlag.PENDING.value,
            )
            .values(
                settlement_flag=SettlementFlag.DONE.value,
                settlement_hash=settlement_hash,
                settlement_receipt=receipt,
                settled_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_settlement(self, transaction_id: uuid.UUID, at: datetime) -> bool:
        """Revert pending -> unset so a later tick can re-claim."""
        result = await self._session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.settlement_flag == SettlementFlag.PENDING.value,
            )
            .values(settlement_flag=None, updated_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class ParticipantRepository:
    """Data access for participant-level confirmation flags."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, participant: TransactionParticipant) -> TransactionParticipant:
        self._session.add(participant)
        await self._session.flush()
        return participant

    async def get_for_transaction(
        self, transaction_id: uuid.UUID
    ) -> list[TransactionParticipant]:
        result = await self._session.execute(
            select(TransactionParticipant)
            .where(TransactionParticipant.transaction_id == transaction_id)
            .order_by(TransactionParticipant.role.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def set_flag(
        self,
        transaction_id: uuid.UUID,
        user_id: str,
        domain: ConfirmationDomain,
        at: datetime,
    ) -> None:
        """Set one party's flag for a domain, keeping the first confirmation time."""
        if domain is ConfirmationDomain.PAYMENT:
            values = {
                "payment_confirmed": True,
                "payment_confirmed_at": func.coalesce(
                    TransactionParticipant.payment_confirmed_at, at
                ),
            }
        else:
            values = {
                "item_confirmed": True,
                "item_confirmed_at": func.coalesce(
                    TransactionParticipant.item_confirmed_at, at
                ),
            }
        await self._session.execute(
            update(TransactionParticipant)
            .where(
                TransactionParticipant.transaction_id == transaction_id,
                TransactionParticipant.user_id == user_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def write_unified(
        self,
        transaction_id: uuid.UUID,
        item: bool,
        payment: bool,
        at: datetime,
    ) -> int:
        """Write the unified booleans to every participant row of the transaction."""
        item_at = func.coalesce(TransactionParticipant.item_confirmed_at, at) if item else None
        payment_at = (
            func.coalesce(TransactionParticipant.payment_confirmed_at, at) if payment else None
        )
        result = await self._session.execute(
            update(TransactionParticipant)
            .where(TransactionParticipant.transaction_id == transaction_id)
            .values(
                item_confirmed=item,
                item_confirmed_at=item_at,
                payment_confirmed=payment,
                payment_confirmed_at=payment_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class EscrowRepository:
    """Data access for escrows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow."""
        self._session.add(escrow)
        await self._session.flush()
        return escrow

    async def get_by_id(self, escrow_id: uuid.UUID) -> Escrow | None:
        """Fetch an escrow by its UUID."""
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.id == escrow_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_transaction_id(self, transaction_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        escrow: Escrow,
        from_status: EscrowStatus,
        to_status: EscrowStatus,
        at: datetime,
        **values,
    ) -> bool:
        """Compare-and-swap the status (call AFTER state machine validation)."""
        return await _conditional_update(
            self._session,
            escrow,
            Escrow.status == from_status.value,
            status=to_status.value,
            updated_at=at,
            **values,
        )

    async def update_if(self, escrow: Escrow, *criteria, at: datetime, **values) -> bool:
        """Conditional non-status update (confirmations, arbiter sub-state)."""
        return await _conditional_update(
            self._session, escrow, *criteria, updated_at=at, **values
        )

    async def list_completed_unsettled(self) -> list[Escrow]:
        """Completed escrows whose transaction has no settlement flag yet."""
        result = await self._session.execute(
            select(Escrow)
            .join(Transaction, Transaction.id == Escrow.transaction_id)
            .where(
                Escrow.status == EscrowStatus.COMPLETED.value,
                Transaction.settlement_flag.is_(None),
            )
            .order_by(Escrow.completed_at.asc())
        )
        return list(result.scalars().all())

    async def list_past_expiry(self, now: datetime) -> list[Escrow]:
        result = await self._session.execute(
            select(Escrow)
            .where(
                Escrow.status.not_in([s.value for s in TERMINAL_ESCROW_STATUSES]),
                Escrow.expires_at < now,
            )
            .order_by(Escrow.expires_at.asc())
        )
        return list(result.scalars().all())


class DeliverableRepository:
    """Data access for deliverables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_many(self, deliverables: list[Deliverable]) -> list[Deliverable]:
        self._session.add_all(deliverables)
        await self._session.flush()
        return deliverables

    async def get_by_id(self, deliverable_id: uuid.UUID) -> Deliverable | None:
        result = await self._session.execute(
            select(Deliverable)
            .where(Deliverable.id == deliverable_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_escrow(self, escrow_id: uuid.UUID) -> list[Deliverable]:
        """All deliverables of an escrow in creation order."""
        result = await self._session.execute(
            select(Deliverable)
            .where(Deliverable.escrow_id == escrow_id)
            .order_by(Deliverable.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_first_for_party(
        self, escrow_id: uuid.UUID, party_responsible: str
    ) -> Deliverable | None:
        result = await self._session.execute(
            select(Deliverable)
            .where(
                Deliverable.escrow_id == escrow_id,
                Deliverable.party_responsible == party_responsible,
            )
            .order_by(Deliverable.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_status(
        self,
        deliverable: Deliverable,
        from_status: str,
        to_status: str,
        at: datetime,
    ) -> bool:
        """Compare-and-swap a deliverable's status."""
        values = {"status": to_status, "updated_at": at}
        if to_status == "completed":
            values["completed_at"] = at
        return await _conditional_update(
            self._session,
            deliverable,
            Deliverable.status == from_status,
            **values,
        )


class ProofRepository:
    """Data access for the append-only proof ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, proof: EscrowProof) -> EscrowProof:
        self._session.add(proof)
        await self._session.flush()
        return proof

    async def get_by_id(self, proof_id: uuid.UUID) -> EscrowProof | None:
        result = await self._session.execute(
            select(EscrowProof).where(EscrowProof.id == proof_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_deliverable(
        self, deliverable_id: uuid.UUID
    ) -> EscrowProof | None:
        """The proof with the newest submitted_at for a deliverable."""
        result = await self._session.execute(
            select(EscrowProof)
            .where(EscrowProof.deliverable_id == deliverable_id)
            .order_by(EscrowProof.submitted_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_for_escrow(self, escrow_id: uuid.UUID) -> list[EscrowProof]:
        result = await self._session.execute(
            select(EscrowProof)
            .where(EscrowProof.escrow_id == escrow_id)
            .order_by(EscrowProof.submitted_at.asc())
        )
        return list(result.scalars().all())

    async def set_verification_status(self, proof: EscrowProof, status: str) -> EscrowProof:
        """The only mutable column of a proof."""
        proof.verification_status = status
        await self._session.flush()
        return proof


class VerificationRepository:
    """Data access for append-only oracle verifications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, verification: OracleVerification) -> OracleVerification:
        self._session.add(verification)
        await self._session.flush()
        return verification

    async def get_for_escrow(self, escrow_id: uuid.UUID) -> list[OracleVerification]:
        result = await self._session.execute(
            select(OracleVerification)
            .where(OracleVerification.escrow_id == escrow_id)
            .order_by(OracleVerification.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_latest_for_proof(self, proof_id: uuid.UUID) -> OracleVerification | None:
        """Newest verification of a proof; a decided result wins a timestamp tie."""
        result = await self._session.execute(
            select(OracleVerification)
            .where(OracleVerification.proof_id == proof_id)
            .order_by(
                OracleVerification.created_at.desc(),
                OracleVerification.is_pending.asc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        escrow_id: uuid.UUID,
        event_type: EventType,
        old_status: EscrowStatus | None,
        new_status: EscrowStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
        created_at: datetime | None = None,
    ) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = EscrowEvent(
            escrow_id=escrow_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        if created_at is not None:
            evt.created_at = created_at
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_escrow(self, escrow_id: uuid.UUID) -> list[EscrowEvent]:
        """Fetch all events for an escrow in chronological order."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.escrow_id == escrow_id)
            .order_by(EscrowEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def has_event_after(self, escrow_id: uuid.UUID, moment: datetime) -> bool:
        result = await self._session.execute(
            select(
                exists().where(
                    EscrowEvent.escrow_id == escrow_id,
                    EscrowEvent.created_at > moment,
                )
            )
        )
        return bool(result.scalar())
