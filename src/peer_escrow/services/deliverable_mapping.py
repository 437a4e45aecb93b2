"""Adapter from caller-facing deliverable ids to concrete Deliverable rows.

Callers may address a deliverable by its UUID or by a virtual id
(`item-<transaction_id>` / `payment-<transaction_id>`). Resolution follows
the same guard order as every escrow operation:

    1. find the escrow (unknown -> EscrowNotFoundError / DeliverableNotFoundError)
    2. check the caller belongs to it (-> AuthorizationError)
    3. only then resolve the concrete deliverable (-> DeliverableNotFoundError)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from peer_escrow.domain.exceptions import DeliverableNotFoundError, EscrowNotFoundError
from peer_escrow.domain.virtual_ids import parse_virtual_id
from peer_escrow.logging_config import bind_escrow_context, get_logger
from peer_escrow.services.base import EscrowServiceBase

if TYPE_CHECKING:
    from collections.abc import Callable

    from peer_escrow.domain.enums import PartyRole
    from peer_escrow.infrastructure.database.orm_models import Deliverable, Escrow

logger = get_logger(__name__)


@dataclass
class ResolvedDeliverable:
    escrow: Escrow
    deliverable: Deliverable
    caller_role: PartyRole | None
    requested_id: str

    @property
    def was_virtual(self) -> bool:
        return self.requested_id != str(self.deliverable.id)


class DeliverableResolver(EscrowServiceBase):
    """Resolves a deliverable reference after authorizing the caller."""

    async def resolve(
        self,
        ref: uuid.UUID | str,
        caller: str | None,
        authorize: Callable[[Escrow, str | None], PartyRole | None] | None = None,
    ) -> ResolvedDeliverable:
        """Map `ref` to (escrow, deliverable).

        Args:
            ref: Deliverable UUID or virtual id.
            caller: User id performing the operation.
            authorize: Membership check; defaults to "caller is a party".
        """
        check = authorize or self._require_party
        raw = str(ref)

        try:
            virtual = parse_virtual_id(raw)
        except ValueError as err:
            raise DeliverableNotFoundError(raw) from err

        if virtual is not None:
            escrow = await self._escrow_repo.get_by_transaction_id(virtual.transaction_id)
            if escrow is None:
                raise EscrowNotFoundError(str(virtual.transaction_id))
            bind_escrow_context(escrow.id, escrow.transaction_id)
            role = check(escrow, caller)
            deliverable = await self._deliverable_repo.get_first_for_party(
                escrow.id, virtual.party_responsible.value
            )
            if deliverable is None:
                raise DeliverableNotFoundError(raw)
            logger.info(
                "deliverable.virtual_resolved",
                virtual_id=raw,
                deliverable_id=str(deliverable.id),
            )
            return ResolvedDeliverable(escrow, deliverable, role, raw)

        try:
            deliverable_id = uuid.UUID(raw)
        except ValueError as err:
            raise DeliverableNotFoundError(raw) from err

        deliverable = await self._deliverable_repo.get_by_id(deliverable_id)
        if deliverable is None:
            raise DeliverableNotFoundError(raw)
        escrow = await self._get_escrow_or_raise(deliverable.escrow_id)
        role = check(escrow, caller)
        return ResolvedDeliverable(escrow, deliverable, role, raw)
