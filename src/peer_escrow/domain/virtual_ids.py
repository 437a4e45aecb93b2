"""Virtual deliverable ids.

Transactions created before explicit deliverable rows existed expose two
synthetic ids at the boundary: `item-<transaction_id>` for the initiator's
obligation and `payment-<transaction_id>` for the participant's. They are
resolved to a concrete Deliverable before anything is written; the rest of
the engine never sees them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from peer_escrow.domain.enums import ConfirmationDomain, PartyRole

_PREFIXES: dict[str, ConfirmationDomain] = {
    "item-": ConfirmationDomain.ITEM,
    "payment-": ConfirmationDomain.PAYMENT,
}


@dataclass(frozen=True)
class VirtualDeliverableId:
    raw: str
    domain: ConfirmationDomain
    transaction_id: uuid.UUID

    @property
    def party_responsible(self) -> PartyRole:
        if self.domain is ConfirmationDomain.ITEM:
            return PartyRole.INITIATOR
        return PartyRole.PARTICIPANT


def is_virtual_id(value: str) -> bool:
    return any(value.startswith(prefix) for prefix in _PREFIXES)


def parse_virtual_id(value: str) -> VirtualDeliverableId | None:
    """Parse an `item-`/`payment-` id. Returns None for anything else.

    Raises:
        ValueError: If the prefix matches but the suffix is not a UUID.
    """
    for prefix, domain in _PREFIXES.items():
        if value.startswith(prefix):
            return VirtualDeliverableId(
                raw=value,
                domain=domain,
                transaction_id=uuid.UUID(value[len(prefix):]),
            )
    return None


def make_virtual_id(domain: ConfirmationDomain, transaction_id: uuid.UUID) -> str:
    return f"{domain.value}-{transaction_id}"
