"""Unified confirmation: the OR-merge of two views of "is this done".

Completion is recorded twice. Each participant row carries item/payment
booleans, and each deliverable carries its own status. This module merges
both views without touching storage. The confirmation service writes the
merged booleans back to every participant row on each status read.

    unified[domain] = any(participant.<domain>_confirmed)
                      OR any(d.status in DONE for d in deliverables of domain)

Each deliverable is one party's obligation. The domain flag only reads
through to a deliverable's unified status when that deliverable is the single
one of its domain (the item-for-payment shape); a barter of two items needs
both items done on their own.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from peer_escrow.domain.enums import (
    DONE_DELIVERABLE_STATUSES,
    ConfirmationDomain,
    DeliverableStatus,
    DeliverableType,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

UNIFIED_COMPLETE_STATUSES = frozenset(
    {DeliverableStatus.COMPLETED.value, DeliverableStatus.VERIFIED.value}
)


@dataclass(frozen=True)
class ParticipantFlags:
    item_confirmed: bool = False
    payment_confirmed: bool = False

    def for_domain(self, domain: ConfirmationDomain) -> bool:
        if domain is ConfirmationDomain.PAYMENT:
            return self.payment_confirmed
        return self.item_confirmed


@dataclass(frozen=True)
class DeliverableSnapshot:
    id: str
    type: str
    status: str

    @property
    def domain(self) -> ConfirmationDomain:
        return DeliverableType(self.type).domain


@dataclass(frozen=True)
class UnifiedConfirmation:
    """Result of a merge.

    Attributes:
        item: Unified flag for the item-shaped domain.
        payment: Unified flag for the payment-shaped domain.
        deliverable_statuses: Deliverable id -> unified status.
    """

    item: bool
    payment: bool
    deliverable_statuses: dict[str, str] = field(default_factory=dict)

    def for_domain(self, domain: ConfirmationDomain) -> bool:
        return self.payment if domain is ConfirmationDomain.PAYMENT else self.item

    @property
    def all_deliverables_complete(self) -> bool:
        if not self.deliverable_statuses:
            return False
        return all(
            status in UNIFIED_COMPLETE_STATUSES
            for status in self.deliverable_statuses.values()
        )

    def to_dict(self) -> dict:
        return {"item": self.item, "payment": self.payment}


def unified_deliverable_status(status: str, domain_confirmed: bool) -> str:
    """Status a deliverable reads as once its domain's unified flag is known."""
    if status == DeliverableStatus.FAILED:
        return status
    if status == DeliverableStatus.VERIFIED:
        return status
    if status in DONE_DELIVERABLE_STATUSES or domain_confirmed:
        return DeliverableStatus.COMPLETED.value
    return status


def unify_confirmations(
    participants: Iterable[ParticipantFlags],
    deliverables: Iterable[DeliverableSnapshot],
) -> UnifiedConfirmation:
    """Merge participant flags and deliverable statuses into one view.

    Pure and idempotent: feeding the written-back result into a second call
    yields the same booleans.
    """
    participants = list(participants)
    deliverables = list(deliverables)

    flags: dict[ConfirmationDomain, bool] = {}
    for domain in ConfirmationDomain:
        from_participants = any(p.for_domain(domain) for p in participants)
        from_deliverables = any(
            d.domain is domain and d.status in DONE_DELIVERABLE_STATUSES
            for d in deliverables
        )
        flags[domain] = from_participants or from_deliverables

    # A domain flag stands in for a deliverable only when it is the sole
    # obligation of that domain; otherwise each deliverable keeps its own status.
    per_domain = Counter(d.domain for d in deliverables)
    statuses = {
        d.id: unified_deliverable_status(
            d.status, flags[d.domain] and per_domain[d.domain] == 1
        )
        for d in deliverables
    }
    return UnifiedConfirmation(
        item=flags[ConfirmationDomain.ITEM],
        payment=flags[ConfirmationDomain.PAYMENT],
        deliverable_statuses=statuses,
    )
