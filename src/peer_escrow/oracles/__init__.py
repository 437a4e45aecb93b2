"""Oracle strategy implementations and router.

Three strategies:
    - ContentAddressableOracle: Storage retrievability check (oracle_type "ipfs")
    - AIScoringOracle:          LLM confidence scoring via LiteLLM (oracle_type "ai")
    - ManualReviewOracle:       Pending record for a human reviewer (oracle_type "manual")

The OracleRouter selects the strategy from the deliverable type, never from
the proof content.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from peer_escrow.domain.enums import DeliverableType, OracleType
from peer_escrow.domain.oracle_protocol import (
    OracleStrategy,
    VerificationRequest,
    VerificationResult,
)
from peer_escrow.oracles.ai_scoring import AIScoringOracle
from peer_escrow.oracles.content_addressable import ContentAddressableOracle
from peer_escrow.oracles.manual_review import ManualReviewOracle

if TYPE_CHECKING:
    from peer_escrow.infrastructure.storage import FileStorage


class OracleRouter:
    """Maps a deliverable type to the oracle that judges its proofs.

    Usage:
        router = OracleRouter(storage=storage)
        oracle_type, oracle = router.route("service")
        result = await oracle.verify(request)
    """

    _routes: dict[str, OracleType] = {
        DeliverableType.DIGITAL.value: OracleType.IPFS,
        DeliverableType.DOCUMENT.value: OracleType.IPFS,
        DeliverableType.SERVICE.value: OracleType.AI,
        DeliverableType.ITEM.value: OracleType.MANUAL,
        DeliverableType.CASH.value: OracleType.MANUAL,
        DeliverableType.DIGITAL_TRANSFER.value: OracleType.MANUAL,
        DeliverableType.MIXED.value: OracleType.MANUAL,
    }

    def __init__(
        self,
        storage: FileStorage,
        ai_oracle: OracleStrategy | None = None,
        manual_oracle: OracleStrategy | None = None,
        cas_oracle: OracleStrategy | None = None,
    ) -> None:
        self._registry: dict[OracleType, OracleStrategy] = {
            OracleType.IPFS: cas_oracle or ContentAddressableOracle(storage),
            OracleType.AI: ai_oracle or AIScoringOracle(),
            OracleType.MANUAL: manual_oracle or ManualReviewOracle(),
        }

    @classmethod
    def oracle_type_for(
        cls, deliverable_type: str, verification_required: bool = True
    ) -> OracleType:
        """Resolve the oracle type for a deliverable.

        Raises:
            ValueError: If the deliverable type is unknown.
        """
        oracle_type = cls._routes.get(deliverable_type)
        if oracle_type is None:
            raise ValueError(
                f"Unknown deliverable type: '{deliverable_type}'. "
                f"Valid types: {list(cls._routes.keys())}"
            )
        if not verification_required:
            return OracleType.MANUAL
        return oracle_type

    def route(
        self, deliverable_type: str, verification_required: bool = True
    ) -> tuple[OracleType, OracleStrategy]:
        oracle_type = self.oracle_type_for(deliverable_type, verification_required)
        return oracle_type, self._registry[oracle_type]

    @classmethod
    def get_supported_types(cls) -> list[str]:
        """Return the deliverable types the router knows how to route."""
        return list(cls._routes.keys())


__all__ = [
    "AIScoringOracle",
    "ContentAddressableOracle",
    "ManualReviewOracle",
    "OracleRouter",
    "OracleStrategy",
    "VerificationRequest",
    "VerificationResult",
]
