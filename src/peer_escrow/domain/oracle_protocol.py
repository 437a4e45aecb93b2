"""Oracle Strategy Protocol.

Defines the interface that all verification oracles must implement.
This is a Protocol (structural subtyping) so concrete oracles don't need
to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from LiteLLM, httpx, or any storage backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ProofFile:
    """A file reference already stored by the storage collaborator."""

    name: str
    path: str
    url: str
    size: int = 0
    content_type: str = "application/octet-stream"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "url": self.url,
            "size": self.size,
            "content_type": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProofFile:
        return cls(
            name=data.get("name", ""),
            path=data["path"],
            url=data.get("url", ""),
            size=int(data.get("size", 0)),
            content_type=data.get("content_type", "application/octet-stream"),
        )


@dataclass(frozen=True)
class VerificationRequest:
    """Input to an oracle.

    Attributes:
        escrow_id: UUID of the escrow (as string).
        deliverable_id: Concrete deliverable the proof is for.
        proof_id: The proof being judged.
        deliverable_type: DeliverableType value driving the routing.
        deliverable_description: What the responsible party promised.
        description: Free-text description attached to the proof.
        files: Stored file references attached to the proof.
    """

    escrow_id: str
    deliverable_id: str
    proof_id: str
    deliverable_type: str
    deliverable_description: str = ""
    description: str = ""
    files: tuple[ProofFile, ...] = ()


@dataclass(frozen=True)
class VerificationResult:
    """Output from an oracle.

    Attributes:
        verified: Whether the proof satisfies completion.
        confidence_score: 0-100.
        notes: Human-readable explanation of the result.
        is_pending: True when a human must still review (manual oracle).
        logs: Raw material from the oracle (LLM response, missing paths).
        error: Error message if the oracle itself failed (not the proof).
    """

    verified: bool
    confidence_score: int = 0
    notes: str = ""
    is_pending: bool = False
    logs: dict = field(default_factory=dict)
    error: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.confidence_score <= 100:
            raise ValueError(
                f"confidence_score must be within [0, 100], got {self.confidence_score}"
            )

    def to_dict(self) -> dict:
        """Serialize for logging and the oracle_verifications.details column."""
        return {
            "verified": self.verified,
            "confidence_score": self.confidence_score,
            "notes": self.notes,
            "is_pending": self.is_pending,
            "logs": self.logs,
            "error": self.error,
        }


@runtime_checkable
class OracleStrategy(Protocol):
    """Protocol that all oracle implementations must satisfy.

    Concrete implementations:
        - oracles/content_addressable.py  (storage retrievability check)
        - oracles/ai_scoring.py           (LiteLLM confidence scoring)
        - oracles/manual_review.py        (pending human review)
    """

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """Judge the proof described by the request.

        Implementations must never raise for proof-level failures and must
        bound every network call; failures become verified=False results.
        """
        ...
