"""Domain exceptions for the escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Taxonomy:
    ValidationError          -> rejected synchronously, nothing applied
    AuthorizationError       -> caller is not a party / arbiter of the escrow
    NotFoundError            -> unknown escrow, deliverable, proof, virtual id
    ConflictError            -> operation not allowed in the current state
    ExternalDependencyError  -> oracle, ledger or storage failure
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation ---


class ValidationError(EscrowError):
    """Raised when input is missing, malformed, or outside an enumerated set."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


# --- Authorization ---


class AuthorizationError(EscrowError):
    """Raised when the caller is not allowed to act on an escrow."""

    def __init__(self, message: str = "Caller is not a party to this escrow") -> None:
        super().__init__(message=message, code="NOT_AUTHORIZED")


# --- Not Found ---


class NotFoundError(EscrowError):
    """Base for unknown resources."""

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code)


class EscrowNotFoundError(NotFoundError):
    """Raised when an escrow (or transaction) ID does not exist."""

    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Escrow not found: {escrow_id}",
            code="ESCROW_NOT_FOUND",
        )
        self.escrow_id = escrow_id


class DeliverableNotFoundError(NotFoundError):
    """Raised when a deliverable or virtual deliverable id cannot be resolved."""

    def __init__(self, deliverable_id: str) -> None:
        super().__init__(
            message=f"Deliverable not found: {deliverable_id}",
            code="DELIVERABLE_NOT_FOUND",
        )
        self.deliverable_id = deliverable_id


class ProofNotFoundError(NotFoundError):
    def __init__(self, proof_id: str) -> None:
        super().__init__(
            message=f"Proof not found: {proof_id}",
            code="PROOF_NOT_FOUND",
        )
        self.proof_id = proof_id


# --- Conflict ---


class ConflictError(EscrowError):
    """Raised when an operation conflicts with the authoritative state.

    The current state is attached so that the caller can resync.
    """

    def __init__(
        self,
        message: str,
        current_state: dict | None = None,
        code: str = "CONFLICT",
    ) -> None:
        super().__init__(message=message, code=code)
        self.current_state = current_state or {}


class InvalidStateTransitionError(ConflictError):
    """Raised when an attempted state transition is not allowed.

    Example: pending -> completed (must go through active first).
    """

    def __init__(
        self,
        current_state: str,
        attempted: str,
        snapshot: dict | None = None,
    ) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted} not allowed from {current_state}",
            current_state=snapshot or {"status": current_state},
            code="INVALID_STATE_TRANSITION",
        )
        self.from_state = current_state
        self.attempted = attempted


class DuplicateOperationError(ConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- External dependencies ---


class ExternalDependencyError(EscrowError):
    """Base for failures of collaborators outside the engine."""

    def __init__(self, message: str, code: str = "EXTERNAL_DEPENDENCY_ERROR") -> None:
        super().__init__(message=message, code=code)


class OracleTimeoutError(ExternalDependencyError):
    """Raised inside an oracle when its bounded wait elapses."""

    def __init__(self, oracle: str, timeout: float) -> None:
        super().__init__(
            message=f"{oracle} oracle timed out after {timeout:g} seconds",
            code="ORACLE_TIMEOUT",
        )
        self.timeout = timeout


class LedgerAnchorError(ExternalDependencyError):
    """Raised by a ledger client when the anchor call fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="LEDGER_ANCHOR_FAILED")


class StorageUploadError(ExternalDependencyError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to upload {path}: {reason}",
            code="STORAGE_UPLOAD_FAILED",
        )
        self.path = path
