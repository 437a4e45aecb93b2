"""Escrow and Deliverable State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or a background tick does, an illegal transition
(e.g., pending -> completed) will raise TransitionNotAllowed.

The machines are instantiated per-row and validate transitions before the
ORM model's status field is written with a conditional UPDATE.

Escrow transition table:
    pending               -> active                 (participant_joins)
    active                -> awaiting_confirmation  (deliverables_completed)
    awaiting_confirmation -> completed              (both_confirmed)
    pending|active|awaiting_confirmation -> disputed (dispute_raised)
    disputed              -> completed              (arbiter_released)
    disputed              -> cancelled              (arbiter_refunded)
    pending               -> cancelled              (initiator_cancels)
    any non-terminal      -> expired                (expiry_reached)

Deliverable transition table:
    pending                                  -> in_progress (start_work)
    pending|in_progress|submitted|failed     -> submitted   (proof_submitted)
    submitted                                -> verified    (oracle_verified)
    submitted                                -> failed      (oracle_rejected)
    pending|in_progress|submitted|verified   -> completed   (confirmed)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _StatusGuard(StateMachine):
    """Shared construction from a persisted status string."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the StrEnum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class EscrowStateMachine(_StatusGuard):
    """State machine that guards the escrow lifecycle.

    Usage:
        sm = EscrowStateMachine(current_status="pending")
        sm.participant_joins()  # transitions to active
        sm.status               # "active"
    """

    # --- States ---
    PENDING = State("Pending", value="pending", initial=True)
    ACTIVE = State("Active", value="active")
    AWAITING_CONFIRMATION = State("Awaiting confirmation", value="awaiting_confirmation")
    DISPUTED = State("Disputed", value="disputed")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    EXPIRED = State("Expired", value="expired", final=True)

    # --- Events / Transitions ---

    # Happy path
    participant_joins = PENDING.to(ACTIVE)
    deliverables_completed = ACTIVE.to(AWAITING_CONFIRMATION)
    both_confirmed = AWAITING_CONFIRMATION.to(COMPLETED)

    # Disputes
    dispute_raised = (
        PENDING.to(DISPUTED) | ACTIVE.to(DISPUTED) | AWAITING_CONFIRMATION.to(DISPUTED)
    )
    arbiter_released = DISPUTED.to(COMPLETED)
    arbiter_refunded = DISPUTED.to(CANCELLED)

    # Anti-stall
    initiator_cancels = PENDING.to(CANCELLED)
    expiry_reached = (
        PENDING.to(EXPIRED)
        | ACTIVE.to(EXPIRED)
        | AWAITING_CONFIRMATION.to(EXPIRED)
        | DISPUTED.to(EXPIRED)
    )

    def __init__(self, current_status: str = "pending") -> None:
        super().__init__(current_status)


class DeliverableStateMachine(_StatusGuard):
    """Forward-only progress of a single deliverable.

    `failed` can only be left through a new proof submission, never by
    rewinding to an earlier state.
    """

    PENDING = State("Pending", value="pending", initial=True)
    IN_PROGRESS = State("In progress", value="in_progress")
    SUBMITTED = State("Submitted", value="submitted")
    VERIFIED = State("Verified", value="verified")
    FAILED = State("Failed", value="failed")
    COMPLETED = State("Completed", value="completed", final=True)

    start_work = PENDING.to(IN_PROGRESS)
    proof_submitted = (
        PENDING.to(SUBMITTED)
        | IN_PROGRESS.to(SUBMITTED)
        | SUBMITTED.to.itself()
        | FAILED.to(SUBMITTED)
    )
    oracle_verified = SUBMITTED.to(VERIFIED)
    oracle_rejected = SUBMITTED.to(FAILED)
    confirmed = (
        PENDING.to(COMPLETED)
        | IN_PROGRESS.to(COMPLETED)
        | SUBMITTED.to(COMPLETED)
        | VERIFIED.to(COMPLETED)
    )

    def __init__(self, current_status: str = "pending") -> None:
        super().__init__(current_status)


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate an escrow transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns the
    resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    return _fire(EscrowStateMachine(current_status=current_status), event_name)


def validate_deliverable_transition(current_status: str, event_name: str) -> str:
    """Same as validate_transition, for a deliverable's status."""
    return _fire(DeliverableStateMachine(current_status=current_status), event_name)


def _fire(sm: _StatusGuard, event_name: str) -> str:
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method) or event_name.startswith("_"):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {sm.status}: {sm.get_allowed_events()}"
        )
    event_method()
    return sm.status
