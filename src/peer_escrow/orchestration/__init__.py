"""Orchestration layer: proof pipeline and periodic sweeps."""

from peer_escrow.orchestration.escrow_workflow import (
    run_expiry_sweep,
    run_maintenance_loop,
    run_proof_workflow,
    run_settlement_tick,
    settle_if_completed,
)

__all__ = [
    "run_expiry_sweep",
    "run_maintenance_loop",
    "run_proof_workflow",
    "run_settlement_tick",
    "settle_if_completed",
]
