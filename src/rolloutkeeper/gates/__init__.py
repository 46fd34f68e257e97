from rolloutkeeper.gates.approval import ManualApprovalGate
from rolloutkeeper.gates.base import (
    GateContext,
    GateResult,
    VerificationGate,
    Verdict,
    poll_gate,
)
from rolloutkeeper.gates.readiness import ReadinessGate
from rolloutkeeper.gates.registry import build_gate
from rolloutkeeper.gates.synthetic import SyntheticTrafficGate

__all__ = [
    "GateContext",
    "GateResult",
    "ManualApprovalGate",
    "ReadinessGate",
    "SyntheticTrafficGate",
    "VerificationGate",
    "Verdict",
    "build_gate",
    "poll_gate",
]
