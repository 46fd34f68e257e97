from __future__ import annotations

from rolloutkeeper.gates.approval import ApprovalMailbox, ManualApprovalGate
from rolloutkeeper.gates.base import VerificationGate
from rolloutkeeper.gates.readiness import ReadinessGate
from rolloutkeeper.gates.synthetic import SyntheticTrafficGate
from rolloutkeeper.plan.model import GATE_KINDS, GateSpec


def _opt_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[arg-type]


def build_gate(
    spec: GateSpec,
    *,
    mailbox: ApprovalMailbox,
    keyring: dict[str, str] | None = None,
) -> VerificationGate:
    params = spec.params
    if spec.kind == "readiness":
        workload = params.get("workload")
        return ReadinessGate(
            spec.name,
            workload=str(workload) if workload else None,
            min_ready=_opt_int(params.get("min_ready")),
        )
    if spec.kind == "synthetic_http":
        header = params.get("expect_header")
        value = params.get("expect_value")
        return SyntheticTrafficGate(
            spec.name,
            url=str(params["url"]),
            expect_status=int(params.get("expect_status", 200)),  # type: ignore[arg-type]
            expect_header=str(header) if header else None,
            expect_value=str(value) if value is not None else None,
            samples=int(params.get("samples", 3)),  # type: ignore[arg-type]
            timeout_s=float(params.get("timeout_s", 5.0)),  # type: ignore[arg-type]
        )
    if spec.kind == "manual_approval":
        return ManualApprovalGate(
            spec.name,
            mailbox,
            keyring=keyring,
            require_signature=bool(params.get("require_signature", False)),
        )
    allowed = ", ".join(sorted(GATE_KINDS))
    raise ValueError(f"unknown gate kind {spec.kind!r}; expected one of: {allowed}")
