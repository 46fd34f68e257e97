from __future__ import annotations

from typing import Protocol

from rolloutkeeper.gates.base import GateContext, GateResult, VerificationGate
from rolloutkeeper.gates.signing import APPROVAL_SCHEMA_VERSION, verify_approval


class ApprovalMailbox(Protocol):
    def read_approval(self, plan_id: str, gate: str) -> dict | None: ...


class ManualApprovalGate(VerificationGate):
    """Stays PENDING until an operator decision for this plan and gate arrives.

    With ``require_signature`` only records signed by a key in ``keyring``
    count; anything else is ignored and the gate keeps waiting.
    """

    def __init__(
        self,
        name: str,
        mailbox: ApprovalMailbox,
        *,
        keyring: dict[str, str] | None = None,
        require_signature: bool = False,
    ) -> None:
        self.name = name
        self.mailbox = mailbox
        self.keyring = dict(keyring or {})
        self.require_signature = require_signature

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        plan_id = context.plan.plan_id
        record = self.mailbox.read_approval(plan_id, self.name)
        if record is None:
            return GateResult.pending("awaiting_approval")
        if (
            record.get("schema_version") != APPROVAL_SCHEMA_VERSION
            or record.get("plan_id") != plan_id
            or record.get("gate") != self.name
        ):
            return GateResult.pending("approval_mismatch")
        if self.require_signature:
            ok, code = verify_approval(record, self.keyring)
            if not ok:
                return GateResult.pending(f"approval_{code}", kid=record.get("kid"))
        approver = record.get("approver")
        if record.get("decision") == "approve":
            return GateResult.passed(approver=approver, kid=record.get("kid"))
        if record.get("decision") == "reject":
            return GateResult.failed("rejected", approver=approver, comment=record.get("comment"))
        return GateResult.pending("approval_decision_invalid")
