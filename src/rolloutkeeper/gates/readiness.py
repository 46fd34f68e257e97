from __future__ import annotations

from rolloutkeeper.gates.base import GateContext, GateResult, VerificationGate


class ReadinessGate(VerificationGate):
    """Passes once the workload group reports enough ready replicas."""

    def __init__(self, name: str, *, workload: str | None = None, min_ready: int | None = None) -> None:
        self.name = name
        self.workload = workload
        self.min_ready = min_ready

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        workload = self.workload or target
        status = context.cluster.get_workload_group_status(workload, namespace=context.plan.namespace)
        if not status.exists:
            return GateResult.failed("workload_missing", workload=workload)
        required = self.min_ready if self.min_ready is not None else status.desired_replicas
        detail = {"workload": workload, "ready": status.ready_replicas, "required": required}
        if status.ready_replicas >= required:
            return GateResult.passed(**detail)
        return GateResult.pending("not_ready", **detail)
