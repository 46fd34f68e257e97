from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rolloutkeeper.audit.explain import ExplainLog, read_jsonl
from rolloutkeeper.audit.store import AuditStore
from rolloutkeeper.cluster.memory import InMemoryClusterClient
from rolloutkeeper.core.stages import Stage
from rolloutkeeper.engine.engine import RolloutEngine
from rolloutkeeper.gates.base import GateContext, GateResult, VerificationGate
from rolloutkeeper.gates.signing import build_approval


@dataclass
class TrafficRecorder(InMemoryClusterClient):
    """Records which groups the traffic endpoint selects after every mutation."""

    seen: list[dict[str, int]] = field(default_factory=list)

    def apply_workload_group(self, spec, *, namespace, labels, replicas):  # type: ignore[no-untyped-def]
        generation = super().apply_workload_group(spec, namespace=namespace, labels=labels, replicas=replicas)
        self.seen.append(self.endpoint_backends("web", namespace=namespace))
        return generation

    def delete_workload_group(self, name, *, namespace):  # type: ignore[no-untyped-def]
        super().delete_workload_group(name, namespace=namespace)
        self.seen.append(self.endpoint_backends("web", namespace=namespace))


class CallbackGate(VerificationGate):
    def __init__(self, name: str, callback) -> None:  # type: ignore[no-untyped-def]
        self.name = name
        self.callback = callback

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        self.callback()
        return GateResult.passed()


def _transitions(store: AuditStore, plan_id: str) -> list[tuple[str, str]]:
    return [(r.from_stage, r.to_stage) for r in store.history(plan_id) if r.event == "transition"]


def test_canary_rollout_completes(make_plan, store: AuditStore, seed_source, tmp_path: Path) -> None:
    plan = make_plan(
        gates=[
            {"name": "target-ready", "kind": "readiness", "phase": "prepare", "interval_s": 0},
            {"name": "fleet-ready", "kind": "readiness", "phase": "verify", "interval_s": 0},
        ]
    )
    cluster = TrafficRecorder()
    seed_source(cluster, plan)
    explain = ExplainLog(tmp_path / "explain.jsonl")

    state = RolloutEngine(plan, cluster, store, explain=explain, poll_interval_s=0).run()

    assert state.stage == Stage.COMPLETED
    assert state.applied_step == 2
    assert state.confirmed_step == 2
    assert state.target_live is True
    assert cluster.replicas("web-v1") is None
    assert cluster.replicas("web-v2") == 2
    assert cluster.labels("web-v2") == {"app": "web", "traffic": "live"}
    assert cluster.endpoint_backends("web") == {"web-v2": 2}

    assert _transitions(store, plan.plan_id) == [
        ("PENDING", "PREPARING"),
        ("PREPARING", "SHIFTING"),
        ("SHIFTING", "VERIFYING"),
        ("VERIFYING", "FINALIZING"),
        ("FINALIZING", "COMPLETED"),
    ]
    history = store.history(plan.plan_id)
    assert history[0].event == "submitted"
    assert [r.step_index for r in history if r.event == "step_applied"] == [0, 1, 2]
    assert [r.step_index for r in history if r.event == "step_confirmed"] == [0, 1, 2]
    gate_results = [r.detail for r in history if r.event == "gate_result"]
    assert [(d["gate"], d["verdict"]) for d in gate_results] == [("target-ready", "PASS"), ("fleet-ready", "PASS")]

    snapshot = store.load_snapshot(plan.plan_id)
    assert snapshot is not None and snapshot.stage == Stage.COMPLETED
    assert store.load_plan_payload(plan.plan_id) == plan.to_dict()
    assert not store.is_locked(plan.plan_id)

    events = [e["event"] for e in read_jsonl(tmp_path / "explain.jsonl")]
    assert events.count("transition") == 5
    assert "step_confirmed" in events


def test_traffic_endpoint_never_loses_its_last_live_group(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(schedule=[[3, 0], [2, 1], [1, 2], [0, 3]])
    cluster = TrafficRecorder()
    seed_source(cluster, plan)

    state = RolloutEngine(plan, cluster, store, poll_interval_s=0).run()

    assert state.stage == Stage.COMPLETED
    assert cluster.seen
    for backends in cluster.seen:
        assert backends
        # Grow-then-shrink keeps serving capacity at or above the total.
        assert sum(backends.values()) >= 3


def test_target_is_staged_dark_before_going_live(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(
        preview_endpoint={"name": "web-preview", "selector": {"app": "web", "traffic": "dark"}},
        gates=[{"name": "probe", "kind": "readiness", "phase": "prepare"}],
    )
    cluster = InMemoryClusterClient()
    seed_source(cluster, plan)
    observed: dict = {}

    def capture() -> None:
        observed["labels"] = cluster.labels("web-v2")
        observed["live"] = cluster.endpoint_backends("web")
        observed["preview"] = cluster.endpoint_backends("web-preview")

    engine = RolloutEngine(plan, cluster, store, gates={"probe": CallbackGate("probe", capture)}, poll_interval_s=0)
    state = engine.run()

    assert state.stage == Stage.COMPLETED
    assert observed["labels"] == {"app": "web", "traffic": "dark"}
    assert observed["live"] == {"web-v1": 2}
    assert observed["preview"] == {"web-v2": 1}
    assert cluster.endpoint("web-preview") is not None


def test_blue_green_single_step(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(schedule=[[0, 2]], preview_replicas=2)
    cluster = InMemoryClusterClient()
    seed_source(cluster, plan)

    state = RolloutEngine(plan, cluster, store, poll_interval_s=0).run()

    assert state.stage == Stage.COMPLETED
    assert cluster.endpoint_backends("web") == {"web-v2": 2}


def test_pause_at_step_boundary_then_resume(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(gates=[{"name": "hold", "kind": "readiness", "phase": "prepare"}])
    cluster = InMemoryClusterClient()
    seed_source(cluster, plan)
    engine = RolloutEngine(plan, cluster, store, poll_interval_s=0)
    engine._gates["hold"] = CallbackGate("hold", engine.request_pause)

    paused = engine.run()

    assert paused.stage == Stage.SHIFTING
    assert paused.paused is True
    assert paused.applied_step == -1
    assert store.load_snapshot(plan.plan_id).paused is True  # type: ignore[union-attr]

    resumed = RolloutEngine(plan, cluster, store, poll_interval_s=0).run()
    assert resumed.stage == Stage.COMPLETED
    events = [r.event for r in store.history(plan.plan_id)]
    assert events.count("paused") == 1
    assert events.count("resumed") == 1


def test_pause_requested_from_another_process(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(gates=[{"name": "hold", "kind": "readiness", "phase": "prepare"}])
    cluster = InMemoryClusterClient()
    seed_source(cluster, plan)
    hold = CallbackGate("hold", lambda: store.request_control(plan.plan_id, "pause"))

    state = RolloutEngine(plan, cluster, store, gates={"hold": hold}, poll_interval_s=0).run()

    assert state.paused is True
    assert store.read_control(plan.plan_id) is None


def test_manual_approval_gate_passes_once_approved(make_plan, store: AuditStore, seed_source) -> None:
    plan = make_plan(gates=[{"name": "signoff", "kind": "manual_approval", "interval_s": 0.01, "deadline_s": 5}])
    cluster = InMemoryClusterClient()
    seed_source(cluster, plan)
    store.write_approval(
        plan.plan_id,
        "signoff",
        build_approval(plan_id=plan.plan_id, gate="signoff", approver="release-manager"),
    )

    state = RolloutEngine(plan, cluster, store, poll_interval_s=0).run()

    assert state.stage == Stage.COMPLETED
    result = [r.detail for r in store.history(plan.plan_id) if r.event == "gate_result"][0]
    assert result["detail"]["approver"] == "release-manager"
