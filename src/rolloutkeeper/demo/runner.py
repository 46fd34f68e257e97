from __future__ import annotations

import shutil
from pathlib import Path

from rolloutkeeper.audit.explain import ExplainLog
from rolloutkeeper.audit.store import AuditStore
from rolloutkeeper.cluster.memory import InMemoryClusterClient
from rolloutkeeper.engine.engine import RolloutEngine
from rolloutkeeper.gates.synthetic import SyntheticTrafficGate
from rolloutkeeper.plan.model import RolloutPlan
from rolloutkeeper.plan.validate import plan_from_dict

SCENARIOS = ("canary", "blue-green", "gate-fail")

_SCHEDULES = {
    "canary": [[4, 0], [3, 1], [2, 2], [1, 3], [0, 4]],
    "blue-green": [[3, 0], [0, 3]],
    "gate-fail": [[2, 0], [1, 1], [0, 2]],
}


def demo_plan(scenario: str) -> RolloutPlan:
    if scenario not in _SCHEDULES:
        raise ValueError(f"unknown demo scenario {scenario!r}; expected one of: {', '.join(SCENARIOS)}")
    return plan_from_dict(
        {
            "plan_id": f"demo-{scenario}",
            "namespace": "default",
            "source": {"name": "web-v1", "image": "registry.local/web:1.0", "labels": {"app": "web"}},
            "target": {"name": "web-v2", "image": "registry.local/web:2.0", "labels": {"app": "web"}},
            "endpoint": {"name": "web", "selector": {"app": "web", "traffic": "live"}, "port": 80, "target_port": 8080},
            "preview_endpoint": {
                "name": "web-preview",
                "selector": {"app": "web", "traffic": "dark"},
                "port": 80,
                "target_port": 8080,
            },
            "schedule": _SCHEDULES[scenario],
            "gates": [
                {"name": "target-ready", "kind": "readiness", "phase": "prepare", "interval_s": 0, "deadline_s": 5},
                {
                    "name": "smoke",
                    "kind": "synthetic_http",
                    "phase": "verify",
                    "interval_s": 0,
                    "deadline_s": 5,
                    "params": {
                        "url": "http://{endpoint}.{namespace}.svc/healthz",
                        "expect_header": "x-app-version",
                        "expect_value": "2.0",
                    },
                },
            ],
            "step_timeout_s": 5,
            "backoff_base_s": 0,
        },
        source=f"demo:{scenario}",
    )


def _demo_fetch(version: str):
    def fetch(url: str, timeout_s: float) -> tuple[int, dict[str, str]]:
        return 200, {"x-app-version": version}

    return fetch


def run_demo(scenario: str, out_dir: Path, explain: ExplainLog) -> dict:
    """Run a rollout against a simulated cluster with the source already serving."""
    plan = demo_plan(scenario)
    cluster = InMemoryClusterClient()
    cluster.apply_routing_endpoint(plan.endpoint, namespace=plan.namespace)
    cluster.apply_workload_group(
        plan.source,
        namespace=plan.namespace,
        labels=plan.live_labels(plan.source),
        replicas=plan.source.replicas,
    )
    served_version = "1.0" if scenario == "gate-fail" else "2.0"
    smoke = SyntheticTrafficGate(
        "smoke",
        url="http://{endpoint}.{namespace}.svc/healthz",
        expect_header="x-app-version",
        expect_value="2.0",
        fetch=_demo_fetch(served_version),
    )
    store = AuditStore(out_dir / "state")
    # Demo runs always start from scratch.
    shutil.rmtree(store.plan_dir(plan.plan_id), ignore_errors=True)
    engine = RolloutEngine(
        plan,
        cluster,
        store,
        gates={"smoke": smoke},
        explain=explain,
        poll_interval_s=0.0,
    )
    state = engine.run()
    history = store.history(plan.plan_id)

    explain.emit(
        "demo_summary",
        {"scenario": scenario, "plan_id": plan.plan_id, "stage": state.stage.value},
    )

    return {
        "scenario": scenario,
        "plan_id": plan.plan_id,
        "stage": state.stage.value,
        "applied_step": state.applied_step,
        "confirmed_step": state.confirmed_step,
        "last_error": state.last_error,
        "endpoint_backends": cluster.endpoint_backends(plan.endpoint.name, namespace=plan.namespace),
        "groups": {
            name: {
                "replicas": cluster.replicas(name, namespace=plan.namespace),
                "labels": cluster.labels(name, namespace=plan.namespace),
            }
            for name in (plan.source.name, plan.target.name)
        },
        "transitions": [
            f"{record.from_stage or '-'}->{record.to_stage}"
            for record in history
            if record.event in ("submitted", "transition")
        ],
        "audit_records": len(history),
        "state_dir": str(store.plan_dir(plan.plan_id)),
    }
