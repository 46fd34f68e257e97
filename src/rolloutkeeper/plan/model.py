from __future__ import annotations

from dataclasses import dataclass, field

SCHEMA_VERSION = "rollout_plan.v1"

GATE_KINDS = frozenset({"readiness", "synthetic_http", "manual_approval"})
GATE_PHASES = ("prepare", "verify")

DEFAULT_GATE_LABEL_KEY = "traffic"
DEFAULT_DARK_VALUE = "dark"


@dataclass(frozen=True)
class ReadinessCheck:
    path: str = "/"
    port: int | None = None
    initial_delay_s: int = 2
    period_s: int = 2

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "port": self.port,
            "initial_delay_s": self.initial_delay_s,
            "period_s": self.period_s,
        }


@dataclass(frozen=True)
class WorkloadGroupSpec:
    name: str
    image: str
    replicas: int
    container_port: int = 8080
    labels: dict[str, str] = field(default_factory=dict)
    readiness: ReadinessCheck | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "image": self.image,
            "replicas": self.replicas,
            "container_port": self.container_port,
            "labels": dict(sorted(self.labels.items())),
            "readiness": self.readiness.to_dict() if self.readiness is not None else None,
        }


@dataclass(frozen=True)
class RoutingEndpointSpec:
    name: str
    selector: dict[str, str]
    port: int
    target_port: int | None = None

    def matches(self, labels: dict[str, str]) -> bool:
        return all(labels.get(key) == value for key, value in self.selector.items())

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "selector": dict(sorted(self.selector.items())),
            "port": self.port,
            "target_port": self.target_port,
        }


@dataclass(frozen=True)
class GateSpec:
    name: str
    kind: str
    phase: str = "verify"
    interval_s: float = 5.0
    deadline_s: float = 300.0
    params: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "phase": self.phase,
            "interval_s": self.interval_s,
            "deadline_s": self.deadline_s,
            "params": dict(self.params),
        }


@dataclass(frozen=True)
class RolloutPlan:
    """Desired transition from ``source`` to ``target`` behind ``endpoint``.

    ``schedule`` holds ``(source_replicas, target_replicas)`` pairs walked in
    order once the target is live. The endpoint selector is the label subset
    required for traffic eligibility; the target is staged with
    ``gate_label_key`` set to ``dark_value`` so it is excluded until relabeled.
    """

    plan_id: str
    namespace: str
    source: WorkloadGroupSpec
    target: WorkloadGroupSpec
    endpoint: RoutingEndpointSpec
    schedule: tuple[tuple[int, int], ...]
    gates: tuple[GateSpec, ...] = ()
    gate_label_key: str = DEFAULT_GATE_LABEL_KEY
    dark_value: str = DEFAULT_DARK_VALUE
    preview_replicas: int = 1
    preview_endpoint: RoutingEndpointSpec | None = None
    auto_rollback: bool = True
    step_timeout_s: float = 300.0
    max_attempts: int = 3
    backoff_base_s: float = 0.5

    @property
    def total_replicas(self) -> int:
        source_replicas, target_replicas = self.schedule[0]
        return source_replicas + target_replicas

    @property
    def last_step(self) -> int:
        return len(self.schedule) - 1

    def live_labels(self, group: WorkloadGroupSpec) -> dict[str, str]:
        labels = dict(group.labels)
        labels.update(self.endpoint.selector)
        return labels

    def dark_labels(self, group: WorkloadGroupSpec) -> dict[str, str]:
        labels = self.live_labels(group)
        labels[self.gate_label_key] = self.dark_value
        return labels

    def gates_for(self, phase: str) -> list[GateSpec]:
        return [gate for gate in self.gates if gate.phase == phase]

    def to_dict(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "plan_id": self.plan_id,
            "namespace": self.namespace,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "endpoint": self.endpoint.to_dict(),
            "schedule": [[s, t] for s, t in self.schedule],
            "gates": [gate.to_dict() for gate in self.gates],
            "gate_label_key": self.gate_label_key,
            "dark_value": self.dark_value,
            "preview_replicas": self.preview_replicas,
            "preview_endpoint": (
                self.preview_endpoint.to_dict() if self.preview_endpoint is not None else None
            ),
            "auto_rollback": self.auto_rollback,
            "step_timeout_s": self.step_timeout_s,
            "max_attempts": self.max_attempts,
            "backoff_base_s": self.backoff_base_s,
        }
