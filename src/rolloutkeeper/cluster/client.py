from __future__ import annotations

from dataclasses import dataclass, field

from rolloutkeeper.plan.model import RoutingEndpointSpec, WorkloadGroupSpec


@dataclass
class WorkloadStatus:
    name: str
    exists: bool
    desired_replicas: int = 0
    observed_replicas: int = 0
    ready_replicas: int = 0
    generation: int = 0
    observed_generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    # Selector labels the control plane merges into ``labels``.
    selector: dict[str, str] = field(default_factory=dict)
    terminating: bool = False

    def matches(self, labels: dict[str, str], replicas: int) -> bool:
        """True when the live spec is exactly ``labels`` at ``replicas``."""
        if not self.exists:
            return False
        return self.desired_replicas == int(replicas) and self.labels == {**labels, **self.selector}

    def converged(self, desired: int) -> bool:
        if not self.exists:
            return desired == 0
        return (
            self.observed_generation >= self.generation
            and self.desired_replicas == desired
            and self.observed_replicas == desired
            and self.ready_replicas >= desired
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "exists": self.exists,
            "desired_replicas": self.desired_replicas,
            "observed_replicas": self.observed_replicas,
            "ready_replicas": self.ready_replicas,
            "generation": self.generation,
            "observed_generation": self.observed_generation,
            "labels": dict(sorted(self.labels.items())),
            "terminating": self.terminating,
        }


class ClusterClient:
    """Control-plane operations the engine needs. Implementations must be thread-safe."""

    def apply_workload_group(
        self,
        spec: WorkloadGroupSpec,
        *,
        namespace: str,
        labels: dict[str, str],
        replicas: int,
    ) -> int:
        """Create or update a workload group; return its resulting generation."""
        raise NotImplementedError

    def get_workload_group_status(self, name: str, *, namespace: str) -> WorkloadStatus:
        raise NotImplementedError

    def delete_workload_group(self, name: str, *, namespace: str) -> None:
        """Delete a workload group. A missing group counts as success."""
        raise NotImplementedError

    def apply_routing_endpoint(self, spec: RoutingEndpointSpec, *, namespace: str) -> None:
        raise NotImplementedError
