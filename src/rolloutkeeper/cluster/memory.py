from __future__ import annotations

import threading
from dataclasses import dataclass, field

from rolloutkeeper.cluster.client import ClusterClient, WorkloadStatus
from rolloutkeeper.plan.model import RoutingEndpointSpec, WorkloadGroupSpec


@dataclass
class _Group:
    spec: WorkloadGroupSpec
    labels: dict[str, str]
    desired: int
    observed: int = 0
    ready: int = 0
    generation: int = 1
    observed_generation: int = 0
    polls_since_change: int = 0


@dataclass
class InMemoryClusterClient(ClusterClient):
    """Simulated control plane.

    Groups converge after ``converge_after`` status reads following a spec
    change. Names in ``stalled`` never converge; names in ``unready`` scale
    but never report ready pods.
    """

    converge_after: int = 0
    stalled: set[str] = field(default_factory=set)
    unready: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)
    _groups: dict[tuple[str, str], _Group] = field(default_factory=dict)
    _endpoints: dict[tuple[str, str], RoutingEndpointSpec] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def apply_workload_group(
        self,
        spec: WorkloadGroupSpec,
        *,
        namespace: str,
        labels: dict[str, str],
        replicas: int,
    ) -> int:
        with self._lock:
            self.calls.append(("apply_workload_group", spec.name))
            key = (namespace, spec.name)
            group = self._groups.get(key)
            if group is None:
                group = _Group(spec=spec, labels=dict(labels), desired=int(replicas))
                self._groups[key] = group
                return group.generation
            changed = (
                group.spec.image != spec.image
                or group.labels != labels
                or group.desired != int(replicas)
            )
            group.spec = spec
            if changed:
                group.labels = dict(labels)
                group.desired = int(replicas)
                group.generation += 1
                group.polls_since_change = 0
            return group.generation

    def get_workload_group_status(self, name: str, *, namespace: str) -> WorkloadStatus:
        with self._lock:
            self.calls.append(("get_workload_group_status", name))
            group = self._groups.get((namespace, name))
            if group is None:
                return WorkloadStatus(name=name, exists=False)
            self._advance(name, group)
            return WorkloadStatus(
                name=name,
                exists=True,
                desired_replicas=group.desired,
                observed_replicas=group.observed,
                ready_replicas=group.ready,
                generation=group.generation,
                observed_generation=group.observed_generation,
                labels=dict(group.labels),
            )

    def delete_workload_group(self, name: str, *, namespace: str) -> None:
        with self._lock:
            self.calls.append(("delete_workload_group", name))
            self._groups.pop((namespace, name), None)

    def apply_routing_endpoint(self, spec: RoutingEndpointSpec, *, namespace: str) -> None:
        with self._lock:
            self.calls.append(("apply_routing_endpoint", spec.name))
            self._endpoints[(namespace, spec.name)] = spec

    def _advance(self, name: str, group: _Group) -> None:
        if name in self.stalled:
            return
        if group.polls_since_change < self.converge_after:
            group.polls_since_change += 1
            return
        group.observed = group.desired
        group.ready = 0 if name in self.unready else group.desired
        group.observed_generation = group.generation

    # Inspection helpers used by the demo and tests.

    def count_calls(self, operation: str, name: str | None = None) -> int:
        with self._lock:
            return sum(
                1 for op, resource in self.calls if op == operation and (name is None or resource == name)
            )

    def replicas(self, name: str, *, namespace: str = "default") -> int | None:
        with self._lock:
            group = self._groups.get((namespace, name))
            return None if group is None else group.desired

    def labels(self, name: str, *, namespace: str = "default") -> dict[str, str] | None:
        with self._lock:
            group = self._groups.get((namespace, name))
            return None if group is None else dict(group.labels)

    def endpoint(self, name: str, *, namespace: str = "default") -> RoutingEndpointSpec | None:
        with self._lock:
            return self._endpoints.get((namespace, name))

    def endpoint_backends(self, name: str, *, namespace: str = "default") -> dict[str, int]:
        """Replica counts of the workload groups an endpoint currently selects."""
        with self._lock:
            spec = self._endpoints.get((namespace, name))
            if spec is None:
                return {}
            backends: dict[str, int] = {}
            for (ns, group_name), group in sorted(self._groups.items()):
                if ns != namespace or not spec.matches(group.labels):
                    continue
                if group.desired > 0:
                    backends[group_name] = group.desired
            return backends
