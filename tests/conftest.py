# --- test import path bootstrap (src/ layout) ---
import sys as _sys
from pathlib import Path as _Path

_SRC = _Path(__file__).resolve().parents[1] / "src"
if _SRC.is_dir():
    _p = str(_SRC)
    if _p not in _sys.path:
        _sys.path.insert(0, _p)
# --- end bootstrap ---

import copy
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

from rolloutkeeper.audit.store import AuditStore
from rolloutkeeper.cluster.memory import InMemoryClusterClient
from rolloutkeeper.plan.model import RolloutPlan
from rolloutkeeper.plan.validate import plan_from_dict

BASE_PLAN = {
    "plan_id": "web-rollout",
    "namespace": "default",
    "source": {"name": "web-v1", "image": "registry.local/web:1.0", "labels": {"app": "web"}},
    "target": {"name": "web-v2", "image": "registry.local/web:2.0", "labels": {"app": "web"}},
    "endpoint": {"name": "web", "selector": {"app": "web", "traffic": "live"}, "port": 80, "target_port": 8080},
    "schedule": [[2, 0], [1, 1], [0, 2]],
    "gates": [],
    "step_timeout_s": 5,
    "backoff_base_s": 0,
}


def seed_source(cluster: InMemoryClusterClient, plan: RolloutPlan) -> None:
    cluster.apply_routing_endpoint(plan.endpoint, namespace=plan.namespace)
    cluster.apply_workload_group(
        plan.source,
        namespace=plan.namespace,
        labels=plan.live_labels(plan.source),
        replicas=plan.source.replicas,
    )


@pytest.fixture
def plan_payload() -> dict:
    return copy.deepcopy(BASE_PLAN)


@pytest.fixture
def make_plan() -> Callable[..., RolloutPlan]:
    def _make(**overrides: object) -> RolloutPlan:
        payload = copy.deepcopy(BASE_PLAN)
        payload.update(copy.deepcopy(overrides))
        return plan_from_dict(payload, source="test")

    return _make


@pytest.fixture(name="seed_source")
def seed_source_fixture() -> Callable[[InMemoryClusterClient, RolloutPlan], None]:
    return seed_source


@pytest.fixture
def store(tmp_path: Path) -> AuditStore:
    return AuditStore(tmp_path / "state")


@pytest.fixture
def cluster() -> InMemoryClusterClient:
    return InMemoryClusterClient()


@pytest.fixture
def rk_path() -> Path:
    repo_root = Path(__file__).resolve().parents[1]
    local = repo_root / ".venv" / "bin" / "rk"
    if local.exists():
        return local

    # Use a repo-local shim when local venv entrypoint is unavailable.
    shim_dir = Path(tempfile.mkdtemp(prefix="rk-shim-"))
    shim = shim_dir / "rk"
    shim.write_text(
        f"""#!/usr/bin/env bash
set -Eeuo pipefail
export PYTHONPATH=\"{repo_root}/src${{PYTHONPATH:+:${{PYTHONPATH}}}}\"
exec \"{sys.executable}\" -c 'import sys; from rolloutkeeper.cli import main; raise SystemExit(main())' \"$@\"
""",
        encoding="utf-8",
    )
    shim.chmod(0o755)
    return shim


@dataclass
class ScriptedCluster(InMemoryClusterClient):
    """In-memory cluster with scripted errors and post-call hooks."""

    _failures: dict[tuple[str, str], list[BaseException]] = field(default_factory=dict)
    _hooks: list[tuple[str, str, int, Callable[[], None]]] = field(default_factory=list)

    def fail(self, operation: str, name: str, *errors: BaseException) -> None:
        """Raise ``errors`` in order on the next calls to ``operation`` for ``name``."""
        self._failures.setdefault((operation, name), []).extend(errors)

    def after(self, operation: str, name: str, count: int, callback: Callable[[], None]) -> None:
        """Run ``callback`` right after the ``count``-th successful call."""
        self._hooks.append((operation, name, count, callback))

    def _before(self, operation: str, name: str) -> None:
        queue = self._failures.get((operation, name))
        if queue:
            raise queue.pop(0)

    def _after(self, operation: str, name: str) -> None:
        done = self.count_calls(operation, name)
        for op, target, count, callback in list(self._hooks):
            if op == operation and target == name and count == done:
                callback()

    def apply_workload_group(self, spec, *, namespace, labels, replicas):  # type: ignore[no-untyped-def]
        self._before("apply_workload_group", spec.name)
        generation = super().apply_workload_group(spec, namespace=namespace, labels=labels, replicas=replicas)
        self._after("apply_workload_group", spec.name)
        return generation

    def get_workload_group_status(self, name, *, namespace):  # type: ignore[no-untyped-def]
        self._before("get_workload_group_status", name)
        return super().get_workload_group_status(name, namespace=namespace)

    def delete_workload_group(self, name, *, namespace):  # type: ignore[no-untyped-def]
        self._before("delete_workload_group", name)
        super().delete_workload_group(name, namespace=namespace)
        self._after("delete_workload_group", name)


@pytest.fixture
def scripted() -> ScriptedCluster:
    return ScriptedCluster()
