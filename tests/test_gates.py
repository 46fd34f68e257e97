from __future__ import annotations

import email.message
import threading
import urllib.error
import urllib.request

import pytest

from rolloutkeeper.cluster.memory import InMemoryClusterClient
from rolloutkeeper.errors import GateCancelled, TransientClusterError
from rolloutkeeper.gates import (
    GateContext,
    GateResult,
    ManualApprovalGate,
    ReadinessGate,
    SyntheticTrafficGate,
    VerificationGate,
    Verdict,
    build_gate,
    poll_gate,
)
from rolloutkeeper.gates.synthetic import http_get
from rolloutkeeper.plan.model import GateSpec


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.waits: list[float] = []

    def __call__(self) -> float:
        return self.now

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        self.now += seconds
        return False


class ScriptedGate(VerificationGate):
    def __init__(self, *results: object) -> None:
        self.name = "scripted"
        self.results = list(results)
        self.calls = 0

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result  # type: ignore[return-value]


@pytest.fixture
def context(make_plan) -> GateContext:  # type: ignore[no-untyped-def]
    return GateContext(plan=make_plan(), cluster=InMemoryClusterClient(), phase="verify")


def test_poll_gate_returns_first_verdict(context: GateContext) -> None:
    clock = FakeClock()
    gate = ScriptedGate(GateResult.pending("warming"), GateResult.pending("warming"), GateResult.passed(ok=1))

    result = poll_gate(gate, "web-v2", context, interval_s=2, deadline_s=60, wait=clock.wait, clock=clock)

    assert result.verdict == Verdict.PASS
    assert gate.calls == 3
    assert clock.waits == [2, 2]


def test_poll_gate_deadline_exceeded(context: GateContext) -> None:
    clock = FakeClock()
    gate = ScriptedGate(GateResult.pending("not_ready"))

    result = poll_gate(gate, "web-v2", context, interval_s=3, deadline_s=10, wait=clock.wait, clock=clock)

    assert result.verdict == Verdict.FAIL
    assert result.reason == "deadline_exceeded"
    assert result.detail["last_reason"] == "not_ready"
    assert clock.waits == [3, 3, 3, 1]
    assert gate.calls == 5


def test_poll_gate_treats_transient_errors_as_pending(context: GateContext) -> None:
    clock = FakeClock()
    gate = ScriptedGate(TransientClusterError("apiserver timeout"), GateResult.failed("rejected"))

    result = poll_gate(gate, "web-v2", context, interval_s=1, deadline_s=10, wait=clock.wait, clock=clock)

    assert result.verdict == Verdict.FAIL
    assert result.reason == "rejected"
    assert gate.calls == 2


def test_poll_gate_cancellation(context: GateContext) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(GateCancelled):
        poll_gate(ScriptedGate(GateResult.passed()), "web-v2", context, interval_s=1, deadline_s=10, cancel=cancel)

    gate = ScriptedGate(GateResult.pending())
    with pytest.raises(GateCancelled):
        poll_gate(gate, "web-v2", context, interval_s=1, deadline_s=10, wait=lambda seconds: True)
    assert gate.calls == 1


def _apply(cluster: InMemoryClusterClient, context: GateContext, replicas: int) -> None:
    plan = context.plan
    cluster.apply_workload_group(
        plan.target, namespace=plan.namespace, labels=plan.live_labels(plan.target), replicas=replicas
    )


def test_readiness_gate(context: GateContext) -> None:
    cluster = context.cluster
    gate = ReadinessGate("ready")
    assert gate.evaluate("web-v2", context).reason == "workload_missing"

    _apply(cluster, context, 2)  # type: ignore[arg-type]
    result = gate.evaluate("web-v2", context)
    assert result.verdict == Verdict.PASS
    assert result.detail == {"workload": "web-v2", "ready": 2, "required": 2}

    cluster.unready.add("web-v2")  # type: ignore[attr-defined]
    _apply(cluster, context, 3)  # type: ignore[arg-type]
    pending = gate.evaluate("web-v2", context)
    assert pending.verdict == Verdict.PENDING
    assert pending.reason == "not_ready"


def test_readiness_gate_min_ready_and_workload_override(context: GateContext) -> None:
    _apply(context.cluster, context, 3)  # type: ignore[arg-type]

    assert ReadinessGate("ready", min_ready=4).evaluate("web-v2", context).verdict == Verdict.PENDING
    assert ReadinessGate("ready", min_ready=1).evaluate("web-v2", context).verdict == Verdict.PASS
    assert ReadinessGate("other", workload="web-v1").evaluate("web-v2", context).reason == "workload_missing"


def _fetch_returning(status: int, headers: dict[str, str], calls: list[str] | None = None):  # type: ignore[no-untyped-def]
    def fetch(url: str, timeout_s: float) -> tuple[int, dict[str, str]]:
        if calls is not None:
            calls.append(url)
        return status, headers

    return fetch


def test_synthetic_gate_passes_on_matching_signature(make_plan) -> None:  # type: ignore[no-untyped-def]
    plan = make_plan(preview_endpoint={"name": "web-preview", "selector": {"app": "web", "traffic": "dark"}})
    context = GateContext(plan=plan, cluster=InMemoryClusterClient(), phase="prepare")
    calls: list[str] = []
    gate = SyntheticTrafficGate(
        "smoke",
        url="http://{endpoint}.{namespace}.svc/healthz",
        expect_header="X-App-Version",
        expect_value="2.0",
        fetch=_fetch_returning(200, {"x-app-version": "2.0"}, calls),
    )

    result = gate.evaluate("web-v2", context)

    assert result.verdict == Verdict.PASS
    assert result.detail["samples"] == 3
    assert calls == ["http://web-preview.default.svc/healthz"] * 3


def test_synthetic_gate_failures(context: GateContext) -> None:
    mismatch = SyntheticTrafficGate(
        "smoke",
        url="http://{endpoint}/",
        expect_header="x-app-version",
        expect_value="2.0",
        fetch=_fetch_returning(200, {"x-app-version": "1.0"}),
    ).evaluate("web-v2", context)
    assert mismatch.verdict == Verdict.FAIL
    assert mismatch.reason == "signature_mismatch"
    assert mismatch.detail["url"] == "http://web/"

    status = SyntheticTrafficGate("smoke", url="http://web/", fetch=_fetch_returning(503, {})).evaluate(
        "web-v2", context
    )
    assert status.reason == "unexpected_status"
    assert status.detail["status"] == 503


def test_synthetic_gate_unreachable_is_pending(context: GateContext) -> None:
    def refused(url: str, timeout_s: float) -> tuple[int, dict[str, str]]:
        raise OSError("connection refused")

    result = SyntheticTrafficGate("smoke", url="http://web/", fetch=refused).evaluate("web-v2", context)

    assert result.verdict == Verdict.PENDING
    assert result.reason == "endpoint_unreachable"


def test_http_get_maps_url_errors_to_oserror(monkeypatch: pytest.MonkeyPatch) -> None:
    def unreachable(request, timeout):  # type: ignore[no-untyped-def]
        raise urllib.error.URLError("Name or service not known")

    monkeypatch.setattr(urllib.request, "urlopen", unreachable)

    with pytest.raises(OSError, match="url error"):
        http_get("http://web.invalid/", 1.0)


def test_http_get_returns_http_error_status(monkeypatch: pytest.MonkeyPatch) -> None:
    headers = email.message.Message()
    headers["X-App-Version"] = "2.0"

    def unavailable(request, timeout):  # type: ignore[no-untyped-def]
        raise urllib.error.HTTPError(request.full_url, 503, "Service Unavailable", headers, None)

    monkeypatch.setattr(urllib.request, "urlopen", unavailable)

    assert http_get("http://web/", 1.0) == (503, {"x-app-version": "2.0"})


def test_registry_builds_each_kind(store) -> None:  # type: ignore[no-untyped-def]
    readiness = build_gate(GateSpec("r", "readiness", params={"min_ready": 2}), mailbox=store)
    assert isinstance(readiness, ReadinessGate)
    assert readiness.min_ready == 2

    synthetic = build_gate(
        GateSpec("s", "synthetic_http", params={"url": "http://{endpoint}/", "samples": 5}),
        mailbox=store,
    )
    assert isinstance(synthetic, SyntheticTrafficGate)
    assert synthetic.samples == 5

    approval = build_gate(
        GateSpec("a", "manual_approval", params={"require_signature": True}),
        mailbox=store,
        keyring={"ops": "AAAA"},
    )
    assert isinstance(approval, ManualApprovalGate)
    assert approval.require_signature is True

    with pytest.raises(ValueError, match="unknown gate kind"):
        build_gate(GateSpec("x", "prometheus"), mailbox=store)
