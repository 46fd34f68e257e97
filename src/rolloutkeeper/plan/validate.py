from __future__ import annotations

import json
import re
from pathlib import Path

from rolloutkeeper.errors import InvalidPlan
from rolloutkeeper.plan.model import (
    DEFAULT_DARK_VALUE,
    DEFAULT_GATE_LABEL_KEY,
    GATE_KINDS,
    GATE_PHASES,
    SCHEMA_VERSION,
    GateSpec,
    ReadinessCheck,
    RolloutPlan,
    RoutingEndpointSpec,
    WorkloadGroupSpec,
)

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _expect_dict(value: object, *, path: str) -> dict:
    if not isinstance(value, dict):
        raise InvalidPlan(f"{path} must be an object")
    return value


def _expect_name(value: object, *, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidPlan(f"{path} must be a non-empty string")
    if len(value) > 63 or not _DNS_LABEL.match(value):
        raise InvalidPlan(f"{path} must be a DNS-1123 label (got {value!r})")
    return value


def _expect_int(value: object, *, path: str, minimum: int = 0) -> int:
    if not _is_int(value) or value < minimum:
        raise InvalidPlan(f"{path} must be int >= {minimum}")
    return value


def _expect_number(value: object, *, path: str, positive: bool = False) -> float:
    if not _is_number(value) or value < 0 or (positive and value == 0):
        bound = "> 0" if positive else ">= 0"
        raise InvalidPlan(f"{path} must be a number {bound}")
    return float(value)


def _expect_labels(value: object, *, path: str) -> dict[str, str]:
    if value is None:
        return {}
    labels = _expect_dict(value, path=path)
    normalized: dict[str, str] = {}
    for key, item in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidPlan(f"{path} keys must be non-empty strings")
        if not isinstance(item, str) or not item.strip():
            raise InvalidPlan(f"{path}.{key} must be a non-empty string")
        normalized[key] = item
    return normalized


def _parse_readiness(value: object, *, path: str) -> ReadinessCheck | None:
    if value is None:
        return None
    raw = _expect_dict(value, path=path)
    probe_path = raw.get("path", "/")
    if not isinstance(probe_path, str) or not probe_path.startswith("/"):
        raise InvalidPlan(f"{path}.path must be an absolute HTTP path")
    port = raw.get("port")
    if port is not None:
        port = _expect_int(port, path=f"{path}.port", minimum=1)
    return ReadinessCheck(
        path=probe_path,
        port=port,
        initial_delay_s=_expect_int(raw.get("initial_delay_s", 2), path=f"{path}.initial_delay_s"),
        period_s=_expect_int(raw.get("period_s", 2), path=f"{path}.period_s", minimum=1),
    )


def _parse_workload(value: object, *, path: str, default_replicas: int | None = None) -> WorkloadGroupSpec:
    raw = _expect_dict(value, path=path)
    image = raw.get("image")
    if not isinstance(image, str) or not image.strip():
        raise InvalidPlan(f"{path}.image must be a non-empty string")
    replicas = raw.get("replicas", default_replicas)
    return WorkloadGroupSpec(
        name=_expect_name(raw.get("name"), path=f"{path}.name"),
        image=image,
        replicas=_expect_int(replicas, path=f"{path}.replicas"),
        container_port=_expect_int(raw.get("container_port", 8080), path=f"{path}.container_port", minimum=1),
        labels=_expect_labels(raw.get("labels"), path=f"{path}.labels"),
        readiness=_parse_readiness(raw.get("readiness"), path=f"{path}.readiness"),
    )


def _parse_endpoint(value: object, *, path: str) -> RoutingEndpointSpec:
    raw = _expect_dict(value, path=path)
    selector = _expect_labels(raw.get("selector"), path=f"{path}.selector")
    if not selector:
        raise InvalidPlan(f"{path}.selector must not be empty")
    target_port = raw.get("target_port")
    if target_port is not None:
        target_port = _expect_int(target_port, path=f"{path}.target_port", minimum=1)
    return RoutingEndpointSpec(
        name=_expect_name(raw.get("name"), path=f"{path}.name"),
        selector=selector,
        port=_expect_int(raw.get("port", 80), path=f"{path}.port", minimum=1),
        target_port=target_port,
    )


def _parse_schedule(value: object) -> tuple[tuple[int, int], ...]:
    if not isinstance(value, list) or not value:
        raise InvalidPlan("schedule must be a non-empty array of [source_replicas, target_replicas] pairs")
    steps: list[tuple[int, int]] = []
    for idx, item in enumerate(value):
        if isinstance(item, dict):
            pair = [item.get("source"), item.get("target")]
        else:
            pair = item
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise InvalidPlan(f"schedule[{idx}] must be a [source_replicas, target_replicas] pair")
        source_replicas = _expect_int(pair[0], path=f"schedule[{idx}].source")
        target_replicas = _expect_int(pair[1], path=f"schedule[{idx}].target")
        steps.append((source_replicas, target_replicas))
    return tuple(steps)


def _parse_gates(value: object) -> tuple[GateSpec, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise InvalidPlan("gates must be an array")
    gates: list[GateSpec] = []
    for idx, item in enumerate(value):
        path = f"gates[{idx}]"
        raw = _expect_dict(item, path=path)
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise InvalidPlan(f"{path}.name must be a non-empty string")
        params = raw.get("params", {})
        gates.append(
            GateSpec(
                name=name,
                kind=str(raw.get("kind", "")),
                phase=str(raw.get("phase", "verify")),
                interval_s=_expect_number(raw.get("interval_s", 5.0), path=f"{path}.interval_s"),
                deadline_s=_expect_number(raw.get("deadline_s", 300.0), path=f"{path}.deadline_s", positive=True),
                params=dict(_expect_dict(params, path=f"{path}.params")),
            )
        )
    return tuple(gates)


def plan_from_dict(payload: dict[str, object], *, source: str = "plan") -> RolloutPlan:
    """Build a validated :class:`RolloutPlan` from its JSON form."""
    if not isinstance(payload, dict):
        raise InvalidPlan(f"{source}: top-level JSON must be an object")
    schema_version = payload.get("schema_version", SCHEMA_VERSION)
    if schema_version != SCHEMA_VERSION:
        raise InvalidPlan(f"{source}: schema_version must be {SCHEMA_VERSION!r}")

    try:
        schedule = _parse_schedule(payload.get("schedule"))
        total = sum(schedule[0])
        preview_endpoint = payload.get("preview_endpoint")
        auto_rollback = payload.get("auto_rollback", True)
        if not isinstance(auto_rollback, bool):
            raise InvalidPlan("auto_rollback must be a boolean")
        gate_label_key = payload.get("gate_label_key", DEFAULT_GATE_LABEL_KEY)
        dark_value = payload.get("dark_value", DEFAULT_DARK_VALUE)
        if not isinstance(gate_label_key, str) or not gate_label_key.strip():
            raise InvalidPlan("gate_label_key must be a non-empty string")
        if not isinstance(dark_value, str) or not dark_value.strip():
            raise InvalidPlan("dark_value must be a non-empty string")
        plan = RolloutPlan(
            plan_id=_expect_name(payload.get("plan_id"), path="plan_id"),
            namespace=_expect_name(payload.get("namespace", "default"), path="namespace"),
            source=_parse_workload(payload.get("source"), path="source", default_replicas=total),
            target=_parse_workload(payload.get("target"), path="target", default_replicas=total),
            endpoint=_parse_endpoint(payload.get("endpoint"), path="endpoint"),
            schedule=schedule,
            gates=_parse_gates(payload.get("gates")),
            gate_label_key=gate_label_key,
            dark_value=dark_value,
            preview_replicas=_expect_int(payload.get("preview_replicas", 1), path="preview_replicas"),
            preview_endpoint=(
                _parse_endpoint(preview_endpoint, path="preview_endpoint")
                if preview_endpoint is not None
                else None
            ),
            auto_rollback=auto_rollback,
            step_timeout_s=_expect_number(payload.get("step_timeout_s", 300.0), path="step_timeout_s", positive=True),
            max_attempts=_expect_int(payload.get("max_attempts", 3), path="max_attempts", minimum=1),
            backoff_base_s=_expect_number(payload.get("backoff_base_s", 0.5), path="backoff_base_s"),
        )
    except InvalidPlan as exc:
        raise InvalidPlan(f"{source}: {exc}") from None
    validate_plan(plan, source=source)
    return plan


_URL_FIELDS = {"namespace": "default", "target": "target", "endpoint": "endpoint"}


def _gate_params_problem(gate: GateSpec) -> str | None:
    """Describe the first gate parameter the gate registry could not use."""
    params = gate.params
    if gate.kind == "readiness":
        workload = params.get("workload")
        if workload is not None and not isinstance(workload, str):
            return "workload must be a string"
        min_ready = params.get("min_ready")
        if min_ready is not None and (not _is_int(min_ready) or min_ready < 0):
            return "min_ready must be int >= 0"
    elif gate.kind == "synthetic_http":
        url = params.get("url")
        if not isinstance(url, str) or not url.strip():
            return "url is required for synthetic_http"
        try:
            url.format(**_URL_FIELDS)
        except (KeyError, IndexError, ValueError) as exc:
            allowed = ", ".join("{" + key + "}" for key in _URL_FIELDS)
            return f"url has an invalid placeholder ({exc}); allowed: {allowed}"
        status = params.get("expect_status", 200)
        if not _is_int(status) or not 100 <= status <= 599:
            return "expect_status must be an HTTP status code"
        samples = params.get("samples", 3)
        if not _is_int(samples) or samples < 1:
            return "samples must be int >= 1"
        timeout_s = params.get("timeout_s", 5.0)
        if not _is_number(timeout_s) or timeout_s <= 0:
            return "timeout_s must be a number > 0"
        for key in ("expect_header", "expect_value"):
            if params.get(key) is not None and not isinstance(params[key], str):
                return f"{key} must be a string"
    elif gate.kind == "manual_approval":
        if not isinstance(params.get("require_signature", False), bool):
            return "require_signature must be a boolean"
    return None

def validate_plan(plan: RolloutPlan, *, source: str = "plan") -> RolloutPlan:
    """Check cross-field invariants; raise :class:`InvalidPlan` on the first violation."""

    def fail(message: str) -> InvalidPlan:
        return InvalidPlan(f"{source}: {message}")

    if plan.source.name == plan.target.name:
        raise fail("source.name and target.name must differ")

    if not plan.schedule:
        raise fail("schedule must not be empty")
    total = sum(plan.schedule[0])
    if total <= 0:
        raise fail("schedule total replicas must be > 0")
    for idx, (source_replicas, target_replicas) in enumerate(plan.schedule):
        if source_replicas < 0 or target_replicas < 0:
            raise fail(f"schedule[{idx}] replica counts must be >= 0")
        if source_replicas + target_replicas != total:
            raise fail(
                f"schedule[{idx}] sums to {source_replicas + target_replicas}, "
                f"expected constant total {total}"
            )
    if plan.schedule[-1][0] != 0:
        raise fail("final schedule step must leave source at 0 replicas")
    if plan.source.replicas != total:
        raise fail(f"source.replicas ({plan.source.replicas}) must equal schedule total ({total})")
    if plan.target.replicas != total:
        raise fail(f"target.replicas ({plan.target.replicas}) must equal schedule total ({total})")

    selector = plan.endpoint.selector
    if plan.gate_label_key not in selector:
        raise fail(f"endpoint.selector must contain gate_label_key {plan.gate_label_key!r}")
    if selector[plan.gate_label_key] == plan.dark_value:
        raise fail("dark_value must differ from the endpoint selector value")
    for side, group in (("source", plan.source), ("target", plan.target)):
        for key, value in group.labels.items():
            if key in selector and selector[key] != value:
                raise fail(f"{side}.labels.{key} conflicts with endpoint.selector")

    if plan.preview_endpoint is not None:
        if plan.preview_endpoint.name == plan.endpoint.name:
            raise fail("preview_endpoint.name must differ from endpoint.name")
        if not plan.preview_endpoint.matches(plan.dark_labels(plan.target)):
            raise fail("preview_endpoint.selector must match the dark-labeled target")
        if plan.preview_endpoint.matches(plan.live_labels(plan.source)):
            raise fail("preview_endpoint.selector must not match the live source")

    seen: set[str] = set()
    for idx, gate in enumerate(plan.gates):
        if gate.name in seen:
            raise fail(f"gates[{idx}].name {gate.name!r} is duplicated")
        seen.add(gate.name)
        if gate.kind not in GATE_KINDS:
            allowed = ", ".join(sorted(GATE_KINDS))
            raise fail(f"gates[{idx}].kind {gate.kind!r} is unknown; expected one of: {allowed}")
        if gate.phase not in GATE_PHASES:
            raise fail(f"gates[{idx}].phase must be one of: {', '.join(GATE_PHASES)}")
        problem = _gate_params_problem(gate)
        if problem is not None:
            raise fail(f"gates[{idx}].params.{problem}")
    return plan


def load_plan(path: Path) -> RolloutPlan:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise InvalidPlan(f"plan file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise InvalidPlan(f"invalid JSON in {path}: {exc}") from exc
    return plan_from_dict(payload, source=str(path))
