from __future__ import annotations

import json
import os
import subprocess

from rolloutkeeper.cluster.client import ClusterClient, WorkloadStatus
from rolloutkeeper.cluster.diagnostics import classify_kubectl_failure
from rolloutkeeper.errors import ClusterError, NotFoundError
from rolloutkeeper.plan.model import RoutingEndpointSpec, WorkloadGroupSpec

GROUP_LABEL = "rolloutkeeper.io/group"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "rolloutkeeper"


def _run_cmd(argv: list[str], timeout_s: float = 20.0, input_text: str | None = None) -> dict:
    """Run command capturing stdout/stderr. Never raises; returns a dict."""
    try:
        cp = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout_s,
            input=input_text,
        )
        return {
            "argv": argv,
            "ok": cp.returncode == 0,
            "rc": cp.returncode,
            "stdout": cp.stdout,
            "stderr": cp.stderr,
            "error": None,
        }
    except FileNotFoundError as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 127,
            "stdout": "",
            "stderr": str(e),
            "error": "not_found",
        }
    except subprocess.TimeoutExpired as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 124,
            "stdout": e.stdout or "",
            "stderr": e.stderr or "",
            "error": "timeout",
        }


def render_workload_group(
    spec: WorkloadGroupSpec,
    *,
    namespace: str,
    labels: dict[str, str],
    replicas: int,
    match_labels: dict[str, str] | None = None,
) -> dict:
    """Render the Deployment manifest for a workload group.

    ``match_labels`` overrides the selector when the Deployment already
    exists, since a Deployment selector is immutable.
    """
    selector = dict(match_labels) if match_labels else {GROUP_LABEL: spec.name}
    pod_labels = dict(labels)
    pod_labels.update(selector)
    container: dict = {
        "name": "app",
        "image": spec.image,
        "ports": [{"containerPort": spec.container_port}],
    }
    if spec.readiness is not None:
        container["readinessProbe"] = {
            "httpGet": {
                "path": spec.readiness.path,
                "port": spec.readiness.port or spec.container_port,
            },
            "initialDelaySeconds": spec.readiness.initial_delay_s,
            "periodSeconds": spec.readiness.period_s,
        }
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": spec.name,
            "namespace": namespace,
            "labels": {GROUP_LABEL: spec.name, MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
        "spec": {
            "replicas": int(replicas),
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": dict(sorted(pod_labels.items()))},
                "spec": {"containers": [container]},
            },
        },
    }


def render_routing_endpoint(spec: RoutingEndpointSpec, *, namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": spec.name,
            "namespace": namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
        "spec": {
            "selector": dict(sorted(spec.selector.items())),
            "ports": [
                {
                    "port": spec.port,
                    "targetPort": spec.target_port or spec.port,
                }
            ],
        },
    }


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    return default


def parse_deployment_status(name: str, payload: dict) -> WorkloadStatus:
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    spec = payload.get("spec") if isinstance(payload.get("spec"), dict) else {}
    status = payload.get("status") if isinstance(payload.get("status"), dict) else {}
    template = spec.get("template") if isinstance(spec.get("template"), dict) else {}
    template_meta = template.get("metadata") if isinstance(template.get("metadata"), dict) else {}
    labels = template_meta.get("labels") if isinstance(template_meta.get("labels"), dict) else {}
    selector = spec.get("selector") if isinstance(spec.get("selector"), dict) else {}
    match_labels = selector.get("matchLabels") if isinstance(selector.get("matchLabels"), dict) else {}
    desired = _as_int(spec.get("replicas"), default=1)
    # Ready pods of an older template do not satisfy the current spec.
    ready = min(_as_int(status.get("readyReplicas")), _as_int(status.get("updatedReplicas")))
    return WorkloadStatus(
        name=name,
        exists=True,
        desired_replicas=desired,
        observed_replicas=_as_int(status.get("replicas")),
        ready_replicas=ready,
        generation=_as_int(metadata.get("generation")),
        observed_generation=_as_int(status.get("observedGeneration")),
        labels={str(k): str(v) for k, v in labels.items()},
        selector={str(k): str(v) for k, v in match_labels.items()},
        terminating=bool(metadata.get("deletionTimestamp")),
    )


class KubectlClusterClient(ClusterClient):
    """Cluster client that shells out to ``kubectl``.

    Each call is an independent subprocess, so the client is safe to share
    between engines running on different threads.
    """

    def __init__(
        self,
        kubectl: str | None = None,
        *,
        context: str | None = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.kubectl = kubectl or os.environ.get("KUBECTL", "kubectl")
        self.context = context
        self.timeout_s = timeout_s

    def _kubectl(self, args: list[str], input_text: str | None = None) -> dict:
        argv = [self.kubectl]
        if self.context:
            argv += ["--context", self.context]
        return _run_cmd([*argv, *args], timeout_s=self.timeout_s, input_text=input_text)

    def _get_json(self, kind: str, name: str, *, namespace: str) -> dict | None:
        result = self._kubectl(["-n", namespace, "get", kind, name, "-o", "json"])
        if not result["ok"]:
            exc = classify_kubectl_failure(result, operation="get", resource=f"{kind}/{name}")
            if isinstance(exc, NotFoundError):
                return None
            raise exc
        try:
            payload = json.loads(result["stdout"] or "{}")
        except json.JSONDecodeError as exc:
            raise ClusterError(
                f"get {kind}/{name} returned invalid JSON: {exc}",
                operation="get",
                resource=f"{kind}/{name}",
                reason="invalid_json",
            ) from exc
        if not isinstance(payload, dict):
            raise ClusterError(f"get {kind}/{name} returned a non-object payload", reason="invalid_json")
        return payload

    def _apply(self, manifest: dict, *, resource: str) -> dict:
        result = self._kubectl(["apply", "-f", "-", "-o", "json"], input_text=json.dumps(manifest))
        if not result["ok"]:
            raise classify_kubectl_failure(result, operation="apply", resource=resource)
        try:
            payload = json.loads(result["stdout"] or "{}")
        except json.JSONDecodeError:
            payload = {}
        return payload if isinstance(payload, dict) else {}

    def apply_workload_group(
        self,
        spec: WorkloadGroupSpec,
        *,
        namespace: str,
        labels: dict[str, str],
        replicas: int,
    ) -> int:
        existing = self._get_json("deployment", spec.name, namespace=namespace)
        match_labels = None
        if existing is not None:
            selector = existing.get("spec", {}).get("selector", {})
            if isinstance(selector, dict) and isinstance(selector.get("matchLabels"), dict):
                match_labels = selector["matchLabels"]
        manifest = render_workload_group(
            spec,
            namespace=namespace,
            labels=labels,
            replicas=replicas,
            match_labels=match_labels,
        )
        applied = self._apply(manifest, resource=f"deployment/{spec.name}")
        generation = _as_int(applied.get("metadata", {}).get("generation"))
        if generation:
            return generation
        status = self.get_workload_group_status(spec.name, namespace=namespace)
        return status.generation

    def get_workload_group_status(self, name: str, *, namespace: str) -> WorkloadStatus:
        payload = self._get_json("deployment", name, namespace=namespace)
        if payload is None:
            return WorkloadStatus(name=name, exists=False)
        return parse_deployment_status(name, payload)

    def delete_workload_group(self, name: str, *, namespace: str) -> None:
        result = self._kubectl(
            ["-n", namespace, "delete", "deployment", name, "--ignore-not-found=true", "--wait=false"]
        )
        if not result["ok"]:
            exc = classify_kubectl_failure(result, operation="delete", resource=f"deployment/{name}")
            if isinstance(exc, NotFoundError):
                return
            raise exc

    def apply_routing_endpoint(self, spec: RoutingEndpointSpec, *, namespace: str) -> None:
        self._apply(
            render_routing_endpoint(spec, namespace=namespace),
            resource=f"service/{spec.name}",
        )
