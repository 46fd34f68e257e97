"""Map failed kubectl invocations onto the rollout error taxonomy."""

from __future__ import annotations

import re

from rolloutkeeper.errors import (
    ClusterError,
    ConflictError,
    NotFoundError,
    RolloutError,
    TransientClusterError,
)

_FORBIDDEN_PATTERN = re.compile(
    r'User\s+"(?P<user>[^"]+)"\s+cannot\s+(?P<verb>[a-z]+)\s+resource\s+"(?P<resource>[^"]+)"\s+'
    r'in\s+API\s+group\s+"(?P<api_group>[^"]*)"\s+'
    r'(?:(?:in\s+the\s+namespace\s+"(?P<namespace>[^"]+)")|(?:at\s+the\s+cluster\s+scope))',
    re.IGNORECASE,
)

_TRANSIENT_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "(serviceunavailable)",
    "(internalerror)",
    "(timeout)",
    "(toomanyrequests)",
    "etcdserver: request timed out",
)

_CONFLICT_MARKERS = (
    "(conflict)",
    "the object has been modified",
)


def parse_forbidden(text: str) -> dict | None:
    """Extract the denied verb/resource from a kubectl Forbidden error, if any."""
    if not isinstance(text, str):
        return None
    raw = text.strip()
    if "forbidden" not in raw.lower():
        return None
    match = _FORBIDDEN_PATTERN.search(raw)
    if not match:
        return None
    namespace = match.group("namespace")
    verb = match.group("verb").lower()
    resource = match.group("resource")
    api_group = match.group("api_group")
    binding = "RoleBinding" if namespace else "ClusterRoleBinding"
    return {
        "user": match.group("user"),
        "verb": verb,
        "resource": resource,
        "api_group": api_group,
        "namespace": namespace,
        "scope": "namespaced" if namespace else "cluster",
        "hint": (
            f"grant apiGroups=[{api_group!r}], resources=[{resource!r}], verbs=[{verb!r}] "
            f"to user {match.group('user')!r} via a {binding}"
        ),
    }


def _snip(text: str, limit: int = 300) -> str:
    line = " ".join((text or "").split())
    if len(line) > limit:
        return line[: limit - 3] + "..."
    return line


def classify_kubectl_failure(result: dict, *, operation: str, resource: str) -> RolloutError:
    """Return the exception matching a failed ``_run_cmd`` result (never raises)."""
    stderr = str(result.get("stderr") or "")
    lower = stderr.lower()
    rc = result.get("rc")
    detail = _snip(stderr) or f"rc={rc}"
    message = f"{operation} {resource} failed: {detail}"

    if result.get("error") == "not_found":
        return ClusterError(
            f"{operation} {resource} failed: kubectl binary not found",
            operation=operation,
            resource=resource,
            reason="kubectl_missing",
        )
    if result.get("error") == "timeout":
        return TransientClusterError(
            f"{operation} {resource} timed out",
            operation=operation,
            resource=resource,
            reason="timeout",
        )
    if any(marker in lower for marker in _CONFLICT_MARKERS):
        return ConflictError(message)
    if "(notfound)" in lower or "not found" in lower:
        return NotFoundError(message, operation=operation, resource=resource, reason="not_found")
    forbidden = parse_forbidden(stderr)
    if forbidden is not None:
        return ClusterError(
            f"{message} ({forbidden['hint']})",
            operation=operation,
            resource=resource,
            reason="rbac_denied",
        )
    if any(marker in lower for marker in _TRANSIENT_MARKERS):
        return TransientClusterError(message, operation=operation, resource=resource, reason="transient")
    return ClusterError(message, operation=operation, resource=resource, reason="kubectl_failed")
