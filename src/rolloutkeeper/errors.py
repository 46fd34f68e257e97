"""Error taxonomy shared by the plan loader, cluster clients and the engine."""

from __future__ import annotations


class RolloutError(Exception):
    """Base class for rollout failures that are recorded in the audit log."""


class ClusterError(RolloutError):
    """A cluster control-plane call failed."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        resource: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.resource = resource
        self.reason = reason


class TransientClusterError(ClusterError):
    """Network or timeout failure; safe to retry with backoff."""


class NotFoundError(ClusterError):
    """The addressed cluster resource does not exist."""


class ConflictError(RolloutError):
    """Concurrent modification detected, or the plan is already being executed."""


class VerificationFailed(RolloutError):
    def __init__(self, gate: str, reason: str | None) -> None:
        super().__init__(f"gate {gate!r} failed: {reason or 'unspecified'}")
        self.gate = gate
        self.reason = reason


class ConvergenceTimeout(RolloutError):
    """Workload groups did not reach their desired replica counts in time."""


class AbortRequested(RolloutError):
    """Raised inside waits when an abort request preempts the current stage."""


class GateCancelled(AbortRequested):
    """Gate polling was cancelled before a verdict was reached."""


class UnknownPlan(RolloutError, LookupError):
    """No plan with this ID was ever submitted to the store."""


class InvalidPlan(ValueError):
    """Raised when a rollout plan fails validation at submission."""


def error_to_dict(exc: BaseException, *, step_index: int | None = None, stage: str | None = None) -> dict:
    text = str(exc).strip() or exc.__class__.__name__
    if len(text) > 500:
        text = text[:497] + "..."
    payload: dict = {
        "type": exc.__class__.__name__,
        "message": text,
        "step_index": step_index,
        "stage": stage,
    }
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason:
        payload["reason"] = reason
    return payload
