from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from rolloutkeeper.cluster.client import ClusterClient
from rolloutkeeper.errors import GateCancelled, TransientClusterError
from rolloutkeeper.plan.model import RolloutPlan


class Verdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    PENDING = "PENDING"


@dataclass(frozen=True)
class GateResult:
    verdict: Verdict
    reason: str | None = None
    detail: dict = field(default_factory=dict)

    @classmethod
    def passed(cls, **detail: object) -> "GateResult":
        return cls(Verdict.PASS, None, dict(detail))

    @classmethod
    def failed(cls, reason: str, **detail: object) -> "GateResult":
        return cls(Verdict.FAIL, reason, dict(detail))

    @classmethod
    def pending(cls, reason: str | None = None, **detail: object) -> "GateResult":
        return cls(Verdict.PENDING, reason, dict(detail))

    def to_dict(self) -> dict:
        return {"verdict": self.verdict.value, "reason": self.reason, "detail": self.detail}


@dataclass
class GateContext:
    plan: RolloutPlan
    cluster: ClusterClient
    phase: str
    step_index: int = -1


class VerificationGate:
    name: str = "gate"

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        raise NotImplementedError


def poll_gate(
    gate: VerificationGate,
    target: str,
    context: GateContext,
    *,
    interval_s: float,
    deadline_s: float,
    cancel: threading.Event | None = None,
    wait: Callable[[float], bool] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> GateResult:
    """Evaluate ``gate`` until it leaves PENDING or ``deadline_s`` elapses.

    ``wait(seconds)`` sleeps between evaluations and returns True when the
    poll should be cancelled; it defaults to ``cancel.wait``. Exceeding the
    deadline yields FAIL ``deadline_exceeded``; cancellation raises
    :class:`GateCancelled`.
    A gate that raises on malformed parameters yields FAIL ``gate_error``.
    """
    if wait is None:
        event = cancel if cancel is not None else threading.Event()
        wait = event.wait
    deadline = clock() + max(0.0, float(deadline_s))
    while True:
        if cancel is not None and cancel.is_set():
            raise GateCancelled(f"gate {gate.name!r} cancelled")
        try:
            result = gate.evaluate(target, context)
        except TransientClusterError as exc:
            result = GateResult.pending("cluster_unavailable", error=str(exc))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            return GateResult.failed("gate_error", error=f"{type(exc).__name__}: {exc}")
        if result.verdict != Verdict.PENDING:
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            return GateResult.failed(
                "deadline_exceeded",
                last_reason=result.reason,
                deadline_s=deadline_s,
            )
        if wait(min(max(0.0, float(interval_s)), remaining)):
            raise GateCancelled(f"gate {gate.name!r} cancelled")
