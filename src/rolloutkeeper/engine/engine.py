"""Rollout engine: drives a RolloutPlan through its stages against a cluster."""

from __future__ import annotations

import threading
import time
from typing import Callable

from rolloutkeeper.audit.explain import ExplainLog
from rolloutkeeper.audit.store import AuditRecord, AuditStore
from rolloutkeeper.cluster.client import ClusterClient, WorkloadStatus
from rolloutkeeper.core.stages import Stage
from rolloutkeeper.core.state import RolloutState
from rolloutkeeper.core.state_machine import RolloutStateMachine
from rolloutkeeper.engine.retry import call_with_retries
from rolloutkeeper.errors import (
    AbortRequested,
    ConflictError,
    ConvergenceTimeout,
    RolloutError,
    VerificationFailed,
    error_to_dict,
)
from rolloutkeeper.gates.base import GateContext, GateResult, VerificationGate, Verdict, poll_gate
from rolloutkeeper.gates.registry import build_gate
from rolloutkeeper.plan.model import GateSpec, RolloutPlan, WorkloadGroupSpec


class RolloutEngine:
    """Executes one plan, one transition at a time, persisting after each.

    ``run`` continues from the last snapshot in ``store`` and returns when
    the rollout is terminal, paused, FAILED, or stuck in ABORTING after a
    rollback error. Only one engine per plan may run; the store lock enforces
    it across threads and processes.
    """

    def __init__(
        self,
        plan: RolloutPlan,
        cluster: ClusterClient,
        store: AuditStore,
        *,
        gates: dict[str, VerificationGate] | None = None,
        keyring: dict[str, str] | None = None,
        explain: ExplainLog | None = None,
        poll_interval_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.plan = plan
        self.cluster = cluster
        self.store = store
        self.keyring = dict(keyring or {})
        self.explain = explain
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self._gates: dict[str, VerificationGate] = dict(gates or {})
        self._clock = clock
        self._sleep = sleep
        self._abort = threading.Event()
        self._pause = threading.Event()

    # operator requests

    def request_abort(self) -> None:
        self._abort.set()

    def request_pause(self) -> None:
        self._pause.set()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    def state(self) -> RolloutState | None:
        return self.store.load_snapshot(self.plan.plan_id)

    # entry points

    def run(self) -> RolloutState:
        lock = self.store.acquire(self.plan.plan_id)
        try:
            state = self._load_or_create()
            if state.paused:
                state.paused = False
                self._event(state, "resumed")
            return self._drive(state)
        finally:
            self.store.release(lock)

    def resume(self) -> RolloutState:
        """Continue a paused rollout, or retry a FAILED one from the stage it failed in."""
        lock = self.store.acquire(self.plan.plan_id)
        try:
            state = self._load_or_create()
            state.paused = False
            if state.stage == Stage.FAILED and state.failed_stage is not None:
                self._transition(state, state.failed_stage, reason="resume_requested")
                state.last_error = None
                self.store.save_snapshot(state)
            return self._drive(state)
        finally:
            self.store.release(lock)

    def rollback(self, reason: str = "rollback_requested") -> RolloutState:
        lock = self.store.acquire(self.plan.plan_id)
        try:
            state = self._load_or_create()
            return self._rollback(state, reason=reason)
        finally:
            self.store.release(lock)

    # state bookkeeping

    def _load_or_create(self) -> RolloutState:
        plan_id = self.plan.plan_id
        if not self.store.has_plan(plan_id):
            self.store.save_plan(plan_id, self.plan.to_dict())
        state = self.store.load_snapshot(plan_id)
        if state is not None:
            return state
        state = RolloutState(plan_id=plan_id)
        self.store.append(
            AuditRecord(
                plan_id=plan_id,
                from_stage="",
                to_stage=Stage.PENDING.value,
                step_index=-1,
                detail={"event": "submitted"},
            )
        )
        self.store.save_snapshot(state)
        return state

    def _transition(self, state: RolloutState, target: Stage, **detail: object) -> None:
        machine = RolloutStateMachine(state.stage, state.failed_stage)
        from_stage = state.stage
        machine.transition(target)
        state.stage = machine.stage
        state.failed_stage = machine.failed_stage
        self.store.append(
            AuditRecord(
                plan_id=state.plan_id,
                from_stage=from_stage.value,
                to_stage=target.value,
                step_index=state.applied_step,
                detail={"event": "transition", **detail},
            )
        )
        self.store.save_snapshot(state)
        self._emit_explain_best_effort(
            "transition",
            {"plan_id": state.plan_id, "from": from_stage.value, "to": target.value, **detail},
        )

    def _event(self, state: RolloutState, event: str, *, step_index: int | None = None, **detail: object) -> None:
        self.store.append(
            AuditRecord(
                plan_id=state.plan_id,
                from_stage=state.stage.value,
                to_stage=state.stage.value,
                step_index=state.applied_step if step_index is None else step_index,
                detail={"event": event, **detail},
            )
        )
        self.store.save_snapshot(state)
        self._emit_explain_best_effort(event, {"plan_id": state.plan_id, "stage": state.stage.value, **detail})

    def _fail(self, state: RolloutState, exc: Exception) -> None:
        state.last_error = error_to_dict(exc, step_index=state.applied_step, stage=state.stage.value)
        self._transition(state, Stage.FAILED, error=state.last_error)

    def _emit_explain_best_effort(self, event: str, payload: dict) -> None:
        if self.explain is None:
            return
        try:
            self.explain.emit(event, payload)
        except (OSError, TypeError, ValueError):
            return

    # waiting and cluster calls

    def _poll_control(self) -> None:
        action = self.store.read_control(self.plan.plan_id)
        if action is None:
            return
        self.store.clear_control(self.plan.plan_id)
        if action == "abort":
            self._abort.set()
        elif action == "pause":
            self._pause.set()

    def _wait(self, seconds: float, *, cancellable: bool = True) -> bool:
        """Sleep up to ``seconds``; return True if an abort request cut it short."""
        if not cancellable:
            if seconds > 0:
                self._sleep(seconds)
            return False
        self._poll_control()
        if self._abort.is_set():
            return True
        return self._abort.wait(max(0.0, seconds))

    def _mutate(
        self,
        state: RolloutState,
        operation: str,
        resource: str,
        fn: Callable[[], object],
        *,
        step_index: int,
        cancellable: bool = True,
    ) -> object:
        def on_attempt(attempt: int, exc: Exception | None) -> None:
            detail: dict = {
                "event": "apply_attempt",
                "operation": operation,
                "resource": resource,
                "attempt": attempt,
                "ok": exc is None,
            }
            if exc is not None:
                detail["error"] = error_to_dict(exc)
            self.store.append(
                AuditRecord(
                    plan_id=state.plan_id,
                    from_stage=state.stage.value,
                    to_stage=state.stage.value,
                    step_index=step_index,
                    detail=detail,
                )
            )

        return call_with_retries(
            fn,
            attempts=self.plan.max_attempts,
            base_delay_s=self.plan.backoff_base_s,
            wait=lambda seconds: self._wait(seconds, cancellable=cancellable),
            on_attempt=on_attempt,
        )

    def _read_status(self, name: str, *, cancellable: bool = True) -> WorkloadStatus:
        return call_with_retries(
            lambda: self.cluster.get_workload_group_status(name, namespace=self.plan.namespace),
            attempts=self.plan.max_attempts,
            base_delay_s=self.plan.backoff_base_s,
            wait=lambda seconds: self._wait(seconds, cancellable=cancellable),
        )

    def _apply_group(
        self,
        state: RolloutState,
        spec: WorkloadGroupSpec,
        labels: dict[str, str],
        replicas: int,
        *,
        step_index: int,
        check_conflict: bool = True,
        cancellable: bool = True,
    ) -> None:
        recorded = state.generations.get(spec.name)
        if check_conflict and recorded is not None:
            status = self._read_status(spec.name, cancellable=cancellable)
            if not status.exists or status.generation != recorded:
                intent = state.intents.get(spec.name)
                # An apply that landed just before a crash leaves a newer
                # generation carrying exactly the recorded intent.
                if intent is not None and status.matches(intent["labels"], intent["replicas"]):
                    self._event(
                        state,
                        "generation_adopted",
                        step_index=step_index,
                        group=spec.name,
                        recorded=recorded,
                        observed=status.generation,
                    )
                else:
                    raise ConflictError(
                        f"workload group {spec.name!r} was modified outside this rollout "
                        f"(generation {status.generation if status.exists else 'deleted'}, expected {recorded})"
                    )
        state.intents[spec.name] = {"labels": dict(labels), "replicas": int(replicas)}
        self.store.save_snapshot(state)
        generation = self._mutate(
            state,
            "apply_workload_group",
            spec.name,
            lambda: self.cluster.apply_workload_group(
                spec,
                namespace=self.plan.namespace,
                labels=labels,
                replicas=replicas,
            ),
            step_index=step_index,
            cancellable=cancellable,
        )
        state.generations[spec.name] = int(generation)  # type: ignore[arg-type]
        self.store.save_snapshot(state)

    def _wait_until(
        self,
        check: Callable[[], dict],
        *,
        what: str,
        cancellable: bool = True,
    ) -> None:
        """Poll ``check`` (returns still-pending items) until empty or the step timeout."""
        deadline = self._clock() + self.plan.step_timeout_s
        while True:
            pending = check()
            if not pending:
                return
            if self._clock() >= deadline:
                raise ConvergenceTimeout(
                    f"{what} not reached within {self.plan.step_timeout_s:g}s: {sorted(pending)}"
                )
            if self._wait(self.poll_interval_s, cancellable=cancellable):
                raise AbortRequested(f"abort requested while waiting for {what}")

    def _wait_converged(self, expectations: dict[str, int], *, cancellable: bool = True) -> None:
        def check() -> dict:
            pending: dict = {}
            for name, desired in expectations.items():
                status = self._read_status(name, cancellable=cancellable)
                if not status.converged(desired):
                    pending[name] = status.to_dict()
            return pending

        what = ", ".join(f"{name}={replicas}" for name, replicas in sorted(expectations.items()))
        self._wait_until(check, what=f"convergence ({what})", cancellable=cancellable)

    # stage handlers

    def _drive(self, state: RolloutState) -> RolloutState:
        handlers: dict[Stage, Callable[[RolloutState], None]] = {
            Stage.PENDING: self._start,
            Stage.PREPARING: self._prepare,
            Stage.SHIFTING: self._shift_step,
            Stage.VERIFYING: self._verify,
            Stage.FINALIZING: self._finalize,
        }
        while True:
            if state.terminal or state.stage == Stage.FAILED:
                return state
            if state.stage == Stage.ABORTING:
                return self._rollback(state, reason="abort_requested")
            self._poll_control()
            if self._abort.is_set():
                self._transition(state, Stage.ABORTING, reason="abort_requested")
                continue
            if self._pause.is_set():
                self._pause.clear()
                state.paused = True
                self._event(state, "paused")
                return state
            try:
                handlers[state.stage](state)
            except AbortRequested:
                self._transition(state, Stage.ABORTING, reason="abort_requested")
            except VerificationFailed as exc:
                state.last_error = error_to_dict(exc, step_index=state.applied_step, stage=state.stage.value)
                if self.plan.auto_rollback:
                    self._transition(state, Stage.ABORTING, reason="verification_failed", gate=exc.gate)
                else:
                    self._fail(state, exc)
            except RolloutError as exc:
                self._fail(state, exc)

    def _start(self, state: RolloutState) -> None:
        self._transition(state, Stage.PREPARING)

    def _prepare(self, state: RolloutState) -> None:
        plan = self.plan
        if not state.target_live:
            for endpoint in (plan.endpoint, plan.preview_endpoint):
                if endpoint is None:
                    continue
                self._mutate(
                    state,
                    "apply_routing_endpoint",
                    endpoint.name,
                    lambda endpoint=endpoint: self.cluster.apply_routing_endpoint(
                        endpoint, namespace=plan.namespace
                    ),
                    step_index=-1,
                )
            self._apply_group(
                state,
                plan.target,
                plan.dark_labels(plan.target),
                plan.preview_replicas,
                step_index=-1,
            )
            self._event(state, "target_staged", replicas=plan.preview_replicas)
            self._wait_converged({plan.target.name: plan.preview_replicas})
            self._run_gates(state, "prepare")
            first_target = plan.schedule[0][1]
            self._apply_group(
                state,
                plan.target,
                plan.live_labels(plan.target),
                first_target,
                step_index=-1,
            )
            state.target_live = True
            self._event(state, "target_live", replicas=first_target)
        self._transition(state, Stage.SHIFTING)

    def _shift_step(self, state: RolloutState) -> None:
        plan = self.plan
        index = state.confirmed_step + 1
        if index > plan.last_step:
            self._transition(state, Stage.VERIFYING)
            return
        source_replicas, target_replicas = plan.schedule[index]
        if state.applied_step < index:
            previous_target = plan.schedule[index - 1][1] if index > 0 else plan.schedule[0][1]
            updates = [(plan.target, target_replicas), (plan.source, source_replicas)]
            # Grow before shrinking so serving capacity never dips below the total.
            if target_replicas < previous_target:
                updates.reverse()
            for spec, replicas in updates:
                self._apply_group(state, spec, plan.live_labels(spec), replicas, step_index=index)
            state.applied_step = index
            self._event(
                state,
                "step_applied",
                source_replicas=source_replicas,
                target_replicas=target_replicas,
            )
        self._wait_converged({plan.source.name: source_replicas, plan.target.name: target_replicas})
        state.confirmed_step = index
        self._event(
            state,
            "step_confirmed",
            source_replicas=source_replicas,
            target_replicas=target_replicas,
        )
        if index == plan.last_step:
            self._transition(state, Stage.VERIFYING)

    def _verify(self, state: RolloutState) -> None:
        self._run_gates(state, "verify")
        self._transition(state, Stage.FINALIZING)

    def _finalize(self, state: RolloutState) -> None:
        plan = self.plan
        if not state.target_live:
            raise RolloutError("target is not live; refusing to delete the only traffic recipient")
        self._wait_converged({plan.target.name: plan.total_replicas})
        self._mutate(
            state,
            "delete_workload_group",
            plan.source.name,
            lambda: self.cluster.delete_workload_group(plan.source.name, namespace=plan.namespace),
            step_index=state.applied_step,
        )
        state.generations.pop(plan.source.name, None)
        state.intents.pop(plan.source.name, None)
        self._event(state, "source_deleted")

        # Once the source is deleted, aborts are no longer honoured.
        def check() -> dict:
            status = self._read_status(plan.source.name, cancellable=False)
            if not status.exists or status.terminating:
                return {}
            return {plan.source.name: status.to_dict()}

        self._wait_until(check, what=f"deletion of {plan.source.name}", cancellable=False)
        self._transition(state, Stage.COMPLETED)

    def _gate_for(self, spec: GateSpec) -> VerificationGate:
        gate = self._gates.get(spec.name)
        if gate is None:
            gate = build_gate(spec, mailbox=self.store, keyring=self.keyring)
            self._gates[spec.name] = gate
        return gate

    def _run_gates(self, state: RolloutState, phase: str) -> None:
        for spec in self.plan.gates_for(phase):
            context = GateContext(
                plan=self.plan,
                cluster=self.cluster,
                phase=phase,
                step_index=state.confirmed_step,
            )
            self._event(state, "gate_started", gate=spec.name, phase=phase)
            try:
                gate = self._gate_for(spec)
            except (KeyError, TypeError, ValueError) as exc:
                result = GateResult.failed("gate_error", error=f"{type(exc).__name__}: {exc}")
            else:
                result = poll_gate(
                    gate,
                    self.plan.target.name,
                    context,
                    interval_s=spec.interval_s,
                    deadline_s=spec.deadline_s,
                    cancel=self._abort,
                    wait=self._wait,
                    clock=self._clock,
                )
            self._event(state, "gate_result", gate=spec.name, phase=phase, **result.to_dict())
            if result.verdict != Verdict.PASS:
                raise VerificationFailed(spec.name, result.reason)

    # rollback

    def _rollback(self, state: RolloutState, *, reason: str) -> RolloutState:
        """Restore the pre-rollout topology; safe to replay from any partial point."""
        if state.stage == Stage.ROLLED_BACK:
            return state
        if state.stage == Stage.COMPLETED:
            raise RolloutError(f"plan {state.plan_id!r} already completed; it cannot be rolled back")
        if state.stage != Stage.ABORTING:
            self._transition(state, Stage.ABORTING, reason=reason)
        state.paused = False
        plan = self.plan
        reversed_step = state.applied_step
        try:
            # Source first, so the endpoint always selects a live group.
            self._apply_group(
                state,
                plan.source,
                plan.live_labels(plan.source),
                plan.source.replicas,
                step_index=reversed_step,
                check_conflict=False,
                cancellable=False,
            )
            self._wait_converged({plan.source.name: plan.source.replicas}, cancellable=False)
            target_status = self._read_status(plan.target.name, cancellable=False)
            if target_status.exists:
                self._apply_group(
                    state,
                    plan.target,
                    plan.dark_labels(plan.target),
                    0,
                    step_index=reversed_step,
                    check_conflict=False,
                    cancellable=False,
                )
                state.target_live = False
                self._event(state, "target_dark")
                self._wait_converged({plan.target.name: 0}, cancellable=False)
            else:
                state.target_live = False
        except RolloutError as exc:
            state.last_error = error_to_dict(exc, step_index=state.applied_step, stage=state.stage.value)
            self._event(state, "rollback_incomplete", error=state.last_error)
            return state
        state.applied_step = -1
        state.confirmed_step = -1
        self._transition(state, Stage.ROLLED_BACK, reversed_step=reversed_step)
        return state
