"""Operator surface: submit plans and steer running rollouts."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Callable

from rolloutkeeper.audit.explain import ExplainLog
from rolloutkeeper.audit.store import AuditRecord, AuditStore
from rolloutkeeper.cluster.client import ClusterClient
from rolloutkeeper.core.stages import Stage
from rolloutkeeper.core.state import RolloutState
from rolloutkeeper.engine.engine import RolloutEngine
from rolloutkeeper.errors import ConflictError, UnknownPlan
from rolloutkeeper.gates.base import VerificationGate
from rolloutkeeper.gates.signing import build_approval, load_private_key, sign_approval
from rolloutkeeper.plan.model import RolloutPlan
from rolloutkeeper.plan.validate import plan_from_dict


def _canonical(payload: dict | None) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class RolloutController:
    """Runs one :class:`RolloutEngine` per plan, each on its own worker thread.

    Distinct plans proceed concurrently and share only the cluster client.
    Requests against a plan driven by another process go through the store's
    control mailbox.
    """

    def __init__(
        self,
        store: AuditStore,
        cluster: ClusterClient,
        *,
        keyring: dict[str, str] | None = None,
        explain: ExplainLog | None = None,
        poll_interval_s: float = 2.0,
        gates: dict[str, VerificationGate] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.cluster = cluster
        self.keyring = dict(keyring or {})
        self.explain = explain
        self.poll_interval_s = poll_interval_s
        self.gates = dict(gates or {})
        self._clock = clock
        self._sleep = sleep
        self._mutex = threading.Lock()
        self._engines: dict[str, RolloutEngine] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._errors: dict[str, BaseException] = {}

    def _new_engine(self, plan: RolloutPlan) -> RolloutEngine:
        return RolloutEngine(
            plan,
            self.cluster,
            self.store,
            gates=self.gates,
            keyring=self.keyring,
            explain=self.explain,
            poll_interval_s=self.poll_interval_s,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _check_idle(self, plan_id: str) -> None:
        if plan_id in self._engines or self.store.is_locked(plan_id):
            raise ConflictError(f"plan {plan_id!r} is already running")

    def _load_plan(self, plan_id: str) -> RolloutPlan:
        payload = self.store.load_plan_payload(plan_id)
        if payload is None:
            raise UnknownPlan(f"unknown plan: {plan_id}")
        return plan_from_dict(payload, source=str(self.store.plan_dir(plan_id) / "plan.json"))

    def _run_action(self, plan_id: str, action: Callable[[], RolloutState]) -> None:
        state = action()
        with self._mutex:
            engine = self._engines.get(plan_id)
            # An abort that reached the engine after it stopped driving still rolls back.
            honoured = state.terminal or state.stage == Stage.ABORTING
            if engine is None or honoured or not engine.abort_requested:
                self._engines.pop(plan_id, None)
                return
        engine.rollback("abort_requested")

    def _worker(self, plan_id: str, action: Callable[[], RolloutState]) -> None:
        try:
            self._run_action(plan_id, action)
        except Exception as exc:  # re-raised from wait()
            with self._mutex:
                self._errors[plan_id] = exc
        finally:
            with self._mutex:
                self._engines.pop(plan_id, None)

    def _register(self, plan_id: str, engine: RolloutEngine) -> None:
        # Caller holds _mutex.
        self._engines[plan_id] = engine
        self._errors.pop(plan_id, None)

    def _start(self, plan_id: str, action: Callable[[], RolloutState], *, wait: bool) -> str:
        if wait:
            try:
                self._run_action(plan_id, action)
            finally:
                with self._mutex:
                    self._engines.pop(plan_id, None)
            return plan_id
        thread = threading.Thread(
            target=self._worker,
            args=(plan_id, action),
            name=f"rollout-{plan_id}",
            daemon=True,
        )
        with self._mutex:
            self._threads[plan_id] = thread
        thread.start()
        return plan_id

    # operations

    def submit(self, plan: RolloutPlan, *, wait: bool = False) -> str:
        """Start executing ``plan`` and return its ID.

        Re-submitting the same plan ID continues an interrupted rollout when
        the plan is identical; a different plan under a used ID, a running
        plan or a finished one raises :class:`ConflictError`.
        """
        plan_id = plan.plan_id
        with self._mutex:
            self._check_idle(plan_id)
            snapshot = self.store.load_snapshot(plan_id)
            if snapshot is not None:
                if _canonical(self.store.load_plan_payload(plan_id)) != _canonical(plan.to_dict()):
                    raise ConflictError(f"plan id {plan_id!r} was already submitted with a different plan")
                if snapshot.terminal:
                    raise ConflictError(f"plan {plan_id!r} already finished in {snapshot.stage.value}")
            engine = self._new_engine(plan)
            self._register(plan_id, engine)
        return self._start(plan_id, engine.run, wait=wait)

    def status(self, plan_id: str) -> RolloutState:
        state = self.store.load_snapshot(plan_id)
        if state is None:
            raise UnknownPlan(f"unknown plan: {plan_id}")
        return state

    def history(self, plan_id: str) -> list[AuditRecord]:
        if not self.store.has_plan(plan_id):
            raise UnknownPlan(f"unknown plan: {plan_id}")
        return self.store.history(plan_id)

    def list_plans(self) -> list[str]:
        return self.store.list_plans()

    def is_running(self, plan_id: str) -> bool:
        with self._mutex:
            if plan_id in self._engines:
                return True
        return self.store.is_locked(plan_id)

    def pause(self, plan_id: str) -> None:
        state = self.status(plan_id)
        if state.terminal:
            return
        with self._mutex:
            engine = self._engines.get(plan_id)
        if engine is not None:
            engine.request_pause()
        elif self.store.is_locked(plan_id):
            self.store.request_control(plan_id, "pause")

    def resume(self, plan_id: str, *, wait: bool = False) -> str:
        """Continue a paused or FAILED rollout from its last snapshot."""
        with self._mutex:
            self._check_idle(plan_id)
            state = self.status(plan_id)
            if state.terminal:
                raise ConflictError(f"plan {plan_id!r} already finished in {state.stage.value}")
            self.store.clear_control(plan_id)
            engine = self._new_engine(self._load_plan(plan_id))
            self._register(plan_id, engine)
        return self._start(plan_id, engine.resume, wait=wait)

    def abort(self, plan_id: str, *, wait: bool = False) -> str:
        """Stop the rollout and restore the pre-rollout topology."""
        return self._stop(plan_id, reason="abort_requested", wait=wait)

    def rollback(self, plan_id: str, *, wait: bool = False) -> str:
        return self._stop(plan_id, reason="rollback_requested", wait=wait)

    def _stop(self, plan_id: str, *, reason: str, wait: bool) -> str:
        self.status(plan_id)
        idle: RolloutEngine | None = None
        with self._mutex:
            engine = self._engines.get(plan_id)
            if engine is not None:
                engine.request_abort()
            elif self.store.is_locked(plan_id):
                self.store.request_control(plan_id, "abort")
                return plan_id
            else:
                self.store.clear_control(plan_id)
                engine = self._new_engine(self._load_plan(plan_id))
                self._register(plan_id, engine)
                idle = engine
        if idle is not None:
            return self._start(plan_id, lambda: idle.rollback(reason), wait=wait)
        if wait:
            self.wait(plan_id)
        return plan_id

    def approve(
        self,
        plan_id: str,
        gate: str,
        *,
        decision: str = "approve",
        approver: str | None = None,
        comment: str | None = None,
        signing_key: Path | None = None,
        kid: str | None = None,
    ) -> dict:
        """Deliver an operator decision to a ``manual_approval`` gate."""
        plan = self._load_plan(plan_id)
        names = {spec.name for spec in plan.gates if spec.kind == "manual_approval"}
        if gate not in names:
            raise ValueError(f"plan {plan_id!r} has no manual_approval gate named {gate!r}")
        record = build_approval(
            plan_id=plan_id,
            gate=gate,
            decision=decision,
            approver=approver,
            comment=comment,
        )
        if signing_key is not None:
            if not kid:
                raise ValueError("kid is required when signing an approval")
            record = sign_approval(record, load_private_key(signing_key), kid=kid)
        self.store.write_approval(plan_id, gate, record)
        return record

    def wait(self, plan_id: str, timeout: float | None = None) -> RolloutState:
        """Block until the worker for ``plan_id`` exits; re-raise its error if any."""
        with self._mutex:
            thread = self._threads.get(plan_id)
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                raise TimeoutError(f"plan {plan_id!r} still running after {timeout}s")
            with self._mutex:
                if self._threads.get(plan_id) is thread:
                    del self._threads[plan_id]
                error = self._errors.pop(plan_id, None)
            if error is not None:
                raise error
        return self.status(plan_id)
