"""Command-line interface for rolloutkeeper."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from rolloutkeeper import __version__ as RK_VERSION
from rolloutkeeper.audit.explain import ExplainLog
from rolloutkeeper.audit.store import AuditStore
from rolloutkeeper.cluster.client import ClusterClient
from rolloutkeeper.cluster.kubectl import (
    KubectlClusterClient,
    render_routing_endpoint,
    render_workload_group,
)
from rolloutkeeper.cluster.memory import InMemoryClusterClient
from rolloutkeeper.config import Settings, parse_duration_s
from rolloutkeeper.controller import RolloutController
from rolloutkeeper.core.stages import Stage
from rolloutkeeper.core.state import RolloutState
from rolloutkeeper.demo.runner import SCENARIOS, run_demo
from rolloutkeeper.errors import InvalidPlan, RolloutError
from rolloutkeeper.gates.signing import load_approval_keys
from rolloutkeeper.plan.model import RolloutPlan
from rolloutkeeper.plan.validate import load_plan

_CLUSTER_CHOICES = ("kubectl", "memory")


def _ensure_out_dir(out_dir: str) -> Path:
    path = Path(out_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")


def _write_json_report(path: Path, payload: dict) -> None:
    path.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def _write_latest_with_timestamp(
    out_dir: Path,
    *,
    latest_name: str,
    prefix: str,
    payload: dict,
) -> tuple[Path, Path]:
    ts_path = out_dir / f"{prefix}_{_utc_now().strftime('%Y%m%d_%H%M%S')}.json"
    latest_path = out_dir / latest_name
    _write_json_report(ts_path, payload)
    _write_json_report(latest_path, payload)
    return latest_path, ts_path


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))


def _settings(args: argparse.Namespace) -> Settings:
    base = Settings.from_env()
    state_dir = getattr(args, "state_dir", None)
    kubectl = getattr(args, "kubectl", None)
    poll_interval_s = getattr(args, "poll_interval", None)
    return Settings(
        state_dir=Path(state_dir) if state_dir else base.state_dir,
        kubectl=kubectl or base.kubectl,
        poll_interval_s=base.poll_interval_s if poll_interval_s is None else poll_interval_s,
        approval_keys_path=base.approval_keys_path,
    )


def _seed_memory_cluster(cluster: InMemoryClusterClient, plan: RolloutPlan) -> None:
    cluster.apply_routing_endpoint(plan.endpoint, namespace=plan.namespace)
    cluster.apply_workload_group(
        plan.source,
        namespace=plan.namespace,
        labels=plan.live_labels(plan.source),
        replicas=plan.source.replicas,
    )


def _build_cluster(args: argparse.Namespace, settings: Settings) -> ClusterClient:
    if getattr(args, "cluster", "kubectl") == "memory":
        return InMemoryClusterClient()
    return KubectlClusterClient(settings.kubectl, context=getattr(args, "context", None))


def _build_controller(
    args: argparse.Namespace,
    settings: Settings,
    *,
    cluster: ClusterClient | None = None,
    explain: ExplainLog | None = None,
) -> RolloutController:
    return RolloutController(
        AuditStore(settings.state_dir),
        cluster if cluster is not None else _build_cluster(args, settings),
        keyring=load_approval_keys(settings.approval_keys_path),
        explain=explain,
        poll_interval_s=settings.poll_interval_s,
    )


def _rollout_report(state: RolloutState, *, store: AuditStore, started_at: datetime, rc: int) -> dict:
    return {
        "plan_id": state.plan_id,
        "stage": state.stage.value,
        "applied_step": state.applied_step,
        "confirmed_step": state.confirmed_step,
        "paused": state.paused,
        "last_error": state.last_error,
        "state_path": str(store.plan_dir(state.plan_id)),
        "started_at": _format_utc(started_at),
        "finished_at": _format_utc(_utc_now()),
        "rc": rc,
    }


def _finish_rollout(
    controller: RolloutController,
    state: RolloutState,
    *,
    expected: Stage,
    started_at: datetime,
    out_dir: Path,
    explain: ExplainLog,
) -> int:
    rc = 0 if state.stage == expected else 1
    report = _rollout_report(state, store=controller.store, started_at=started_at, rc=rc)
    latest_path, _ = _write_latest_with_timestamp(
        out_dir,
        latest_name="rollout_latest.json",
        prefix="rollout",
        payload=report,
    )
    explain.emit("rollout_report", {"path": str(latest_path), "stage": state.stage.value, "rc": rc})
    print(f"{state.plan_id}: {state.stage.value} (applied_step={state.applied_step})")
    if state.last_error:
        print(f"last_error: {state.last_error.get('type')}: {state.last_error.get('message')}", file=sys.stderr)
    return rc


# plan


def cmd_plan_validate(args: argparse.Namespace) -> int:
    try:
        plan = load_plan(Path(args.plan))
    except InvalidPlan as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    _print_json(
        {
            "ok": True,
            "plan_id": plan.plan_id,
            "steps": len(plan.schedule),
            "total_replicas": plan.total_replicas,
            "gates": [gate.name for gate in plan.gates],
        }
    )
    return 0


def cmd_plan_render(args: argparse.Namespace) -> int:
    try:
        plan = load_plan(Path(args.plan))
    except InvalidPlan as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    out_dir = _ensure_out_dir(args.out)
    manifests = [
        render_routing_endpoint(plan.endpoint, namespace=plan.namespace),
        render_workload_group(
            plan.source,
            namespace=plan.namespace,
            labels=plan.live_labels(plan.source),
            replicas=plan.source.replicas,
        ),
        render_workload_group(
            plan.target,
            namespace=plan.namespace,
            labels=plan.dark_labels(plan.target),
            replicas=plan.preview_replicas,
        ),
    ]
    if plan.preview_endpoint is not None:
        manifests.append(render_routing_endpoint(plan.preview_endpoint, namespace=plan.namespace))
    payload = {"apiVersion": "v1", "kind": "List", "items": manifests}
    latest_path, _ = _write_latest_with_timestamp(
        out_dir,
        latest_name="render_latest.json",
        prefix="render",
        payload=payload,
    )
    print(str(latest_path))
    return 0


# rollout lifecycle


def cmd_submit(args: argparse.Namespace) -> int:
    started_at = _utc_now()
    try:
        plan = load_plan(Path(args.plan))
    except InvalidPlan as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    settings = _settings(args)
    out_dir = _ensure_out_dir(args.out)
    explain = ExplainLog(out_dir / "explain.jsonl")
    cluster = _build_cluster(args, settings)
    if isinstance(cluster, InMemoryClusterClient):
        _seed_memory_cluster(cluster, plan)
    controller = _build_controller(args, settings, cluster=cluster, explain=explain)
    explain.emit("submit_start", {"plan_id": plan.plan_id, "cluster": args.cluster})
    try:
        controller.submit(plan, wait=True)
        state = controller.status(plan.plan_id)
    except RolloutError as exc:
        explain.emit("submit_error", {"plan_id": plan.plan_id, "error": str(exc)})
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return _finish_rollout(
        controller,
        state,
        expected=Stage.COMPLETED,
        started_at=started_at,
        out_dir=out_dir,
        explain=explain,
    )


def cmd_status(args: argparse.Namespace) -> int:
    controller = _build_controller(args, _settings(args), cluster=InMemoryClusterClient())
    try:
        state = controller.status(args.plan_id)
    except RolloutError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    payload = state.to_dict()
    payload["running"] = controller.is_running(args.plan_id)
    _print_json(payload)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    controller = _build_controller(args, _settings(args), cluster=InMemoryClusterClient())
    try:
        records = controller.history(args.plan_id)
    except RolloutError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    for record in records:
        print(json.dumps(record.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    return 0


def cmd_pause(args: argparse.Namespace) -> int:
    controller = _build_controller(args, _settings(args), cluster=InMemoryClusterClient())
    try:
        state = controller.status(args.plan_id)
        if not controller.is_running(args.plan_id):
            print(f"{args.plan_id}: not running ({state.stage.value})")
            return 0
        controller.pause(args.plan_id)
    except RolloutError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    print(f"{args.plan_id}: pause requested")
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    started_at = _utc_now()
    settings = _settings(args)
    out_dir = _ensure_out_dir(args.out)
    explain = ExplainLog(out_dir / "explain.jsonl")
    controller = _build_controller(args, settings, explain=explain)
    try:
        controller.resume(args.plan_id, wait=True)
        state = controller.status(args.plan_id)
    except (RolloutError, InvalidPlan) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return _finish_rollout(
        controller,
        state,
        expected=Stage.COMPLETED,
        started_at=started_at,
        out_dir=out_dir,
        explain=explain,
    )


def _cmd_stop(args: argparse.Namespace, *, action: str) -> int:
    started_at = _utc_now()
    settings = _settings(args)
    out_dir = _ensure_out_dir(args.out)
    explain = ExplainLog(out_dir / "explain.jsonl")
    controller = _build_controller(args, settings, explain=explain)
    try:
        if controller.is_running(args.plan_id):
            getattr(controller, action)(args.plan_id)
            print(f"{args.plan_id}: {action} requested")
            return 0
        getattr(controller, action)(args.plan_id, wait=True)
        state = controller.status(args.plan_id)
    except (RolloutError, InvalidPlan) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return _finish_rollout(
        controller,
        state,
        expected=Stage.ROLLED_BACK,
        started_at=started_at,
        out_dir=out_dir,
        explain=explain,
    )


def cmd_abort(args: argparse.Namespace) -> int:
    return _cmd_stop(args, action="abort")


def cmd_rollback(args: argparse.Namespace) -> int:
    return _cmd_stop(args, action="rollback")


def cmd_approve(args: argparse.Namespace) -> int:
    controller = _build_controller(args, _settings(args), cluster=InMemoryClusterClient())
    try:
        record = controller.approve(
            args.plan_id,
            args.gate,
            decision="reject" if args.reject else "approve",
            approver=args.approver,
            comment=args.comment,
            signing_key=Path(args.signing_key) if args.signing_key else None,
            kid=args.kid,
        )
    except (RolloutError, InvalidPlan, ValueError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    _print_json(record)
    return 0


def cmd_demo(args: argparse.Namespace) -> int:
    started_at = _utc_now()
    out_dir = _ensure_out_dir(args.out)
    explain = ExplainLog(out_dir / "explain.jsonl")
    explain.emit("demo_start", {"scenario": args.scenario, "out": str(out_dir)})
    report = run_demo(args.scenario, out_dir, explain)
    report["started_at"] = _format_utc(started_at)
    report["finished_at"] = _format_utc(_utc_now())
    latest_path, _ = _write_latest_with_timestamp(
        out_dir,
        latest_name="demo_latest.json",
        prefix="demo",
        payload=report,
    )
    explain.emit("demo_report", {"path": str(latest_path)})
    print(f"{report['plan_id']}: {report['stage']} -> {latest_path}")
    explain.emit("demo_stop", {"scenario": args.scenario, "rc": 0})
    return 0


# parser


def _add_state_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--state-dir",
        help="Audit/state directory (default: $ROLLOUTKEEPER_STATE_DIR or .rolloutkeeper)",
    )


def _add_cluster_args(parser: argparse.ArgumentParser) -> None:
    _add_state_dir(parser)
    parser.add_argument("--cluster", choices=_CLUSTER_CHOICES, default="kubectl", help="Cluster backend")
    parser.add_argument("--kubectl", help="kubectl binary (default: $KUBECTL or kubectl)")
    parser.add_argument("--context", help="kubectl context")
    parser.add_argument(
        "--poll-interval",
        type=parse_duration_s,
        help="Status poll interval, e.g. 500ms or 2s (default: $ROLLOUTKEEPER_POLL_INTERVAL_S or 2s)",
    )
    parser.add_argument("--out", default="report", help="Output directory")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rk")
    parser.add_argument("--version", action="version", version=f"rolloutkeeper {RK_VERSION}")

    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Rollout plan utilities")
    plan_sub = plan.add_subparsers(dest="subcommand", required=True)
    plan_validate = plan_sub.add_parser("validate", help="Validate a rollout plan JSON")
    plan_validate.add_argument("--plan", required=True, help="Path to rollout plan JSON")
    plan_validate.set_defaults(func=cmd_plan_validate)
    plan_render = plan_sub.add_parser("render", help="Render initial manifests (no changes)")
    plan_render.add_argument("--plan", required=True, help="Path to rollout plan JSON")
    plan_render.add_argument("--out", default="report", help="Output directory")
    plan_render.set_defaults(func=cmd_plan_render)

    submit = sub.add_parser("submit", help="Submit a plan and drive it to completion")
    submit.add_argument("--plan", required=True, help="Path to rollout plan JSON")
    _add_cluster_args(submit)
    submit.set_defaults(func=cmd_submit)

    status = sub.add_parser("status", help="Show the current rollout snapshot")
    status.add_argument("--plan-id", required=True)
    _add_state_dir(status)
    status.set_defaults(func=cmd_status)

    history = sub.add_parser("history", help="Print the audit records as JSONL")
    history.add_argument("--plan-id", required=True)
    _add_state_dir(history)
    history.set_defaults(func=cmd_history)

    pause = sub.add_parser("pause", help="Pause a running rollout at the next step boundary")
    pause.add_argument("--plan-id", required=True)
    _add_state_dir(pause)
    pause.set_defaults(func=cmd_pause)

    resume = sub.add_parser("resume", help="Resume a paused or failed rollout")
    resume.add_argument("--plan-id", required=True)
    _add_cluster_args(resume)
    resume.set_defaults(func=cmd_resume)

    abort = sub.add_parser("abort", help="Abort a rollout and restore the source")
    abort.add_argument("--plan-id", required=True)
    _add_cluster_args(abort)
    abort.set_defaults(func=cmd_abort)

    rollback = sub.add_parser("rollback", help="Roll back a halted rollout")
    rollback.add_argument("--plan-id", required=True)
    _add_cluster_args(rollback)
    rollback.set_defaults(func=cmd_rollback)

    approve = sub.add_parser("approve", help="Approve or reject a manual_approval gate")
    approve.add_argument("--plan-id", required=True)
    approve.add_argument("--gate", required=True, help="Gate name")
    approve.add_argument("--reject", action="store_true", help="Record a rejection instead")
    approve.add_argument("--approver", help="Approver identity")
    approve.add_argument("--comment", help="Free-form comment")
    approve.add_argument("--signing-key", help="Ed25519 private key (PEM) used to sign the approval")
    approve.add_argument("--kid", help="Key id for the signing key")
    _add_state_dir(approve)
    approve.set_defaults(func=cmd_approve)

    demo = sub.add_parser("demo", help="Run a rollout against a simulated cluster")
    demo.add_argument("--scenario", default="canary", choices=SCENARIOS, help="Scenario name")
    demo.add_argument("--out", default="report", help="Output directory")
    demo.set_defaults(func=cmd_demo)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
