import json
import subprocess
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from rolloutkeeper.audit.store import AuditStore
from rolloutkeeper.cli import main
from rolloutkeeper.core.state import RolloutState
from rolloutkeeper.gates.signing import public_key_b64, verify_approval
from rolloutkeeper.plan.validate import plan_from_dict


def _write_plan(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_cli_version_flag(rk_path: Path) -> None:
    p = subprocess.run([str(rk_path), "--version"], capture_output=True, text=True)
    assert p.returncode == 0
    assert "rolloutkeeper" in (p.stdout or "")


def test_plan_validate(tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["plan", "validate", "--plan", str(_write_plan(tmp_path, plan_payload))])

    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"ok": True, "plan_id": "web-rollout", "steps": 3, "total_replicas": 2, "gates": []}


def test_plan_validate_rejects_bad_schedule(
    tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]
) -> None:
    plan_payload["schedule"] = [[2, 0], [1, 2]]

    rc = main(["plan", "validate", "--plan", str(_write_plan(tmp_path, plan_payload))])

    assert rc == 2
    assert capsys.readouterr().err.startswith("ERROR: ")


def test_plan_render(tmp_path: Path, plan_payload: dict) -> None:
    out_dir = tmp_path / "out"

    rc = main(["plan", "render", "--plan", str(_write_plan(tmp_path, plan_payload)), "--out", str(out_dir)])

    assert rc == 0
    payload = json.loads((out_dir / "render_latest.json").read_text(encoding="utf-8"))
    assert payload["kind"] == "List"
    assert [item["kind"] for item in payload["items"]] == ["Service", "Deployment", "Deployment"]
    target = payload["items"][2]
    assert target["metadata"]["name"] == "web-v2"
    assert target["spec"]["template"]["metadata"]["labels"]["traffic"] == "dark"
    assert len(list(out_dir.glob("render_*.json"))) == 2


def test_submit_status_history_against_memory_cluster(
    tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]
) -> None:
    plan_path = _write_plan(tmp_path, plan_payload)
    state_dir = tmp_path / "state"
    out_dir = tmp_path / "out"

    rc = main(
        [
            "submit",
            "--plan",
            str(plan_path),
            "--cluster",
            "memory",
            "--state-dir",
            str(state_dir),
            "--poll-interval",
            "10ms",
            "--out",
            str(out_dir),
        ]
    )

    assert rc == 0
    report = json.loads((out_dir / "rollout_latest.json").read_text(encoding="utf-8"))
    assert report["stage"] == "COMPLETED"
    assert report["rc"] == 0
    assert report["applied_step"] == 2
    assert (out_dir / "explain.jsonl").exists()
    capsys.readouterr()

    assert main(["status", "--plan-id", "web-rollout", "--state-dir", str(state_dir)]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["stage"] == "COMPLETED"
    assert status["running"] is False

    assert main(["history", "--plan-id", "web-rollout", "--state-dir", str(state_dir)]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert lines[0]["detail"]["event"] == "submitted"
    assert lines[-1]["to_stage"] == "COMPLETED"

    # A finished plan cannot be submitted again.
    again = ["submit", "--plan", str(plan_path), "--cluster", "memory", "--state-dir", str(state_dir), "--out", str(out_dir)]
    assert main(again) == 2
    assert "already finished" in capsys.readouterr().err


def test_status_of_unknown_plan(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["status", "--plan-id", "missing", "--state-dir", str(tmp_path / "state")])

    assert rc == 2
    assert "unknown plan" in capsys.readouterr().err


def test_pause_of_idle_plan_is_noop(tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]) -> None:
    state_dir = tmp_path / "state"
    store = AuditStore(state_dir)
    plan = plan_from_dict(plan_payload)
    store.save_plan(plan.plan_id, plan.to_dict())
    store.save_snapshot(RolloutState(plan_id=plan.plan_id))

    assert main(["pause", "--plan-id", plan.plan_id, "--state-dir", str(state_dir)]) == 0
    assert "not running (PENDING)" in capsys.readouterr().out
    assert store.read_control(plan.plan_id) is None


def _store_plan_with_approval_gate(state_dir: Path, plan_payload: dict) -> str:
    plan_payload["gates"] = [{"name": "signoff", "kind": "manual_approval"}]
    plan = plan_from_dict(plan_payload)
    AuditStore(state_dir).save_plan(plan.plan_id, plan.to_dict())
    return plan.plan_id


def test_approve_writes_mailbox_record(tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]) -> None:
    state_dir = tmp_path / "state"
    plan_id = _store_plan_with_approval_gate(state_dir, plan_payload)

    rc = main(
        [
            "approve",
            "--plan-id",
            plan_id,
            "--gate",
            "signoff",
            "--approver",
            "alice",
            "--state-dir",
            str(state_dir),
        ]
    )

    assert rc == 0
    record = AuditStore(state_dir).read_approval(plan_id, "signoff")
    assert record is not None
    assert record["decision"] == "approve"
    assert record["approver"] == "alice"
    assert json.loads(capsys.readouterr().out) == record


def test_approve_signed_and_rejections(tmp_path: Path, plan_payload: dict, capsys: pytest.CaptureFixture[str]) -> None:
    state_dir = tmp_path / "state"
    plan_id = _store_plan_with_approval_gate(state_dir, plan_payload)
    key = Ed25519PrivateKey.from_private_bytes(bytes(range(32)))
    key_path = tmp_path / "approver.pem"
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    base = ["approve", "--plan-id", plan_id, "--state-dir", str(state_dir)]

    assert main([*base, "--gate", "signoff", "--reject", "--signing-key", str(key_path), "--kid", "ops"]) == 0
    record = AuditStore(state_dir).read_approval(plan_id, "signoff")
    assert record is not None and record["decision"] == "reject"
    assert verify_approval(record, {"ops": public_key_b64(key)}) == (True, "ok")
    capsys.readouterr()

    assert main([*base, "--gate", "signoff", "--signing-key", str(key_path)]) == 2
    assert "kid is required" in capsys.readouterr().err
    assert main([*base, "--gate", "nope"]) == 2
    assert "no manual_approval gate" in capsys.readouterr().err


def test_demo_command_writes_report(tmp_path: Path) -> None:
    out_dir = tmp_path / "out"

    assert main(["demo", "--scenario", "gate-fail", "--out", str(out_dir)]) == 0

    report = json.loads((out_dir / "demo_latest.json").read_text(encoding="utf-8"))
    assert report["stage"] == "ROLLED_BACK"
    assert report["endpoint_backends"] == {"web-v1": 2}
    events = [json.loads(line)["event"] for line in (out_dir / "explain.jsonl").read_text(encoding="utf-8").splitlines()]
    assert events[0] == "demo_start"
    assert events[-1] == "demo_stop"


def test_invalid_poll_interval_is_a_usage_error(tmp_path: Path, plan_payload: dict) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["submit", "--plan", str(_write_plan(tmp_path, plan_payload)), "--poll-interval", "soon"])
    assert excinfo.value.code == 2
