"""File-backed audit log, status snapshot and per-plan lock."""

from __future__ import annotations

import json
import os
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path

from rolloutkeeper.audit.explain import read_jsonl
from rolloutkeeper.core.state import RolloutState, utc_now_iso
from rolloutkeeper.errors import ConflictError

RECORD_SCHEMA_VERSION = "rollout_audit_record.v1"
CONTROL_ACTIONS = ("pause", "abort")

_PLAN_FILE = "plan.json"
_AUDIT_FILE = "audit.jsonl"
_SNAPSHOT_FILE = "state_latest.json"
_CONTROL_FILE = "control.json"
_LOCK_FILE = "engine.lock"
_APPROVALS_DIR = "approvals"

# Locks held by engines of this process, keyed by (store root, plan_id).
_HELD: set[tuple[str, str]] = set()
_HELD_MUTEX = threading.Lock()


@dataclass
class AuditRecord:
    plan_id: str
    from_stage: str
    to_stage: str
    step_index: int
    detail: dict = field(default_factory=dict)
    ts: str = field(default_factory=utc_now_iso)

    @property
    def event(self) -> str | None:
        value = self.detail.get("event")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "ts": self.ts,
            "plan_id": self.plan_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "step_index": self.step_index,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "AuditRecord":
        detail = payload.get("detail")
        return cls(
            plan_id=str(payload.get("plan_id", "")),
            from_stage=str(payload.get("from_stage", "")),
            to_stage=str(payload.get("to_stage", "")),
            step_index=int(payload.get("step_index", -1)),
            detail=detail if isinstance(detail, dict) else {},
            ts=str(payload.get("ts", "")),
        )


@dataclass
class PlanLock:
    plan_id: str
    path: Path
    owner: str


def _write_json_atomic(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    tmp.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    os.replace(tmp, path)


def _read_json(path: Path) -> dict | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"{path}: top-level JSON must be an object")
    return payload


def _read_owner(path: Path) -> dict:
    try:
        return _read_json(path) or {}
    except (ValueError, OSError):
        return {}


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class AuditStore:
    """Durable per-plan storage rooted at ``root/<plan_id>/``.

    Holds the submitted plan, an append-only ``audit.jsonl`` of transition
    and attempt records, the ``state_latest.json`` snapshot, a pending
    operator control request, approval signals and the engine lock.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._mutex = threading.Lock()

    def _key(self, plan_id: str) -> tuple[str, str]:
        return (str(self.root.resolve()), plan_id)

    def plan_dir(self, plan_id: str) -> Path:
        return self.root / plan_id

    # plans

    def has_plan(self, plan_id: str) -> bool:
        return (self.plan_dir(plan_id) / _PLAN_FILE).exists()

    def save_plan(self, plan_id: str, payload: dict) -> Path:
        path = self.plan_dir(plan_id) / _PLAN_FILE
        _write_json_atomic(path, payload)
        return path

    def load_plan_payload(self, plan_id: str) -> dict | None:
        return _read_json(self.plan_dir(plan_id) / _PLAN_FILE)

    def list_plans(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if (p / _PLAN_FILE).exists())

    # audit log

    def append(self, record: AuditRecord) -> None:
        line = json.dumps(
            record.to_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        path = self.plan_dir(record.plan_id) / _AUDIT_FILE
        with self._mutex:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")

    def history(self, plan_id: str) -> list[AuditRecord]:
        return [AuditRecord.from_dict(item) for item in read_jsonl(self.plan_dir(plan_id) / _AUDIT_FILE)]

    # snapshot

    def save_snapshot(self, state: RolloutState) -> None:
        state.updated_at = utc_now_iso()
        _write_json_atomic(self.plan_dir(state.plan_id) / _SNAPSHOT_FILE, state.to_dict())

    def load_snapshot(self, plan_id: str) -> RolloutState | None:
        payload = _read_json(self.plan_dir(plan_id) / _SNAPSHOT_FILE)
        if payload is None:
            return None
        return RolloutState.from_dict(payload)

    # lock

    def is_locked(self, plan_id: str) -> bool:
        with _HELD_MUTEX:
            if self._key(plan_id) in _HELD:
                return True
        path = self.plan_dir(plan_id) / _LOCK_FILE
        if not path.exists():
            return False
        return not self._is_stale(_read_owner(path))

    def acquire(self, plan_id: str, *, break_stale: bool = True) -> PlanLock:
        """Take the single-engine lock for ``plan_id`` or raise :class:`ConflictError`."""
        path = self.plan_dir(plan_id) / _LOCK_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        owner = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "thread": threading.get_ident(),
            "acquired_at": utc_now_iso(),
        }
        with _HELD_MUTEX:
            if self._key(plan_id) in _HELD:
                raise ConflictError(f"plan {plan_id!r} is already being executed in this process")
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                current = _read_owner(path)
                if not (break_stale and self._is_stale(current)):
                    raise ConflictError(
                        f"plan {plan_id!r} is locked by pid={current.get('pid')} host={current.get('host')}"
                    ) from None
                os.unlink(path)
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(owner, sort_keys=True) + "\n")
            _HELD.add(self._key(plan_id))
        return PlanLock(plan_id=plan_id, path=path, owner=f"{owner['host']}:{owner['pid']}")

    def release(self, lock: PlanLock) -> None:
        with _HELD_MUTEX:
            _HELD.discard(self._key(lock.plan_id))
            try:
                lock.path.unlink()
            except FileNotFoundError:
                pass

    def _is_stale(self, owner: dict) -> bool:
        pid = owner.get("pid")
        if owner.get("host") != socket.gethostname() or not isinstance(pid, int):
            return False
        if pid == os.getpid():
            # Left behind by an engine of this process that died without releasing.
            return True
        return not _pid_alive(pid)

    # operator control requests

    def request_control(self, plan_id: str, action: str) -> None:
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"unknown control action: {action}")
        current = self.read_control(plan_id)
        if current == "abort" and action == "pause":
            return
        _write_json_atomic(
            self.plan_dir(plan_id) / _CONTROL_FILE,
            {"action": action, "requested_at": utc_now_iso()},
        )

    def read_control(self, plan_id: str) -> str | None:
        payload = _read_json(self.plan_dir(plan_id) / _CONTROL_FILE)
        if payload is None:
            return None
        action = payload.get("action")
        return action if action in CONTROL_ACTIONS else None

    def clear_control(self, plan_id: str) -> None:
        try:
            (self.plan_dir(plan_id) / _CONTROL_FILE).unlink()
        except FileNotFoundError:
            pass

    # approvals

    def write_approval(self, plan_id: str, gate: str, record: dict) -> Path:
        path = self.plan_dir(plan_id) / _APPROVALS_DIR / f"{gate}.json"
        _write_json_atomic(path, record)
        return path

    def read_approval(self, plan_id: str, gate: str) -> dict | None:
        try:
            return _read_json(self.plan_dir(plan_id) / _APPROVALS_DIR / f"{gate}.json")
        except (ValueError, json.JSONDecodeError):
            return None
