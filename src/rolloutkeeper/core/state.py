from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from rolloutkeeper.core.stages import TERMINAL_STAGES, Stage

SCHEMA_VERSION = "rollout_state.v1"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass
class RolloutState:
    plan_id: str
    stage: Stage = Stage.PENDING
    # Index of the last schedule step whose updates were both applied.
    applied_step: int = -1
    # Index of the last schedule step observed converged.
    confirmed_step: int = -1
    target_live: bool = False
    paused: bool = False
    failed_stage: Stage | None = None
    last_error: dict | None = None
    generations: dict[str, int] = field(default_factory=dict)
    # Last labels and replica count sent per group, written before the apply.
    intents: dict[str, dict] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "plan_id": self.plan_id,
            "stage": self.stage.value,
            "applied_step": self.applied_step,
            "confirmed_step": self.confirmed_step,
            "target_live": self.target_live,
            "paused": self.paused,
            "failed_stage": self.failed_stage.value if self.failed_stage is not None else None,
            "last_error": self.last_error,
            "generations": dict(sorted(self.generations.items())),
            "intents": {k: dict(v) for k, v in sorted(self.intents.items())},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "RolloutState":
        if not isinstance(payload, dict):
            raise ValueError("rollout state must be an object")
        if payload.get("schema_version") != SCHEMA_VERSION:
            raise ValueError(f"rollout state schema_version must be {SCHEMA_VERSION!r}")
        failed_stage = payload.get("failed_stage")
        generations = payload.get("generations")
        intents = payload.get("intents")
        return cls(
            plan_id=str(payload["plan_id"]),
            stage=Stage(payload["stage"]),
            applied_step=int(payload.get("applied_step", -1)),
            confirmed_step=int(payload.get("confirmed_step", -1)),
            target_live=bool(payload.get("target_live", False)),
            paused=bool(payload.get("paused", False)),
            failed_stage=Stage(failed_stage) if failed_stage else None,
            last_error=payload.get("last_error"),
            generations={
                str(k): int(v) for k, v in (generations.items() if isinstance(generations, dict) else [])
            },
            intents={
                str(k): dict(v) for k, v in (intents.items() if isinstance(intents, dict) else []) if isinstance(v, dict)
            },
            created_at=str(payload.get("created_at") or utc_now_iso()),
            updated_at=str(payload.get("updated_at") or utc_now_iso()),
        )
