from __future__ import annotations

from dataclasses import dataclass

from rolloutkeeper.core.stages import FAILABLE_STAGES, TERMINAL_STAGES, Stage

_FORWARD = {
    Stage.PENDING: Stage.PREPARING,
    Stage.PREPARING: Stage.SHIFTING,
    Stage.SHIFTING: Stage.VERIFYING,
    Stage.VERIFYING: Stage.FINALIZING,
    Stage.FINALIZING: Stage.COMPLETED,
    Stage.ABORTING: Stage.ROLLED_BACK,
}


@dataclass
class RolloutStateMachine:
    stage: Stage
    failed_stage: Stage | None = None

    def can_transition(self, target: Stage) -> bool:
        if self.stage == target:
            return True
        if self.stage in TERMINAL_STAGES:
            return False
        if target == Stage.ABORTING:
            return True
        if target == Stage.FAILED:
            return self.stage in FAILABLE_STAGES
        if self.stage == Stage.FAILED:
            return target == self.failed_stage
        return _FORWARD.get(self.stage) == target

    def transition(self, target: Stage) -> None:
        if self.stage == target:
            return
        if not self.can_transition(target):
            raise ValueError(f"Invalid transition: {self.stage} -> {target}")
        if target == Stage.FAILED:
            self.failed_stage = self.stage
        elif self.stage == Stage.FAILED or target == Stage.ABORTING:
            self.failed_stage = None
        self.stage = target
