from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    SHIFTING = "SHIFTING"
    VERIFYING = "VERIFYING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    ABORTING = "ABORTING"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.ROLLED_BACK})

# Stages that may halt in FAILED on an unrecoverable error.
FAILABLE_STAGES = frozenset(
    {
        Stage.PREPARING,
        Stage.SHIFTING,
        Stage.VERIFYING,
        Stage.FINALIZING,
    }
)
