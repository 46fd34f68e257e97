"""Environment-driven settings and value parsers shared by the CLI."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from rolloutkeeper.gates.signing import KEYS_ENV_VAR

STATE_DIR_ENV_VAR = "ROLLOUTKEEPER_STATE_DIR"
POLL_INTERVAL_ENV_VAR = "ROLLOUTKEEPER_POLL_INTERVAL_S"
KUBECTL_ENV_VAR = "KUBECTL"

DEFAULT_STATE_DIR = ".rolloutkeeper"
DEFAULT_POLL_INTERVAL_S = 2.0

_DURATION_MULTIPLIERS = {
    "ms": Decimal(1),
    "s": Decimal(1000),
    "m": Decimal(60_000),
    "h": Decimal(3_600_000),
}


def parse_duration_ms(value: str) -> int:
    """Parse ``250ms``, ``1.5s``, ``2m`` or ``1h`` (bare numbers are seconds)."""
    raw = value
    text = value.strip().lower()
    hint = f"invalid duration: '{raw}' (use e.g. 1.5s or 250ms)"
    if not text:
        raise argparse.ArgumentTypeError(hint)

    unit = "s"
    number = text
    for suffix in ("ms", "s", "m", "h"):
        if text.endswith(suffix):
            unit = suffix
            number = text[: -len(suffix)]
            break
    if not number:
        raise argparse.ArgumentTypeError(hint)

    try:
        parsed = Decimal(number)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(hint) from exc
    if not parsed.is_finite() or parsed < 0:
        raise argparse.ArgumentTypeError(hint)

    duration_ms = parsed * _DURATION_MULTIPLIERS[unit]
    if duration_ms != duration_ms.to_integral_value():
        raise argparse.ArgumentTypeError(hint)
    return int(duration_ms)


def parse_duration_s(value: str) -> float:
    return parse_duration_ms(value) / 1000.0


def parse_env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    state_dir: Path
    kubectl: str
    poll_interval_s: float
    approval_keys_path: Path | None

    @classmethod
    def from_env(cls) -> "Settings":
        state_dir = os.environ.get(STATE_DIR_ENV_VAR, "").strip() or DEFAULT_STATE_DIR
        kubectl = os.environ.get(KUBECTL_ENV_VAR, "").strip() or "kubectl"
        poll_interval_s = parse_env_float(POLL_INTERVAL_ENV_VAR, DEFAULT_POLL_INTERVAL_S)
        if poll_interval_s is None or poll_interval_s < 0:
            poll_interval_s = DEFAULT_POLL_INTERVAL_S
        keys_path = os.environ.get(KEYS_ENV_VAR, "").strip()
        return cls(
            state_dir=Path(state_dir),
            kubectl=kubectl,
            poll_interval_s=poll_interval_s,
            approval_keys_path=Path(keys_path) if keys_path else None,
        )
