from __future__ import annotations

from typing import Callable, TypeVar

from rolloutkeeper.errors import AbortRequested, TransientClusterError

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay_s: float, max_delay_s: float = 30.0) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    return min(max_delay_s, max(0.0, base_delay_s) * (2 ** max(0, attempt - 1)))


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int,
    base_delay_s: float,
    wait: Callable[[float], bool],
    on_attempt: Callable[[int, Exception | None], None] | None = None,
) -> T:
    """Call ``fn``, retrying :class:`TransientClusterError` up to ``attempts`` times.

    ``wait(seconds)`` sleeps between attempts and returns True when the wait
    was cancelled, which raises :class:`AbortRequested`. Other errors are not
    retried. The last transient error is re-raised once attempts run out.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            result = fn()
        except TransientClusterError as exc:
            if on_attempt is not None:
                on_attempt(attempt, exc)
            if attempt >= attempts:
                raise
            if wait(backoff_delay(attempt, base_delay_s)):
                raise AbortRequested("abort requested during retry backoff") from exc
            continue
        except Exception as exc:
            if on_attempt is not None:
                on_attempt(attempt, exc)
            raise
        if on_attempt is not None:
            on_attempt(attempt, None)
        return result
    raise AssertionError("unreachable")
