"""Backoff math shared by the request executor and the cleanup orchestrator.

Two curves live here:

- ``compute``: per-attempt exponential backoff with symmetric jitter, used
  between HTTP retries.
- ``compute_from_elapsed_fraction``: requeue delay for deletion cleanup,
  driven by how far into its deadline a cleanup session is. With the default
  constants it yields 30s, 60s, 120s, 240s and then 5m, so retries slow down
  as the hard timeout approaches.

Both return seconds as floats.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

from .config import BackoffParameters, CleanupBackoffParameters


def compute(
    attempt: int,
    base: float,
    maximum: float,
    jitter_fraction: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with jitter for retry ``attempt`` (0-based).

    The delay is ``base * 2**attempt`` capped at ``maximum``. Jitter is
    drawn uniformly from ``[-jitter_fraction, +jitter_fraction]`` of the
    capped value and added. The result is clamped into ``[0, maximum]``.
    """
    if attempt < 0:
        raise ValueError("attempt must not be negative")

    # Avoid float overflow for large attempt numbers; anything past 2**62
    # is capped anyway.
    delay = min(maximum, base * math.pow(2, min(attempt, 62)))

    if jitter_fraction > 0 and delay > 0:
        source = rng or random
        jitter_range = delay * jitter_fraction
        delay += source.uniform(-jitter_range, jitter_range)

    return min(maximum, max(0.0, delay))


def compute_for(attempt: int, params: BackoffParameters, rng: random.Random | None = None) -> float:
    """``compute`` using a ``BackoffParameters`` value."""
    return compute(attempt, params.base_delay, params.max_delay, params.jitter_fraction, rng)


def _round_half_away(value: float) -> int:
    # Python's round() is banker's rounding; 0.5 * 3 = 1.5 must become 2.
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def compute_from_elapsed_fraction(
    elapsed_fraction: float,
    base: float = 30.0,
    maximum: float = 300.0,
    exponent: int = 3,
    max_shift: int = 10,
) -> float:
    """Cleanup requeue delay for a session ``elapsed_fraction`` into its deadline.

    ``shift = round(elapsed_fraction * exponent)`` clamped to
    ``[0, max_shift]``; the delay is ``base * 2**shift`` capped at
    ``maximum``.
    """
    shift = _round_half_away(elapsed_fraction * exponent)
    shift = max(0, min(shift, max_shift))
    return min(maximum, base * (1 << shift))


def compute_cleanup_backoff(elapsed_fraction: float, params: CleanupBackoffParameters) -> float:
    """``compute_from_elapsed_fraction`` using a ``CleanupBackoffParameters`` value."""
    return compute_from_elapsed_fraction(
        elapsed_fraction,
        base=params.base_delay,
        maximum=params.max_delay,
        exponent=params.exponent,
        max_shift=params.max_shift,
    )


@dataclass(frozen=True)
class ScheduleStep:
    """One band of the cleanup requeue schedule."""

    shift: int
    starts_at_fraction: float
    starts_at_seconds: float
    delay_seconds: float


def schedule(timeout_seconds: float, params: CleanupBackoffParameters) -> list[ScheduleStep]:
    """List the requeue delay bands a cleanup session moves through.

    Each step begins at the elapsed fraction where the rounded shift first
    reaches that value. Steps past the timeout, and steps whose delay no
    longer changes after capping, are omitted.
    """
    steps: list[ScheduleStep] = []
    last_delay: float | None = None

    for shift in range(0, params.max_shift + 1):
        if params.exponent == 0:
            fraction = 0.0
        else:
            fraction = max(0.0, (shift - 0.5) / params.exponent)
        if fraction > 1.0:
            break

        delay = min(params.max_delay, params.base_delay * (1 << shift))
        if delay == last_delay:
            break
        steps.append(
            ScheduleStep(
                shift=shift,
                starts_at_fraction=fraction,
                starts_at_seconds=fraction * timeout_seconds,
                delay_seconds=delay,
            )
        )
        last_delay = delay
        if params.exponent == 0:
            break

    return steps
