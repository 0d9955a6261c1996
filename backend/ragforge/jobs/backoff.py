"""Retry delay policy for failed jobs."""

from __future__ import annotations

import random


def compute_backoff(
    attempts: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before a job that has failed ``attempts`` times is retried.

    Exponential in the attempt count (``base * 2 ** (attempts - 1)``), capped at
    ``cap``. ``jitter`` is a fraction: 0.1 spreads the delay by up to +/-10% so
    that jobs failing together do not retry together.
    """
    exponent = min(max(0, attempts - 1), 62)
    delay = min(cap, base * (2 ** exponent))
    if jitter > 0 and delay > 0:
        spread = delay * jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, delay)


__all__ = ["compute_backoff"]
