"""Cooperative wall-clock budget for a single job."""

from __future__ import annotations

import time
from typing import Callable

from ragforge.core.errors import JobTimeoutError


class Deadline:
    """Checked by handlers at each stage boundary; never interrupts running code."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._expires_at = clock() + budget_seconds

    @classmethod
    def unlimited(cls) -> "Deadline":
        return cls(float("inf"))

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, stage: str) -> None:
        if self.expired:
            raise JobTimeoutError(f"Job exceeded its {self.budget_seconds:g}s budget before stage '{stage}'")


__all__ = ["Deadline"]
