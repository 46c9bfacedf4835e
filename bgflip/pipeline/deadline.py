"""
Pipeline deadline.

A single budget for one pipeline run, checked at every phase boundary and
used to bound awaited calls, so a slow phase cannot starve the others.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from bgflip.core.exceptions import DeadlineExceededError

T = TypeVar("T")


class Deadline:
    def __init__(self, budget_seconds: float, clock=time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed_seconds * 1000)

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed_seconds)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, phase: str):
        """Raise DeadlineExceededError if the budget is spent before phase starts."""
        if self.expired:
            raise DeadlineExceededError(phase, self.budget_seconds)

    async def run(self, phase: str, awaitable: Awaitable[T], limit: Optional[float] = None) -> T:
        """Await within the remaining budget (and limit, if smaller)."""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError(phase, self.budget_seconds)
        timeout = self.remaining() if limit is None else min(limit, self.remaining())
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise DeadlineExceededError(phase, self.budget_seconds, during=True)
