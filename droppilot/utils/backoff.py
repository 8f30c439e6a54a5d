"""Exponential backoff implementation for retry logic."""

from __future__ import annotations

import random
from collections import abc


class ExponentialBackoff:
    """
    Iterator that generates exponentially increasing delays with variance.

    Usage:
        backoff = ExponentialBackoff(maximum=60)
        for delay in backoff:
            if await try_operation():
                break
            await asyncio.sleep(delay)

    The iterator never ends on its own, unless `max_attempts` is set.
    """

    def __init__(
        self,
        *,
        base: float = 2,
        variance: float | tuple[float, float] = 0.1,
        shift: float = 0,
        maximum: float = 300,
        max_attempts: int | None = None,
    ):
        """
        Args:
            base: Exponential base (must be > 1)
            variance: Symmetric variance (1 +- variance),
                or a (min_multiplier, max_multiplier) tuple
            shift: Constant value added to each delay
            maximum: Maximum delay value to return
            max_attempts: Stop iterating after this many delays

        Raises:
            ValueError: If base <= 1
        """
        if base <= 1:
            raise ValueError("Base has to be greater than 1")
        self.steps: int = 0
        self.attempts: int = 0
        self.base: float = float(base)
        self.shift: float = float(shift)
        self.maximum: float = float(maximum)
        self.max_attempts: int | None = max_attempts
        self.variance_min: float
        self.variance_max: float
        if isinstance(variance, tuple):
            self.variance_min, self.variance_max = variance
        else:
            self.variance_min = 1 - variance
            self.variance_max = 1 + variance

    def __iter__(self) -> abc.Iterator[float]:
        return self

    def __next__(self) -> float:
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            raise StopIteration
        self.attempts += 1
        value: float = (
            pow(self.base, self.steps) * random.uniform(self.variance_min, self.variance_max)
            + self.shift
        )
        if value > self.maximum:
            return self.maximum
        # stop growing the exponent once the maximum is reached
        self.steps += 1
        return value

    def reset(self) -> None:
        self.steps = 0
        self.attempts = 0
