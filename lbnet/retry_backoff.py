"""Requeue delays for reconcile events that failed or are still waiting.

The controller passes the attempt number of the event it is about to
requeue; the delay grows with it according to ``controller.backoff_strategy``
and never exceeds ``controller.backoff_max_seconds``. A small random spread
keeps replicas that failed in the same pass from retrying in lockstep.
"""

import random
from collections.abc import Callable

from lbnet.config import ControllerConfig

# Growth of the un-jittered delay, as a multiple of the base delay
_GROWTH: dict[str, Callable[[int], float]] = {
    "exponential": lambda attempt: 2.0**attempt,
    "linear": float,
    "fixed": lambda attempt: 1.0,
}

STRATEGIES = tuple(_GROWTH)

JITTER_FRACTION = 0.1


class RetryBackoffCalculator:
    """Delay before a requeued event becomes due again."""

    @staticmethod
    def calculate_delay(attempt: int, strategy: str, base_seconds: float, max_seconds: float) -> float:
        """Return the delay for one attempt.

        Args:
            attempt: Requeue attempt, 1 for the first requeue
            strategy: One of ``STRATEGIES``
            base_seconds: Delay unit
            max_seconds: Cap applied before the random spread

        Returns:
            Seconds to wait, never negative; 0 for attempts below 1

        Raises:
            ValueError: If the strategy is unknown
        """
        growth = _GROWTH.get(strategy)
        if growth is None:
            raise ValueError(f"Unknown backoff strategy: {strategy}")
        if attempt < 1:
            return 0.0

        capped = min(base_seconds * growth(attempt), max_seconds)
        spread = capped * JITTER_FRACTION
        return max(0.0, capped + random.uniform(-spread, spread))

    @classmethod
    def for_controller(cls, config: ControllerConfig, attempt: int) -> float:
        """Delay for ``attempt`` under the controller's backoff settings."""
        return cls.calculate_delay(
            attempt,
            config.backoff_strategy,
            config.backoff_base_seconds,
            config.backoff_max_seconds,
        )
