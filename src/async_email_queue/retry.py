# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy shared by the reclaimer and the dispatcher.

The dispatcher never retries in-line: a failed send becomes ``failed`` and
re-enters the queue only through the stuck-job reclaimer, the rate-limit
release or an operator retry. Those paths all consult one
:class:`RetryPolicy` value, so changing the budget or the backoff does not
touch dispatch code.

Example:
    Custom policy with a growing backoff::

        policy = RetryPolicy(max_retries=5, backoff_seconds=(60, 300, 900))
        policy.calculate_delay(0)   # 60
        policy.calculate_delay(7)   # 900 (last delay repeats)
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MAX_RETRIES = 3
DEFAULT_STUCK_THRESHOLD_MINUTES = 10
DEFAULT_RATE_LIMITED_DELAY = 60
DEFAULT_BACKOFF_SECONDS = (120.0, 240.0, 480.0)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget, backoff schedule and recovery thresholds.

    Attributes:
        max_retries: Highest ``retry_count`` a job may reach. A retry that
            would go past it is a terminal failure.
        backoff_seconds: Delay applied when a job re-enters ``pending``,
            indexed by its previous ``retry_count``. Retries past the end of
            the tuple reuse the last value; an empty tuple means no delay.
            Defaults to 2, 4 and 8 minutes.
        stuck_threshold_minutes: Age after which a ``processing`` job is
            considered abandoned.
        rate_limited_delay: Seconds a provider-throttled job waits before it
            is released back to ``pending``.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_seconds: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS
    stuck_threshold_minutes: float = DEFAULT_STUCK_THRESHOLD_MINUTES
    rate_limited_delay: float = DEFAULT_RATE_LIMITED_DELAY

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.stuck_threshold_minutes <= 0:
            raise ValueError("stuck_threshold_minutes must be > 0")
        if any(delay < 0 for delay in self.backoff_seconds):
            raise ValueError("backoff_seconds must not contain negative delays")
        # Lists from config files are accepted and frozen into a tuple.
        object.__setattr__(self, "backoff_seconds", tuple(float(d) for d in self.backoff_seconds))

    @property
    def stuck_threshold_seconds(self) -> float:
        return float(self.stuck_threshold_minutes) * 60.0

    def calculate_delay(self, retry_count: int) -> float:
        """Return the backoff in seconds before retry number ``retry_count + 1``."""
        if not self.backoff_seconds:
            return 0.0
        index = max(0, int(retry_count))
        if index >= len(self.backoff_seconds):
            return self.backoff_seconds[-1]
        return self.backoff_seconds[index]

    def is_exhausted(self, retry_count: int, max_retries: int | None = None) -> bool:
        """True when one more retry would exceed the budget.

        Args:
            retry_count: The job's current ``retry_count``.
            max_retries: The job's own cap; falls back to the policy value.
        """
        cap = self.max_retries if max_retries is None else max_retries
        return retry_count + 1 > cap

    def next_retry_at(self, retry_count: int, now: float) -> float:
        """Earliest dispatch time for a job re-entering ``pending`` at ``now``."""
        return now + self.calculate_delay(retry_count)
