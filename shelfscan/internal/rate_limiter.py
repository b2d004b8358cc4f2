import threading
import time
from collections import deque
from typing import Callable, Mapping

from shelfscan.internal.env_settings import RateLimitBudget, Settings
from shelfscan.util.log import logger


class RateLimiter:
    """Per-provider call budgets over a rolling window.

    `check_and_increment` is atomic: the budget check and the recorded call
    happen under one lock, so concurrent candidates targeting the same provider
    can never overshoot the budget. It never blocks waiting for capacity and
    never raises.

    Keys without a configured budget are not limited. This is a fail-open
    policy: a missing budget entry must not silently disable a provider.
    """

    _budgets: dict[str, RateLimitBudget]
    _calls: dict[str, deque[float]]
    _unlimited_counts: dict[str, int]
    _lock: threading.Lock
    _clock: Callable[[], float]

    def __init__(
        self,
        budgets: Mapping[str, RateLimitBudget] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if budgets is None:
            budgets = Settings().rate_limits
        self._budgets = dict(budgets)
        self._calls = {}
        self._unlimited_counts = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _prune(self, key: str, now: float, window: float) -> deque[float]:
        calls = self._calls.setdefault(key, deque())
        while calls and calls[0] <= now - window:
            calls.popleft()
        return calls

    def check_and_increment(self, key: str) -> bool:
        """Record a call for `key` if its budget allows it.

        Returns:
            True if the call may proceed (and was counted), False if the
            rolling-window budget is exhausted.
        """
        budget = self._budgets.get(key)
        with self._lock:
            now = self._clock()
            if budget is None:
                self._unlimited_counts[key] = self._unlimited_counts.get(key, 0) + 1
                return True
            calls = self._prune(key, now, budget.window_seconds)
            if len(calls) >= budget.max_calls:
                logger.info(
                    "Rate limit reached, skipping provider",
                    provider=key,
                    max_calls=budget.max_calls,
                    window_seconds=budget.window_seconds,
                )
                return False
            calls.append(now)
            return True

    def usage(self, key: str) -> int:
        """Number of calls recorded for `key` inside its current window."""
        budget = self._budgets.get(key)
        with self._lock:
            if budget is None:
                return self._unlimited_counts.get(key, 0)
            return len(self._prune(key, self._clock(), budget.window_seconds))

    def remaining(self, key: str) -> int | None:
        """Calls left in the current window, or None for unlimited keys."""
        budget = self._budgets.get(key)
        if budget is None:
            return None
        return max(0, budget.max_calls - self.usage(key))

    def reset(self, key: str | None = None):
        with self._lock:
            if key is None:
                self._calls = {}
                self._unlimited_counts = {}
            else:
                self._calls.pop(key, None)
                self._unlimited_counts.pop(key, None)
