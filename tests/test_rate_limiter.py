import threading

from fakes import FakeClock
from shelfscan.internal.env_settings import RateLimitBudget
from shelfscan.internal.rate_limiter import RateLimiter


class TestCheckAndIncrement:
    """Budget accounting over a rolling window."""

    def test_allows_calls_until_budget_exhausted(self, clock):
        """Calls succeed up to max_calls, then fail without counting."""
        limiter = RateLimiter({"openai": RateLimitBudget(max_calls=3, window_seconds=60)}, clock=clock)

        assert [limiter.check_and_increment("openai") for _ in range(4)] == [True, True, True, False]
        assert limiter.usage("openai") == 3

    def test_window_rolls_forward(self, clock):
        """Calls older than the window no longer count against the budget."""
        limiter = RateLimiter({"openai": RateLimitBudget(max_calls=2, window_seconds=60)}, clock=clock)
        limiter.check_and_increment("openai")
        clock.advance(30)
        limiter.check_and_increment("openai")
        assert limiter.check_and_increment("openai") is False

        clock.advance(31)
        assert limiter.check_and_increment("openai") is True
        assert limiter.usage("openai") == 2

    def test_budgets_are_per_provider(self, clock):
        """Exhausting one provider does not affect another."""
        limiter = RateLimiter(
            {
                "google-books": RateLimitBudget(max_calls=1, window_seconds=60),
                "open-library": RateLimitBudget(max_calls=1, window_seconds=60),
            },
            clock=clock,
        )
        assert limiter.check_and_increment("google-books") is True
        assert limiter.check_and_increment("google-books") is False
        assert limiter.check_and_increment("open-library") is True

    def test_unknown_key_fails_open(self, clock):
        """Keys without a budget are never limited."""
        limiter = RateLimiter({}, clock=clock)
        assert all(limiter.check_and_increment("unconfigured") for _ in range(1000))
        assert limiter.remaining("unconfigured") is None
        assert limiter.usage("unconfigured") == 1000

    def test_zero_budget_always_refuses(self, exhausted_limiter):
        """A zero budget means the provider is switched off."""
        assert exhausted_limiter.check_and_increment("openai") is False
        assert exhausted_limiter.usage("openai") == 0

    def test_remaining_and_reset(self, clock):
        limiter = RateLimiter({"openai": RateLimitBudget(max_calls=5, window_seconds=60)}, clock=clock)
        limiter.check_and_increment("openai")
        limiter.check_and_increment("openai")
        assert limiter.remaining("openai") == 3

        limiter.reset("openai")
        assert limiter.remaining("openai") == 5

    def test_defaults_come_from_settings(self):
        """Without explicit budgets the configured defaults apply."""
        limiter = RateLimiter()
        assert limiter.remaining("openai") == 500
        assert limiter.remaining("open-library") == 100


class TestThreadSafety:
    """Concurrent callers must never overshoot a budget."""

    def test_concurrent_callers_respect_budget(self):
        limiter = RateLimiter(
            {"openai": RateLimitBudget(max_calls=50, window_seconds=3600)},
            clock=FakeClock(),
        )
        results: list[bool] = []
        results_lock = threading.Lock()

        def worker():
            for _ in range(10):
                allowed = limiter.check_and_increment("openai")
                with results_lock:
                    results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 200
        assert results.count(True) == 50
        assert limiter.usage("openai") == 50
