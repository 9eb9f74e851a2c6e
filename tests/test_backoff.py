"""Tests for xsentry.backoff."""

from __future__ import annotations

import pytest

from xsentry.backoff import ReconnectStrategy, ServerErrorBackoff
from xsentry.errors import ServerUnavailable


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestServerErrorBackoff:
    def test_tiers(self):
        backoff = ServerErrorBackoff(clock=FakeClock())
        assert [backoff.record_failure(502) for _ in range(7)] == [1, 2, 5, 10, 15, 15, 15]

    def test_two_failures_then_success(self):
        clock = FakeClock()
        backoff = ServerErrorBackoff(clock=clock)
        backoff.record_failure(502)
        assert backoff.record_failure(502) == 2
        assert backoff.remaining == 120

        with pytest.raises(ServerUnavailable) as excinfo:
            backoff.check()
        assert excinfo.value.retry_after == 120

        clock.now += 121
        backoff.check()
        backoff.record_success()
        assert backoff.error_count == 0
        assert backoff.backoff_minutes == 0

    def test_notify_threshold(self):
        backoff = ServerErrorBackoff(clock=FakeClock())
        backoff.record_failure(500)
        backoff.record_failure(500)
        assert not backoff.should_notify
        backoff.record_failure(500)
        assert backoff.should_notify

    def test_check_passes_when_healthy(self):
        ServerErrorBackoff(clock=FakeClock()).check()


class TestReconnectStrategy:
    def test_exponential_without_jitter(self):
        strategy = ReconnectStrategy(jitter=0)
        assert [strategy.next_delay() for _ in range(8)] == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_reset(self):
        strategy = ReconnectStrategy(jitter=0)
        strategy.next_delay()
        strategy.next_delay()
        strategy.reset()
        assert strategy.attempt == 0
        assert strategy.current_delay == 1
        assert strategy.next_delay() == 1

    @pytest.mark.parametrize("rng_value", [0.0, 0.5, 0.999])
    def test_jitter_bounds(self, rng_value):
        strategy = ReconnectStrategy(rng=lambda: rng_value)
        for _ in range(10):
            delay = strategy.next_delay()
            nominal = min(2 ** (strategy.attempt - 1), 60)
            assert 1 <= delay <= 60
            assert abs(delay - nominal) <= nominal * 0.1 + 1e-9
